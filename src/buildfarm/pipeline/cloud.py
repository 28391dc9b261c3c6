"""SSH connection parameters for hosts.

The cloud-provider layer that allocates hosts is an external
collaborator; the gateway only needs it to answer "how do I ssh into
this host". ``StaticCloudProvider`` answers from the host and distro
records themselves, which covers statically allocated hosts and
providers that write the address back onto the host.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel, Field

from buildfarm.database.models.distro import Distro
from buildfarm.database.models.host import Host

DEFAULT_SSH_PORT = 22


class SSHConnection(BaseModel):
    """How to reach a host over ssh.

    Attributes:
        address: Hostname or IP address.
        user: Login user.
        port: SSH port.
        options: Extra ssh options (e.g. ``["-i", "/keys/id_rsa"]``).
    """

    address: str
    user: str
    port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535)
    options: list[str] = Field(default_factory=list)


class CloudProvider(Protocol):
    """Source of SSH connection parameters for a host."""

    async def get_connection_parameters(self, host: Host, distro: Distro) -> SSHConnection:
        ...


def parse_ssh_address(address: str) -> tuple[str, int]:
    """Split ``address[:port]`` into hostname and port.

    Bracketed IPv6 literals (``[::1]:2222``) are supported.

    Raises:
        ValueError: If the address is empty or the port is not a valid number.
    """
    address = address.strip()
    if not address:
        raise ValueError("empty ssh address")

    if address.startswith("["):
        hostname, _, rest = address[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif address.count(":") == 1:
        hostname, _, port_text = address.partition(":")
    else:
        hostname, port_text = address, ""

    if not port_text:
        return hostname, DEFAULT_SSH_PORT
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid ssh port in address '{address}'") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"invalid ssh port in address '{address}'")
    return hostname, port


class StaticCloudProvider:
    """Builds connection parameters from the host and distro records.

    Attributes:
        default_options: ssh options applied to every connection, ahead of
            the distro's own options.
    """

    def __init__(self, default_options: list[str] | None = None) -> None:
        self.default_options = list(default_options or [])

    async def get_connection_parameters(self, host: Host, distro: Distro) -> SSHConnection:
        hostname, port = parse_ssh_address(host.host)
        user = host.user or distro.user
        if not user:
            raise ValueError(f"no ssh user configured for host {host.id}")
        return SSHConnection(
            address=hostname,
            user=user,
            port=port,
            options=[*self.default_options, *(distro.ssh_options or [])],
        )
