"""Host agent gateway.

Makes a freshly allocated host capable of running tasks: prepares the
agent's working directory over ssh, copies the architecture-specific
agent binary with scp, launches the agent in the background, and records
which agent revision the host received. Also answers which agent
revision is authoritative right now, for drift checks.

Provisioning steps run strictly in sequence, each under its own timeout.
A failing step aborts the rest and raises a ``ProvisioningFailedError``
naming the step. Nothing is retried here; retry is the fleet
allocator's decision.

Example:
    >>> gateway = AgentHostGateway(config.gateway, config.api.url, session_factory)
    >>> revision = await gateway.start_agent_on_host("host-42")
"""

from __future__ import annotations

import asyncio
import posixpath
from pathlib import Path

import structlog

from buildfarm.config import GatewayConfig
from buildfarm.database.connection import SessionFactory
from buildfarm.database.models.distro import Distro
from buildfarm.database.models.host import Host
from buildfarm.database.queries.distro import get_distro
from buildfarm.database.queries.host import create_secret, get_host, set_agent_revision
from buildfarm.errors import (
    BuildfarmError,
    InternalError,
    NotFoundError,
    ProvisioningFailedError,
    ProvisioningTimeoutError,
)
from buildfarm.pipeline.cloud import CloudProvider, SSHConnection, StaticCloudProvider
from buildfarm.pipeline.remote import (
    CappedOutput,
    RemoteCommand,
    RemoteCommandError,
    RemoteCommandExecutor,
    RemoteCommandTimeout,
    ScpCommand,
)

logger = structlog.get_logger(__name__)

VERSION_FILE = "version"
AGENT_LOG_PREFIX = "agent"

STEP_CONNECTION = "connection_parameters"
STEP_MAKE_DIRECTORIES = "make_directories"
STEP_COPY_AGENT = "copy_agent"
STEP_START_AGENT = "start_agent"


def executable_sub_path(distro: Distro) -> str:
    """Path of a distro's agent binary relative to the executables directory."""
    main_name = "main.exe" if distro.arch.startswith("windows") else "main"
    return posixpath.join(distro.arch, main_name)


def agent_command(api_url: str, host: Host, distro: Distro) -> str:
    """Shell command that launches the agent on a host."""
    executable = posixpath.join(distro.work_dir, posixpath.basename(executable_sub_path(distro)))
    log_prefix = posixpath.join(distro.work_dir, AGENT_LOG_PREFIX)
    return (
        f'{executable} -api_server "{api_url}" -host_id "{host.id}" '
        f'-host_secret "{host.secret}" -log_prefix "{log_prefix}"'
    )


class AgentHostGateway:
    """Provisions hosts with the agent and reports the authoritative revision.

    Attributes:
        config: Gateway configuration (executables directory, timeouts).
        api_url: Control-plane URL the launched agent reports to.
        session_factory: Callable that produces async database sessions.
        executor: Runner for ssh/scp commands.
        cloud: Source of per-host ssh connection parameters.
    """

    def __init__(
        self,
        config: GatewayConfig,
        api_url: str,
        session_factory: SessionFactory,
        executor: RemoteCommandExecutor | None = None,
        cloud: CloudProvider | None = None,
    ) -> None:
        self.config = config
        self.api_url = api_url
        self.session_factory = session_factory
        self.executor = executor or RemoteCommandExecutor(
            ssh_binary=config.ssh_binary,
            scp_binary=config.scp_binary,
            stop_timeout=config.stop_timeout_seconds,
        )
        self.cloud = cloud or StaticCloudProvider(default_options=config.ssh_options)
        self._logger = logger.bind(component="AgentHostGateway")

    @property
    def executables_dir(self) -> Path:
        return self.config.executables_dir

    async def current_agent_revision(self) -> str:
        """Read the revision of the locally built agent.

        Raises:
            InternalError: If the version file cannot be read.
        """
        version_file = self.executables_dir / VERSION_FILE
        try:
            contents = await asyncio.to_thread(version_file.read_text, encoding="utf-8")
        except OSError as e:
            raise InternalError(f"error reading agent version file {version_file}: {e}") from e
        return contents.strip()

    async def start_agent_on_host(self, host_id: str) -> str:
        """Provision a host and start the agent on it.

        Args:
            host_id: Host to provision.

        Returns:
            The agent revision recorded as deployed on the host.

        Raises:
            NotFoundError: If the host or its distro does not exist.
            ProvisioningFailedError: If a provisioning step failed
                (``ProvisioningTimeoutError`` if it timed out).
        """
        async with self.session_factory() as session:
            host = await get_host(session, host_id)
            if host is None:
                raise NotFoundError("host", host_id)
            distro = await get_distro(session, host.distro_id)
            if distro is None:
                raise NotFoundError("distro", host.distro_id)

            try:
                connection = await self.cloud.get_connection_parameters(host, distro)
            except (ValueError, BuildfarmError) as e:
                raise ProvisioningFailedError(host.id, STEP_CONNECTION, str(e)) from e

            if not host.secret:
                host.secret = await create_secret(session, host.id)
                await session.commit()

        log = self._logger.bind(host_id=host.id, distro_id=distro.id)

        log.info("prepping_remote_host", address=connection.address, port=connection.port)
        revision = await self._prep_remote_host(host, distro, connection)
        log.info("remote_host_prepped", agent_revision=revision)

        log.info("starting_agent")
        await self._start_agent_on_remote(host, distro, connection)
        log.info("agent_started")

        async with self.session_factory() as session:
            await set_agent_revision(session, host.id, revision)
            await session.commit()

        return revision

    async def _prep_remote_host(
        self,
        host: Host,
        distro: Distro,
        connection: SSHConnection,
    ) -> str:
        """Create the agent directory and copy the agent binary over.

        Returns:
            The agent revision that was authoritative when the copy began.
        """
        mkdir = RemoteCommand(
            cmd_string=f"mkdir -m 777 -p {distro.work_dir}",
            hostname=connection.address,
            user=connection.user,
            port=connection.port,
            options=connection.options,
            command_id=f"agent-mkdir-{host.id}",
        )
        await self._run_step(
            host, STEP_MAKE_DIRECTORIES, mkdir, self.config.make_shell_timeout_seconds
        )

        try:
            pre_revision = await self.current_agent_revision()
        except InternalError as e:
            raise ProvisioningFailedError(host.id, STEP_COPY_AGENT, str(e)) from e

        source = self.executables_dir / executable_sub_path(distro)
        scp = ScpCommand(
            source=str(source),
            dest=distro.work_dir,
            hostname=connection.address,
            user=connection.user,
            port=connection.port,
            options=connection.options,
            command_id=f"agent-scp-{host.id}",
        )
        await self._run_step(host, STEP_COPY_AGENT, scp, self.config.scp_timeout_seconds)

        # The binary on the host is the one that was current when the copy
        # started, even if the local build was replaced during the transfer.
        try:
            post_revision = await self.current_agent_revision()
        except InternalError as e:
            self._logger.error(
                "post_copy_revision_unavailable",
                host_id=host.id,
                error=str(e),
            )
            return pre_revision

        if pre_revision != post_revision:
            self._logger.warning(
                "agent_revision_changed_during_copy",
                host_id=host.id,
                pre_copy_revision=pre_revision,
                post_copy_revision=post_revision,
                recorded_revision=pre_revision,
            )
        return pre_revision

    async def _start_agent_on_remote(
        self,
        host: Host,
        distro: Distro,
        connection: SSHConnection,
    ) -> None:
        """Launch the agent process on the host in the background."""
        start = RemoteCommand(
            cmd_string=agent_command(self.api_url, host, distro),
            hostname=connection.address,
            user=connection.user,
            port=connection.port,
            options=connection.options,
            background=True,
            command_id=f"agent-start-{host.id}",
        )
        await self._run_step(
            host, STEP_START_AGENT, start, self.config.start_agent_timeout_seconds
        )

    async def _run_step(
        self,
        host: Host,
        step: str,
        command: RemoteCommand | ScpCommand,
        timeout: float,
    ) -> None:
        output = CappedOutput(self.config.output_cap_bytes)
        try:
            await self.executor.run(command, timeout, output)
        except RemoteCommandTimeout as e:
            self._logger.error("provisioning_step_timeout", host_id=host.id, step=step, timeout=timeout)
            raise ProvisioningTimeoutError(host.id, step, timeout, str(output)) from e
        except RemoteCommandError as e:
            self._logger.error("provisioning_step_failed", host_id=host.id, step=step, error=str(e))
            raise ProvisioningFailedError(host.id, step, str(e), str(output)) from e
