"""Host provisioning pipeline for Buildfarm.

This module implements remote command execution over ssh/scp, ssh
connection parameters for hosts, and the agent gateway that installs and
starts the agent on a host.
"""

from __future__ import annotations

from buildfarm.pipeline.cloud import CloudProvider, SSHConnection, StaticCloudProvider
from buildfarm.pipeline.gateway import AgentHostGateway, executable_sub_path
from buildfarm.pipeline.remote import (
    CappedOutput,
    RemoteCommand,
    RemoteCommandError,
    RemoteCommandExecutor,
    RemoteCommandTimeout,
    ScpCommand,
)

__all__ = [
    "AgentHostGateway",
    "executable_sub_path",
    "CloudProvider",
    "SSHConnection",
    "StaticCloudProvider",
    "CappedOutput",
    "RemoteCommand",
    "RemoteCommandError",
    "RemoteCommandExecutor",
    "RemoteCommandTimeout",
    "ScpCommand",
]
