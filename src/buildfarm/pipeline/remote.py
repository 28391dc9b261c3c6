"""Remote command execution over ssh and scp.

Every host provisioning step is one ``RemoteCommand`` (a shell command
run over ssh) or ``ScpCommand`` (a file copy) executed by
``RemoteCommandExecutor`` under a hard timeout. Output is streamed into
a ``CappedOutput`` buffer that keeps only the newest bytes, so a noisy
command cannot grow memory without bound.

On timeout the local ssh/scp process is killed and reaped, and for ssh
commands a best-effort kill of the remote process, found through its pid
file, is attempted.
Failure to stop the remote side is logged, never raised.
"""

from __future__ import annotations

import asyncio
import posixpath
import shlex
import uuid
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_OUTPUT_CAP = 1024 * 1024  # 1 MiB

# Remote directory for the pid files of running commands
DEFAULT_PID_DIR = "/tmp"


class RemoteCommandError(Exception):
    """A remote command exited unsuccessfully or could not be started.

    Attributes:
        command_id: Identifier of the failed command.
        returncode: Exit code of the local ssh/scp process, if it ran.
        output: Captured (capped) output.
    """

    def __init__(
        self,
        command_id: str,
        message: str,
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        self.command_id = command_id
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class RemoteCommandTimeout(RemoteCommandError):
    """A remote command did not finish within its timeout."""

    def __init__(self, command_id: str, timeout: float, output: str = "") -> None:
        self.timeout = timeout
        super().__init__(command_id, f"command {command_id} timed out after {timeout}s", output=output)


class CappedOutput:
    """Byte buffer that retains at most ``max_bytes``, discarding the oldest."""

    def __init__(self, max_bytes: int = DEFAULT_OUTPUT_CAP) -> None:
        self.max_bytes = max_bytes
        self._buffer = bytearray()
        self.truncated = False

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        overflow = len(self._buffer) - self.max_bytes
        if overflow > 0:
            del self._buffer[:overflow]
            self.truncated = True
        return len(data)

    def getvalue(self) -> bytes:
        return bytes(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)

    def __str__(self) -> str:
        return self._buffer.decode("utf-8", errors="replace")


@dataclass
class RemoteCommand:
    """A shell command to run on a remote host over ssh.

    The command runs under a ``sh`` wrapper that keeps its own pid in
    ``pid_file`` while the command runs, so ``stop_script`` can find the
    wrapper and its children after a timeout.

    Attributes:
        cmd_string: Shell command to run remotely.
        hostname: Remote address.
        user: Remote user.
        port: SSH port.
        options: Extra ssh options.
        background: If True, the call returns once the remote process is
            launched instead of waiting for it to exit.
        command_id: Identifier used in logs and the remote pid file name.
        pid_dir: Remote directory holding the pid file.
    """

    cmd_string: str
    hostname: str
    user: str
    port: int = 22
    options: list[str] = field(default_factory=list)
    background: bool = False
    command_id: str = field(default_factory=lambda: f"remote-{uuid.uuid4().hex[:12]}")
    pid_dir: str = DEFAULT_PID_DIR

    @property
    def target(self) -> str:
        return f"{self.user}@{self.hostname}" if self.user else self.hostname

    @property
    def pid_file(self) -> str:
        return posixpath.join(self.pid_dir, f"buildfarm-{self.command_id}.pid")

    def remote_script(self) -> str:
        """Shell text executed on the remote host."""
        pid_file = shlex.quote(self.pid_file)
        # The command goes on its own line so a trailing '&' or comment in it
        # cannot swallow the cleanup.
        wrapper = (
            f"echo $$ > {pid_file}\n"
            f"{self.cmd_string}\n"
            f"status=$?; rm -f {pid_file}; exit $status"
        )
        script = f"sh -c {shlex.quote(wrapper)}"
        if self.background:
            return f"nohup {script} > /dev/null 2>&1 &"
        return script

    def stop_script(self) -> str:
        """Shell text killing the wrapper started by ``remote_script``.

        The wrapper is stopped first so it cannot start the command's next
        step while its children are being killed.
        """
        pid_file = shlex.quote(self.pid_file)
        return (
            f"pid=$(cat {pid_file} 2>/dev/null) || exit 0; "
            '[ -n "$pid" ] || exit 0; '
            'kill -STOP "$pid" 2>/dev/null; '
            'pkill -KILL -P "$pid"; '
            'kill -KILL "$pid" 2>/dev/null; '
            f"rm -f {pid_file}"
        )

    def argv(self, ssh_binary: str = "ssh", script: str | None = None) -> list[str]:
        return [
            ssh_binary,
            "-p",
            str(self.port),
            *self.options,
            self.target,
            self.remote_script() if script is None else script,
        ]


@dataclass
class ScpCommand:
    """A file copy to a remote host over scp.

    Attributes:
        source: Local path to copy.
        dest: Remote destination path.
        hostname: Remote address.
        user: Remote user.
        port: SSH port.
        options: Extra scp options.
        command_id: Identifier used in logs.
    """

    source: str
    dest: str
    hostname: str
    user: str
    port: int = 22
    options: list[str] = field(default_factory=list)
    command_id: str = field(default_factory=lambda: f"scp-{uuid.uuid4().hex[:12]}")

    @property
    def target(self) -> str:
        return f"{self.user}@{self.hostname}" if self.user else self.hostname

    def argv(self, scp_binary: str = "scp") -> list[str]:
        return [
            scp_binary,
            "-P",
            str(self.port),
            *self.options,
            self.source,
            f"{self.target}:{self.dest}",
        ]


class RemoteCommandExecutor:
    """Runs ssh/scp commands with hard timeouts and guaranteed cleanup.

    Attributes:
        ssh_binary: ssh executable.
        scp_binary: scp executable.
        stop_timeout: Bound on the best-effort remote kill after a timeout.
    """

    def __init__(
        self,
        ssh_binary: str = "ssh",
        scp_binary: str = "scp",
        stop_timeout: float = 10.0,
    ) -> None:
        self.ssh_binary = ssh_binary
        self.scp_binary = scp_binary
        self.stop_timeout = stop_timeout
        self._logger = logger.bind(component="RemoteCommandExecutor")

    async def run(
        self,
        command: RemoteCommand | ScpCommand,
        timeout: float,
        output: CappedOutput | None = None,
    ) -> CappedOutput:
        """Run a command to completion (or launch, for background commands).

        Args:
            command: The ssh or scp command to run.
            timeout: Seconds before the command is abandoned and killed.
            output: Buffer receiving combined stdout/stderr. A new one is
                created when omitted.

        Returns:
            The output buffer, populated whatever the outcome.

        Raises:
            RemoteCommandTimeout: If the command exceeded ``timeout``.
            RemoteCommandError: If the command exited non-zero or the
                ssh/scp binary could not be started.
        """
        if output is None:
            output = CappedOutput()

        if isinstance(command, ScpCommand):
            argv = command.argv(self.scp_binary)
        else:
            argv = command.argv(self.ssh_binary)

        self._logger.debug(
            "running_remote_command",
            command_id=command.command_id,
            target=command.target,
            timeout=timeout,
            background=getattr(command, "background", False),
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (FileNotFoundError, PermissionError) as e:
            self._logger.error(
                "remote_command_not_started",
                command_id=command.command_id,
                binary=argv[0],
                error=str(e),
            )
            raise RemoteCommandError(
                command.command_id,
                f"could not start {argv[0]}: {e}",
            ) from e

        try:
            await asyncio.wait_for(self._communicate(proc, output), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            self._logger.error(
                "remote_command_timeout",
                command_id=command.command_id,
                target=command.target,
                timeout=timeout,
            )
            if isinstance(command, RemoteCommand):
                await self._stop_remote(command)
            raise RemoteCommandTimeout(command.command_id, timeout, str(output)) from None
        except BaseException:
            # Cancellation or unexpected failure: never leak the process.
            await self._kill(proc)
            raise

        if proc.returncode != 0:
            self._logger.error(
                "remote_command_failed",
                command_id=command.command_id,
                target=command.target,
                returncode=proc.returncode,
                output=str(output)[-500:],
            )
            raise RemoteCommandError(
                command.command_id,
                f"command {command.command_id} exited with status {proc.returncode}",
                returncode=proc.returncode,
                output=str(output),
            )

        self._logger.debug(
            "remote_command_succeeded",
            command_id=command.command_id,
            target=command.target,
        )
        return output

    async def _communicate(self, proc: asyncio.subprocess.Process, output: CappedOutput) -> None:
        if proc.stdout is None:
            await proc.wait()
            return
        while True:
            chunk = await proc.stdout.read(64 * 1024)
            if not chunk:
                break
            output.write(chunk)
        await proc.wait()

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    async def _stop_remote(self, command: RemoteCommand) -> None:
        """Best-effort kill of a timed-out command's remote process."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *command.argv(self.ssh_binary, command.stop_script()),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            self._logger.warning(
                "remote_stop_failed",
                command_id=command.command_id,
                error=str(e),
            )
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            self._logger.warning(
                "remote_stop_timeout",
                command_id=command.command_id,
                timeout=self.stop_timeout,
            )
            return

        if proc.returncode != 0:
            self._logger.warning(
                "remote_stop_failed",
                command_id=command.command_id,
                returncode=proc.returncode,
            )
        else:
            self._logger.info("remote_process_stopped", command_id=command.command_id)
