"""Error taxonomy for the dispatch core.

Every error raised across a component boundary derives from
``BuildfarmError``. The ``retryable`` flag tells the caller whether
repeating the same request may succeed (only lock contention is
retryable; drift and provisioning failures need a policy decision).
"""

from __future__ import annotations


class BuildfarmError(Exception):
    """Base class for all dispatch core errors."""

    retryable: bool = False


class NotFoundError(BuildfarmError):
    """A host, task, distro, or queue record does not exist.

    Attributes:
        kind: Record kind ("host", "task", "distro", "task_queue").
        key: Identifier that was looked up.
    """

    def __init__(self, kind: str, key: str, message: str | None = None) -> None:
        self.kind = kind
        self.key = key
        super().__init__(message or f"{kind} '{key}' not found")


class LockTimeoutError(BuildfarmError):
    """A global lock could not be acquired within its bounded wait.

    Attributes:
        scope: Lock scope that was contended.
        timeout: Seconds waited before giving up.
    """

    retryable = True

    def __init__(self, scope: str, timeout: float) -> None:
        self.scope = scope
        self.timeout = timeout
        super().__init__(f"timed out after {timeout}s waiting for lock '{scope}'")


class StaleAgentError(BuildfarmError):
    """The agent deployed on a host is not the authoritative revision."""

    def __init__(self, host_id: str, deployed: str | None, expected: str) -> None:
        self.host_id = host_id
        self.deployed = deployed
        self.expected = expected
        super().__init__(
            f"host {host_id} runs agent revision '{deployed}', expected '{expected}'"
        )


class ProvisioningFailedError(BuildfarmError):
    """A remote provisioning step failed.

    Attributes:
        host_id: Host being provisioned.
        step: Name of the failing step ("make_directories", "copy_agent",
            "start_agent").
        output: Captured (capped) stdout/stderr of the step.
    """

    def __init__(self, host_id: str, step: str, reason: str, output: str = "") -> None:
        self.host_id = host_id
        self.step = step
        self.output = output
        message = f"{step} failed on host {host_id}: {reason}"
        if output:
            message += f" ({output})"
        super().__init__(message)


class ProvisioningTimeoutError(ProvisioningFailedError):
    """A remote provisioning step exceeded its timeout."""

    def __init__(self, host_id: str, step: str, timeout: float, output: str = "") -> None:
        self.timeout = timeout
        super().__init__(host_id, step, f"timed out after {timeout}s", output)


class InternalError(BuildfarmError):
    """Persistence or otherwise unexpected failure."""


class InvalidEndStatusError(BuildfarmError, ValueError):
    """An agent reported a finishing status outside the accepted set."""

    def __init__(self, task_id: str, status: str) -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(f"Invalid end status '{status}' for task {task_id}")
