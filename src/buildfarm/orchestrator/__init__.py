"""Orchestration core for Buildfarm.

This module implements the task lifecycle state machine, the global lock
manager serializing agent reports, the per-distro queue dispatcher, the
task completion coordinator and task cost accounting.
"""

from __future__ import annotations

from buildfarm.orchestrator.coordinator import TaskCoordinator, TaskEndResponse
from buildfarm.orchestrator.cost import TaskCostUpdater
from buildfarm.orchestrator.global_lock import (
    DatabaseLockManager,
    InMemoryLockManager,
    LockHandle,
    LockManager,
    create_lock_manager,
    lock_scope,
)
from buildfarm.orchestrator.queue_dispatcher import (
    DistroQueueDispatcher,
    always_eligible,
    dependencies_met,
)
from buildfarm.orchestrator.state_machine import (
    InvalidTransitionError,
    TaskStateMachine,
    validate_transition,
)

__all__ = [
    # Coordinator
    "TaskCoordinator",
    "TaskEndResponse",
    # Cost
    "TaskCostUpdater",
    # Locks
    "DatabaseLockManager",
    "InMemoryLockManager",
    "LockHandle",
    "LockManager",
    "create_lock_manager",
    "lock_scope",
    # Queue
    "DistroQueueDispatcher",
    "always_eligible",
    "dependencies_met",
    # State machine
    "InvalidTransitionError",
    "TaskStateMachine",
    "validate_transition",
]
