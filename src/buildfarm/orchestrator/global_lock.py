"""Global lock manager for task start and task end handling.

A lock scope is derived from the reporting connection's origin, the task
identifier and the calling handler, so unrelated tasks never contend
while duplicate reports for the same task from the same origin are
serialized.

Two implementations share the ``LockManager`` interface:

- ``InMemoryLockManager``: asyncio locks, for tests and single-process
  deployments.
- ``DatabaseLockManager``: a row per held scope in ``global_locks``,
  claimed with a conditional insert (or a takeover of an expired lease),
  for deployments running several API server processes.

Example:
    >>> manager = InMemoryLockManager(acquire_timeout=5.0)
    >>> async with manager.hold(lock_scope("10.0.0.7", "compile_1", END_TASK_CALLER)):
    ...     ...  # read host, decide, mutate
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Protocol

import structlog
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from buildfarm.config import LockConfig
from buildfarm.database.connection import SessionFactory
from buildfarm.database.models.base import utcnow
from buildfarm.database.models.global_lock import GlobalLock
from buildfarm.errors import LockTimeoutError

logger = structlog.get_logger(__name__)

START_TASK_CALLER = "start_task"
END_TASK_CALLER = "end_task"


def lock_scope(origin: str, task_id: str, caller: str) -> str:
    """Build the lock scope for a task report.

    Args:
        origin: Network origin of the reporting connection.
        task_id: Task the report concerns.
        caller: Handler taking the lock (start or end handling).

    Returns:
        Scope key string.
    """
    return f"{caller}|{origin}|{task_id}"


@dataclass
class LockHandle:
    """Proof of a held lock, passed back to ``release``.

    Attributes:
        scope: The locked scope.
        token: Unique token identifying this acquisition.
        released: Whether ``release`` has already run for this handle.
    """

    scope: str
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    released: bool = False


class LockManager(Protocol):
    """Named mutual exclusion keyed by scope."""

    async def acquire(self, scope: str) -> LockHandle:
        """Acquire ``scope``, raising LockTimeoutError after the bounded wait."""
        ...

    async def release(self, handle: LockHandle) -> None:
        """Release a handle. Releasing twice has no further effect."""
        ...

    def hold(self, scope: str) -> AbstractAsyncContextManager[LockHandle]:
        """Async context manager holding ``scope`` for the block."""
        ...


class _BaseLockManager:
    """Shared ``hold`` implementation for lock managers."""

    @asynccontextmanager
    async def hold(self, scope: str) -> AsyncIterator[LockHandle]:
        """Hold ``scope`` for the duration of the block.

        The lock is released on every exit path, including exceptions and
        cancellation.

        Raises:
            LockTimeoutError: If the lock cannot be acquired in time.
        """
        handle = await self.acquire(scope)  # type: ignore[attr-defined]
        try:
            yield handle
        finally:
            await self.release(handle)  # type: ignore[attr-defined]


@dataclass
class _ScopeEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class InMemoryLockManager(_BaseLockManager):
    """Process-local lock manager built on asyncio locks.

    Scope entries are created on demand and dropped once no caller holds
    or waits on them, so the table does not grow with every task seen.
    """

    def __init__(self, acquire_timeout: float = 15.0) -> None:
        self.acquire_timeout = acquire_timeout
        self._entries: dict[str, _ScopeEntry] = {}
        self._logger = logger.bind(component="InMemoryLockManager")

    async def acquire(self, scope: str) -> LockHandle:
        entry = self._entries.setdefault(scope, _ScopeEntry())
        entry.users += 1
        try:
            await asyncio.wait_for(entry.lock.acquire(), timeout=self.acquire_timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            self._forget(scope, entry)
            if isinstance(e, asyncio.CancelledError):
                raise
            self._logger.warning("lock_timeout", scope=scope, timeout=self.acquire_timeout)
            raise LockTimeoutError(scope, self.acquire_timeout) from None

        handle = LockHandle(scope=scope)
        self._logger.debug("lock_acquired", scope=scope, token=handle.token)
        return handle

    async def release(self, handle: LockHandle) -> None:
        if handle.released:
            self._logger.debug("lock_release_noop", scope=handle.scope, token=handle.token)
            return
        handle.released = True

        entry = self._entries.get(handle.scope)
        if entry is None:
            return
        entry.lock.release()
        self._forget(handle.scope, entry)
        self._logger.debug("lock_released", scope=handle.scope, token=handle.token)

    def is_locked(self, scope: str) -> bool:
        """Whether ``scope`` is currently held."""
        entry = self._entries.get(scope)
        return entry is not None and entry.lock.locked()

    def _forget(self, scope: str, entry: _ScopeEntry) -> None:
        entry.users -= 1
        if entry.users <= 0 and self._entries.get(scope) is entry:
            del self._entries[scope]


class DatabaseLockManager(_BaseLockManager):
    """Lock manager backed by the ``global_locks`` table.

    Acquisition inserts a row for the scope; the primary key makes the
    insert fail while another holder owns it. A row whose lease expired
    is taken over with a conditional update. Attempts repeat every
    ``poll_interval`` until ``acquire_timeout`` elapses.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        acquire_timeout: float = 15.0,
        poll_interval: float = 0.1,
        lease: float = 300.0,
    ) -> None:
        self.session_factory = session_factory
        self.acquire_timeout = acquire_timeout
        self.poll_interval = poll_interval
        self.lease = lease
        self._logger = logger.bind(component="DatabaseLockManager")

    async def acquire(self, scope: str) -> LockHandle:
        handle = LockHandle(scope=scope)
        deadline = time.monotonic() + self.acquire_timeout
        attempts = 0

        while True:
            attempts += 1
            if await self._try_acquire(handle):
                self._logger.debug(
                    "lock_acquired",
                    scope=scope,
                    token=handle.token,
                    attempts=attempts,
                )
                return handle

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._logger.warning(
                    "lock_timeout",
                    scope=scope,
                    timeout=self.acquire_timeout,
                    attempts=attempts,
                )
                raise LockTimeoutError(scope, self.acquire_timeout)
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def release(self, handle: LockHandle) -> None:
        if handle.released:
            self._logger.debug("lock_release_noop", scope=handle.scope, token=handle.token)
            return
        handle.released = True

        async with self.session_factory() as session:
            stmt = delete(GlobalLock).where(
                GlobalLock.scope == handle.scope,
                GlobalLock.holder == handle.token,
            )
            result = await session.execute(stmt, execution_options={"synchronize_session": False})
            await session.commit()

        if result.rowcount == 0:  # type: ignore[union-attr]
            # Lease expired and another holder took the scope over.
            self._logger.warning("lock_lost_before_release", scope=handle.scope)
        else:
            self._logger.debug("lock_released", scope=handle.scope, token=handle.token)

    async def _try_acquire(self, handle: LockHandle) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=self.lease)

        async with self.session_factory() as session:
            session.add(
                GlobalLock(
                    scope=handle.scope,
                    holder=handle.token,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()

            stmt = (
                update(GlobalLock)
                .where(GlobalLock.scope == handle.scope, GlobalLock.expires_at < now)
                .values(holder=handle.token, acquired_at=now, expires_at=expires_at)
            )
            result = await session.execute(stmt, execution_options={"synchronize_session": False})
            await session.commit()

        if result.rowcount == 1:  # type: ignore[union-attr]
            self._logger.warning("expired_lock_taken_over", scope=handle.scope)
            return True
        return False


def create_lock_manager(
    config: LockConfig,
    session_factory: SessionFactory | None = None,
) -> InMemoryLockManager | DatabaseLockManager:
    """Build the lock manager selected by configuration.

    Raises:
        ValueError: If the database backend is selected without a session factory.
    """
    if config.backend == "memory":
        return InMemoryLockManager(acquire_timeout=config.acquire_timeout_seconds)

    if session_factory is None:
        raise ValueError("database lock backend requires a session factory")
    return DatabaseLockManager(
        session_factory,
        acquire_timeout=config.acquire_timeout_seconds,
        poll_interval=config.poll_interval_seconds,
        lease=config.lease_seconds,
    )
