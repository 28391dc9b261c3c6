"""Unit tests for the in-process global lock manager.

Tests cover:
- Lock scope construction
- Mutual exclusion within a scope
- Independence of unrelated scopes
- Bounded waits raising LockTimeoutError
- Idempotent release and release on error paths
- Backend selection from configuration
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from buildfarm.config import LockConfig
from buildfarm.errors import LockTimeoutError
from buildfarm.orchestrator.global_lock import (
    END_TASK_CALLER,
    START_TASK_CALLER,
    DatabaseLockManager,
    InMemoryLockManager,
    create_lock_manager,
    lock_scope,
)


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------


class TestLockScope:
    """Tests for scope key construction."""

    def test_scope_includes_origin_task_and_caller(self):
        scope = lock_scope("10.0.0.7", "compile_1", END_TASK_CALLER)
        assert "10.0.0.7" in scope
        assert "compile_1" in scope
        assert END_TASK_CALLER in scope

    def test_start_and_end_scopes_differ(self):
        assert lock_scope("10.0.0.7", "T1", START_TASK_CALLER) != lock_scope(
            "10.0.0.7", "T1", END_TASK_CALLER
        )

    def test_different_origins_differ(self):
        assert lock_scope("10.0.0.7", "T1", END_TASK_CALLER) != lock_scope(
            "10.0.0.8", "T1", END_TASK_CALLER
        )


# ---------------------------------------------------------------------------
# In-memory manager
# ---------------------------------------------------------------------------


class TestInMemoryLockManager:
    """Tests for InMemoryLockManager."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        manager = InMemoryLockManager(acquire_timeout=1.0)

        handle = await manager.acquire("scope-a")
        assert manager.is_locked("scope-a")

        await manager.release(handle)
        assert not manager.is_locked("scope-a")
        assert handle.released

    @pytest.mark.asyncio
    async def test_second_acquire_times_out(self):
        manager = InMemoryLockManager(acquire_timeout=0.05)
        handle = await manager.acquire("scope-a")

        with pytest.raises(LockTimeoutError) as exc_info:
            await manager.acquire("scope-a")

        assert exc_info.value.scope == "scope-a"
        assert exc_info.value.retryable is True
        # The holder is unaffected by the failed waiter.
        assert manager.is_locked("scope-a")
        await manager.release(handle)
        assert not manager.is_locked("scope-a")

    @pytest.mark.asyncio
    async def test_unrelated_scopes_do_not_contend(self):
        manager = InMemoryLockManager(acquire_timeout=0.05)

        first = await manager.acquire("scope-a")
        second = await manager.acquire("scope-b")

        assert manager.is_locked("scope-a")
        assert manager.is_locked("scope-b")
        await manager.release(first)
        await manager.release(second)

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        manager = InMemoryLockManager(acquire_timeout=0.05)
        handle = await manager.acquire("scope-a")

        await manager.release(handle)
        await manager.release(handle)

        # A second release must not unlock a later holder.
        later = await manager.acquire("scope-a")
        await manager.release(handle)
        assert manager.is_locked("scope-a")
        await manager.release(later)

    @pytest.mark.asyncio
    async def test_waiter_acquires_after_release(self):
        manager = InMemoryLockManager(acquire_timeout=1.0)
        handle = await manager.acquire("scope-a")
        order: list[str] = []

        async def waiter() -> None:
            async with manager.hold("scope-a"):
                order.append("waiter")

        waiting = asyncio.create_task(waiter())
        await asyncio.sleep(0.01)
        order.append("holder")
        await manager.release(handle)
        await waiting

        assert order == ["holder", "waiter"]
        assert not manager.is_locked("scope-a")

    @pytest.mark.asyncio
    async def test_hold_releases_on_exception(self):
        manager = InMemoryLockManager(acquire_timeout=0.05)

        with pytest.raises(RuntimeError):
            async with manager.hold("scope-a"):
                raise RuntimeError("boom")

        assert not manager.is_locked("scope-a")
        async with manager.hold("scope-a"):
            assert manager.is_locked("scope-a")

    @pytest.mark.asyncio
    async def test_critical_sections_are_serialized(self):
        manager = InMemoryLockManager(acquire_timeout=1.0)
        inside = 0
        max_inside = 0

        async def critical() -> None:
            nonlocal inside, max_inside
            async with manager.hold("scope-a"):
                inside += 1
                max_inside = max(max_inside, inside)
                await asyncio.sleep(0.005)
                inside -= 1

        await asyncio.gather(*(critical() for _ in range(5)))

        assert max_inside == 1

    @pytest.mark.asyncio
    async def test_scope_entries_are_dropped_when_unused(self):
        manager = InMemoryLockManager(acquire_timeout=0.05)

        async with manager.hold("scope-a"):
            pass
        with pytest.raises(LockTimeoutError):
            async with manager.hold("scope-b"):
                await manager.acquire("scope-b")

        assert manager._entries == {}


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestCreateLockManager:
    """Tests for create_lock_manager."""

    def test_memory_backend(self):
        manager = create_lock_manager(LockConfig(backend="memory", acquire_timeout_seconds=3))
        assert isinstance(manager, InMemoryLockManager)
        assert manager.acquire_timeout == 3

    def test_database_backend(self):
        manager = create_lock_manager(LockConfig(backend="database"), MagicMock())
        assert isinstance(manager, DatabaseLockManager)

    def test_database_backend_requires_session_factory(self):
        with pytest.raises(ValueError):
            create_lock_manager(LockConfig(backend="database"))
