"""Integration tests for task start/end handling.

Drives ``TaskCoordinator`` against a temporary SQLite database with an
in-process lock manager, covering the run-next and terminate decisions,
aborts, cost accounting and duplicate end reports.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from buildfarm.database.models.base import ensure_utc, utcnow
from buildfarm.database.models.host import HostStatus
from buildfarm.database.models.task import TaskStatus
from buildfarm.errors import InternalError, InvalidEndStatusError, NotFoundError
from buildfarm.orchestrator.coordinator import (
    NO_NEXT_TASK_MESSAGE,
    PROCEED_MESSAGE,
    STALE_AGENT_MESSAGE,
)
from buildfarm.orchestrator.state_machine import InvalidTransitionError

pytestmark = pytest.mark.integration

ORIGIN = "10.0.0.5"


async def _host_running_t1(seed, queue: list[str], **host_fields):
    """Seed distro, a started T1 on host H1, and the distro queue."""
    await seed.distro(cost_per_hour=0.6)
    await seed.task(
        "T1",
        status=TaskStatus.started,
        host_id="H1",
        start_time=utcnow() - timedelta(hours=2),
    )
    for task_id in queue:
        await seed.task(task_id)
    await seed.queue("ubuntu2204", queue)
    return await seed.host("H1", running_task="T1", **host_fields)


class TestEndTaskRunNext:
    @pytest.mark.asyncio
    async def test_dispatches_next_queued_task(self, seed, coordinator):
        await _host_running_t1(seed, ["T2"])
        t2 = await seed.get_task("T2")

        response = await coordinator.end_task("T1", "succeeded", ORIGIN)

        assert response.run_next is True
        assert response.task_id == "T2"
        assert response.task_secret == t2.secret
        assert response.message == PROCEED_MESSAGE

        host = await seed.get_host("H1")
        assert host.running_task == "T2"
        assert host.last_task_completed == "T1"
        assert await seed.queued("ubuntu2204") == []

        dispatched = await seed.get_task("T2")
        assert dispatched.status == TaskStatus.dispatched
        assert dispatched.host_id == "H1"
        assert (await seed.get_task("T1")).status == TaskStatus.succeeded

    @pytest.mark.asyncio
    async def test_failed_task_still_dispatches_next(self, seed, coordinator):
        await _host_running_t1(seed, ["T2"])

        response = await coordinator.end_task("T1", "failed", ORIGIN)

        assert response.run_next is True
        assert (await seed.get_task("T1")).status == TaskStatus.failed

    @pytest.mark.asyncio
    async def test_cost_is_recorded_in_background(self, seed, coordinator):
        await _host_running_t1(seed, ["T2"])

        await coordinator.end_task("T1", "succeeded", ORIGIN)
        await coordinator.wait_for_background_tasks()

        finished = await seed.get_task("T1")
        assert finished.time_taken_seconds == pytest.approx(7200, abs=5)
        assert finished.cost == pytest.approx(finished.time_taken_seconds / 3600 * 0.6)


class TestEndTaskTerminate:
    @pytest.mark.asyncio
    async def test_stale_agent_is_told_to_rebuild(self, seed, coordinator, revision_source):
        await _host_running_t1(seed, ["T2"])
        revision_source.revision = "r2"

        response = await coordinator.end_task("T1", "succeeded", ORIGIN)

        assert response.run_next is False
        assert response.message == STALE_AGENT_MESSAGE
        assert (await seed.get_host("H1")).running_task is None
        assert await seed.queued("ubuntu2204") == ["T2"]
        assert (await seed.get_task("T2")).status == TaskStatus.undispatched

    @pytest.mark.asyncio
    async def test_empty_queue(self, seed, coordinator):
        await _host_running_t1(seed, [])

        response = await coordinator.end_task("T1", "succeeded", ORIGIN)

        assert response.run_next is False
        assert response.message == NO_NEXT_TASK_MESSAGE
        host = await seed.get_host("H1")
        assert host.running_task is None
        assert host.last_task_completed == "T1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            HostStatus.decommissioned,
            HostStatus.quarantined,
            HostStatus.provisioning,
            HostStatus.terminated,
        ],
    )
    async def test_host_not_running_is_not_handed_work(self, seed, coordinator, status):
        await _host_running_t1(seed, ["T2"], status=status)

        response = await coordinator.end_task("T1", "succeeded", ORIGIN)

        assert response.run_next is False
        assert response.message == (
            f"Host H1 - running T1 - is in state '{status.value}'. Agent will terminate"
        )
        assert (await seed.get_host("H1")).running_task is None
        assert await seed.queued("ubuntu2204") == ["T2"]

    @pytest.mark.asyncio
    async def test_missing_queue_is_internal_error(self, seed, coordinator):
        await seed.distro()
        await seed.task("T1", status=TaskStatus.started, host_id="H1", start_time=utcnow())
        await seed.host("H1", running_task="T1")

        with pytest.raises(InternalError, match="ubuntu2204"):
            await coordinator.end_task("T1", "succeeded", ORIGIN)

        # The host is never left believing it still runs a finished task.
        assert (await seed.get_host("H1")).running_task is None

    @pytest.mark.asyncio
    async def test_no_host_running_task(self, seed, coordinator):
        await seed.distro()
        await seed.task("T1", status=TaskStatus.started, host_id="H1", start_time=utcnow())
        await seed.queue("ubuntu2204", [])

        with pytest.raises(NotFoundError):
            await coordinator.end_task("T1", "succeeded", ORIGIN)


class TestEndTaskStatuses:
    @pytest.mark.asyncio
    async def test_abort_deactivates_task(self, seed, coordinator):
        await _host_running_t1(seed, [])

        await coordinator.end_task("T1", "undispatched", ORIGIN)

        aborted = await seed.get_task("T1")
        assert aborted.status == TaskStatus.inactive
        assert aborted.activated is False
        assert aborted.finish_time is not None

    @pytest.mark.asyncio
    async def test_invalid_status_changes_nothing(self, seed, coordinator):
        await _host_running_t1(seed, ["T2"])

        with pytest.raises(InvalidEndStatusError):
            await coordinator.end_task("T1", "exploded", ORIGIN)

        assert (await seed.get_task("T1")).status == TaskStatus.started
        assert (await seed.get_host("H1")).running_task == "T1"

    @pytest.mark.asyncio
    async def test_finish_time_is_recorded(self, seed, coordinator):
        await _host_running_t1(seed, [])
        finish_time = utcnow() - timedelta(minutes=5)

        await coordinator.end_task("T1", "succeeded", ORIGIN, finish_time=finish_time)

        finished = await seed.get_task("T1")
        assert abs(ensure_utc(finished.finish_time) - finish_time) < timedelta(seconds=1)
        host = await seed.get_host("H1")
        assert abs(ensure_utc(host.last_task_completed_time) - finish_time) < timedelta(seconds=1)


class TestDuplicateEndReports:
    @pytest.mark.asyncio
    async def test_only_one_report_dispatches(self, seed, coordinator):
        await _host_running_t1(seed, ["T2", "T3"])

        results = await asyncio.gather(
            coordinator.end_task("T1", "succeeded", ORIGIN),
            coordinator.end_task("T1", "succeeded", ORIGIN),
            return_exceptions=True,
        )

        responses = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]
        assert len(responses) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidTransitionError)

        assert responses[0].task_id == "T2"
        assert (await seed.get_host("H1")).running_task == "T2"
        assert await seed.queued("ubuntu2204") == ["T3"]
        assert (await seed.get_task("T3")).status == TaskStatus.undispatched

    @pytest.mark.asyncio
    async def test_lock_released_after_report(self, seed, coordinator):
        await _host_running_t1(seed, [])

        await coordinator.end_task("T1", "succeeded", ORIGIN)

        assert coordinator.lock_manager.is_locked(f"end_task|{ORIGIN}|T1") is False


class TestStartTask:
    @pytest.mark.asyncio
    async def test_marks_started_and_records_pid(self, seed, coordinator):
        await seed.distro()
        await seed.task("T2", status=TaskStatus.dispatched, host_id="H1")
        await seed.host("H1", running_task="T2")

        message = await coordinator.start_task("T2", 4242, ORIGIN)

        assert message == "Task T2 started on host H1"
        started = await seed.get_task("T2")
        assert started.status == TaskStatus.started
        assert started.start_time is not None
        assert (await seed.get_host("H1")).task_pid == 4242

    @pytest.mark.asyncio
    async def test_no_host_leaves_task_unchanged(self, seed, coordinator):
        await seed.distro()
        await seed.task("T2", status=TaskStatus.dispatched, host_id="H1")

        with pytest.raises(NotFoundError, match="said to be running on H1"):
            await coordinator.start_task("T2", 4242, ORIGIN)

        assert (await seed.get_task("T2")).status == TaskStatus.dispatched

    @pytest.mark.asyncio
    async def test_start_of_undispatched_task_is_rejected(self, seed, coordinator):
        await seed.distro()
        await seed.task("T2")

        with pytest.raises(InvalidTransitionError):
            await coordinator.start_task("T2", 1, ORIGIN)

    @pytest.mark.asyncio
    async def test_full_cycle(self, seed, coordinator):
        """Start, finish and pick up the next task on the same host."""
        await seed.distro()
        await seed.task("T1", status=TaskStatus.dispatched, host_id="H1")
        await seed.task("T2")
        await seed.queue("ubuntu2204", ["T2"])
        await seed.host("H1", running_task="T1")

        await coordinator.start_task("T1", 100, ORIGIN)
        first = await coordinator.end_task("T1", "succeeded", ORIGIN)
        await coordinator.start_task("T2", 101, ORIGIN)
        second = await coordinator.end_task("T2", "succeeded", ORIGIN)

        assert first.task_id == "T2"
        assert second.run_next is False
        assert second.message == NO_NEXT_TASK_MESSAGE
        host = await seed.get_host("H1")
        assert host.running_task is None
        assert host.last_task_completed == "T2"
