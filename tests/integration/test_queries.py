"""Integration tests for host, task and task queue query functions.

Covers the conditional writes the dispatch core relies on: the host
running-task swap, the dispatch assignment and the queue item claim,
plus project variable storage.
"""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from buildfarm.database.models.task import TaskStatus
from buildfarm.database.queries.host import (
    clear_running_task,
    create_secret,
    find_host_by_running_task,
    get_host,
    set_agent_revision,
    update_running_task,
)
from buildfarm.database.queries.project_vars import get_project_vars, upsert_project_vars
from buildfarm.database.queries.task import assign_task_to_host, get_task, get_tasks
from buildfarm.database.queries.task_queue import (
    get_task_queue,
    list_queued_task_ids,
    remove_queue_item,
    save_task_queue,
)

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_find_host_by_running_task(seed, db_session: AsyncSession) -> None:
    await seed.distro()
    await seed.host("H1", running_task="T1")
    await seed.host("H2")

    host = await find_host_by_running_task(db_session, "T1")

    assert host is not None
    assert host.id == "H1"
    assert await find_host_by_running_task(db_session, "T9") is None


@pytest.mark.asyncio
async def test_update_running_task_swaps_expected_task(seed, session_factory) -> None:
    await seed.distro()
    await seed.host("H1", running_task="T1", task_pid=77)

    async with session_factory() as session:
        assert await update_running_task(session, "H1", "T1", "T2") is True
        await session.commit()

    host = await seed.get_host("H1")
    assert host.running_task == "T2"
    assert host.task_pid is None
    assert host.last_task_completed == "T1"
    assert host.last_task_completed_time is not None


@pytest.mark.asyncio
async def test_update_running_task_rejects_stale_expectation(seed, session_factory) -> None:
    await seed.distro()
    await seed.host("H1", running_task="T3")

    async with session_factory() as session:
        assert await update_running_task(session, "H1", "T1", "T2") is False
        await session.commit()

    assert (await seed.get_host("H1")).running_task == "T3"


@pytest.mark.asyncio
async def test_clear_running_task(seed, session_factory) -> None:
    await seed.distro()
    await seed.host("H1", running_task="T1")

    async with session_factory() as session:
        assert await clear_running_task(session, "H1", "T1") is True
        await session.commit()

    host = await seed.get_host("H1")
    assert host.running_task is None
    assert host.last_task_completed == "T1"


@pytest.mark.asyncio
async def test_secret_and_revision(seed, session_factory) -> None:
    await seed.distro()
    await seed.host("H1", agent_revision=None)

    async with session_factory() as session:
        secret = await create_secret(session, "H1")
        await set_agent_revision(session, "H1", "r7")
        await session.commit()

    async with session_factory() as session:
        host = await get_host(session, "H1")

    assert host.secret == secret
    assert len(secret) == 32
    assert host.agent_revision == "r7"
    assert host.provisioned is True


@pytest.mark.asyncio
async def test_assign_task_only_when_dispatchable(seed, session_factory) -> None:
    await seed.distro()
    await seed.task("T1")
    await seed.task("T2", activated=False)
    await seed.task("T3", status=TaskStatus.dispatched, host_id="H9")

    async with session_factory() as session:
        assert await assign_task_to_host(session, "T1", "H1") is True
        assert await assign_task_to_host(session, "T2", "H1") is False
        assert await assign_task_to_host(session, "T3", "H1") is False
        await session.commit()

    assigned = await seed.get_task("T1")
    assert assigned.status == TaskStatus.dispatched
    assert assigned.host_id == "H1"
    assert (await seed.get_task("T2")).status == TaskStatus.undispatched
    assert (await seed.get_task("T3")).host_id == "H9"


@pytest.mark.asyncio
async def test_get_tasks_skips_missing(seed, db_session: AsyncSession) -> None:
    await seed.distro()
    await seed.task("T1")

    tasks = await get_tasks(db_session, ["T1", "missing"])

    assert [task.id for task in tasks] == ["T1"]
    assert await get_tasks(db_session, []) == []
    assert await get_task(db_session, "missing") is None


@pytest.mark.asyncio
async def test_save_task_queue_replaces_items(seed, session_factory) -> None:
    await seed.distro()
    await seed.queue("ubuntu2204", ["T1", "T2", "T3"])
    await seed.queue("ubuntu2204", ["T3", "T1"])

    assert await seed.queued("ubuntu2204") == ["T3", "T1"]

    async with session_factory() as session:
        assert await get_task_queue(session, "ubuntu2204") is not None
        assert await get_task_queue(session, "windows") is None


@pytest.mark.asyncio
async def test_remove_queue_item_claims_once(seed, session_factory) -> None:
    await seed.distro()
    await seed.queue("ubuntu2204", ["T1", "T2"])

    async with session_factory() as session:
        assert await remove_queue_item(session, "ubuntu2204", "T1") is True
        assert await remove_queue_item(session, "ubuntu2204", "T1") is False
        await session.commit()

    async with session_factory() as session:
        assert await list_queued_task_ids(session, "ubuntu2204") == ["T2"]


@pytest.mark.asyncio
async def test_save_empty_queue(seed, session_factory) -> None:
    await seed.distro()

    async with session_factory() as session:
        queue = await save_task_queue(session, "ubuntu2204", [])
        await session.commit()

    assert queue.distro_id == "ubuntu2204"
    assert await seed.queued("ubuntu2204") == []


@pytest.mark.asyncio
async def test_missing_project_vars_is_none(db_session: AsyncSession) -> None:
    assert await get_project_vars(db_session, "mongodb") is None


@pytest.mark.asyncio
async def test_upsert_project_vars_replaces_mapping(session_factory) -> None:
    async with session_factory() as session:
        created = await upsert_project_vars(session, "mongodb", {"a": "1", "b": "2"})
        await session.commit()
    assert created.vars == {"a": "1", "b": "2"}

    async with session_factory() as session:
        await upsert_project_vars(session, "mongodb", {"b": "3"})
        await session.commit()

    async with session_factory() as session:
        stored = await get_project_vars(session, "mongodb")
        assert stored is not None
        assert stored.vars == {"b": "3"}
        assert await get_project_vars(session, "sandbox") is None
