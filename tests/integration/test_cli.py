"""Integration tests for CLI commands.

Each test writes a TOML configuration pointing at a temporary SQLite
database and agent executables directory, then drives the Typer app
through CliRunner. Database setup and checks run in their own event
loops because the CLI commands call ``asyncio.run`` themselves.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from typer.testing import CliRunner

from buildfarm.database.connection import get_session_factory
from buildfarm.database.models import Base, TaskStatus
from buildfarm.database.queries.distro import create_distro
from buildfarm.database.queries.task import create_task, get_task
from buildfarm.main import app

pytestmark = pytest.mark.integration


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{(tmp_path / 'cli.db').as_posix()}"


@pytest.fixture
def config_file(tmp_path: Path, database_url: str) -> Path:
    executables = tmp_path / "executables"
    executables.mkdir()
    (executables / "version").write_text("r42\n")

    path = tmp_path / "buildfarm.toml"
    path.write_text(
        f"[database]\n"
        f"url = '{database_url}'\n"
        f"\n"
        f"[logging]\n"
        f"format = 'console'\n"
        f"\n"
        f"[gateway]\n"
        f"executables_dir = '{executables.as_posix()}'\n"
    )
    return path


def _run(coro):
    return asyncio.run(coro)


async def _prepare(database_url: str, status: TaskStatus) -> None:
    engine = create_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with get_session_factory(engine)() as session:
            await create_distro(session, "ubuntu2204", "linux_amd64", "/data/agent")
            await create_task(session, "T1", "ubuntu2204", status=status)
            await session.commit()
    finally:
        await engine.dispose()


async def _load_task(database_url: str, task_id: str):
    engine = create_async_engine(database_url)
    try:
        async with get_session_factory(engine)() as session:
            return await get_task(session, task_id)
    finally:
        await engine.dispose()


class TestAgentRevision:
    def test_prints_revision(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["--config", str(config_file), "agent-revision"])

        assert result.exit_code == 0, result.output
        assert "r42" in result.output

    def test_missing_version_file(self, cli_runner, config_file, tmp_path):
        (tmp_path / "executables" / "version").unlink()

        result = cli_runner.invoke(app, ["--config", str(config_file), "agent-revision"])

        assert result.exit_code == 1
        assert "Error reading agent revision" in result.output


class TestTaskRestart:
    def test_restarts_finished_task(self, cli_runner, config_file, database_url):
        _run(_prepare(database_url, TaskStatus.failed))

        result = cli_runner.invoke(app, ["-c", str(config_file), "task", "restart", "T1"])

        assert result.exit_code == 0, result.output
        assert "Task Restarted" in result.output

        task = _run(_load_task(database_url, "T1"))
        assert task.status == TaskStatus.undispatched
        assert task.execution == 1
        assert task.activated is True

    def test_unfinished_task_is_rejected(self, cli_runner, config_file, database_url):
        _run(_prepare(database_url, TaskStatus.started))

        result = cli_runner.invoke(app, ["-c", str(config_file), "task", "restart", "T1"])

        assert result.exit_code == 1
        assert "Error restarting task" in result.output
        assert _run(_load_task(database_url, "T1")).status == TaskStatus.started

    def test_unknown_task(self, cli_runner, config_file, database_url):
        _run(_prepare(database_url, TaskStatus.failed))

        result = cli_runner.invoke(app, ["-c", str(config_file), "task", "restart", "nope"])

        assert result.exit_code == 1


class TestHostProvision:
    def test_unknown_host(self, cli_runner, config_file, database_url):
        _run(_prepare(database_url, TaskStatus.failed))

        result = cli_runner.invoke(app, ["-c", str(config_file), "host", "provision", "H404"])

        assert result.exit_code == 1
        assert "H404" in result.output


def test_invalid_config_exits(cli_runner, tmp_path):
    bad = tmp_path / "bad.toml"
    bad.write_text("[locks]\nbackend = 'zookeeper'\n")

    result = cli_runner.invoke(app, ["-c", str(bad), "agent-revision"])

    assert result.exit_code == 1
    assert "Error loading configuration" in result.output
