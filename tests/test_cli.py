"""Tests for the click command-line interface."""

import asyncio
import sys
from pathlib import Path
from typing import Generator

import pytest
from click.testing import CliRunner

from jobqueue.cli import cli
from jobqueue.config import get_settings
from jobqueue.db.session import get_engine, get_sessionmaker
from jobqueue.models import Job, JobState


def clear_caches() -> None:
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()


@pytest.fixture
def runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[CliRunner, None, None]:
    """A CLI runner pointed at a fresh SQLite database."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    clear_caches()
    runner = CliRunner()
    result = runner.invoke(cli, ["init-db"])
    assert result.exit_code == 0, result.output
    yield runner
    clear_caches()


def fetch_job(job_id: int) -> Job:
    async def _fetch() -> Job:
        try:
            async with get_sessionmaker()() as session:
                return await session.get(Job, job_id)
        finally:
            await get_engine().dispose()

    return asyncio.run(_fetch())


class TestCli:
    """Tests for the jobqueue command group."""

    def test_enqueue(self, runner: CliRunner) -> None:
        """Test enqueuing a job with options."""
        result = runner.invoke(
            cli, ["enqueue", "--queue", "mail", "--priority", "5", "--max-retries", "2", "send", "42"]
        )

        assert result.exit_code == 0, result.output
        assert "Enqueued job 1 on queue 'mail'." in result.output
        job = fetch_job(1)
        assert (job.command, job.args, job.priority, job.max_retries) == ("send", ["42"], 5, 2)

    def test_enqueue_with_missing_dependency(self, runner: CliRunner) -> None:
        """Test unknown dependencies abort the enqueue."""
        result = runner.invoke(cli, ["enqueue", "--depends-on", "7", "send"])

        assert result.exit_code == 1
        assert "Could not enqueue job" in result.output

    def test_mark_incomplete_missing_job(self, runner: CliRunner) -> None:
        """Test the not-found message and exit code."""
        result = runner.invoke(cli, ["mark-incomplete", "99"])

        assert result.exit_code == 1
        assert "Job was not found." in result.output

    def test_mark_incomplete_pending_job(self, runner: CliRunner) -> None:
        """Test jobs that never started cannot be marked incomplete."""
        runner.invoke(cli, ["enqueue", "send"])

        result = runner.invoke(cli, ["mark-incomplete", "1"])

        assert result.exit_code == 1
        assert "cannot change" in result.output

    def test_run_executes_queued_jobs(self, runner: CliRunner) -> None:
        """Test the run command processes the queue and exits at its max runtime."""
        runner.invoke(cli, ["enqueue", "--", sys.executable, "-c", "print('hello')"])

        result = runner.invoke(
            cli, ["run", "--worker-name", "cli-runner", "--max-runtime", "1", "--idle-time", "0.05"]
        )

        assert result.exit_code == 0, result.output
        job = fetch_job(1)
        assert job.state == JobState.FINISHED
        assert job.output == "hello\n"
        assert job.worker_name == "cli-runner"

    def test_recover_stale(self, runner: CliRunner) -> None:
        """Test stale recovery with nothing to recover."""
        result = runner.invoke(cli, ["recover-stale", "--threshold-seconds", "60"])

        assert result.exit_code == 0
        assert "Recovered 0 stale job(s)." in result.output
