"""Tests for single-process agent supervision."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from review_queue.cli_adapters.base import AgentRequest, CLIStatus
from review_queue.config.settings import PhaseTimeouts, Settings
from review_queue.core.cancellation import CancellationToken
from review_queue.core.errors import AgentExitError, ProcessSpawnError, RunCancelledError
from review_queue.core.event_log import RunEventLog
from review_queue.core.models import ErrorKind, Worker, WorkerStatus
from review_queue.core.supervisor import (
    AgentInvocation,
    AgentSupervisor,
    error_for_result,
    worker_paths,
)

from conftest import FakeAgentAdapter


def make_invocation(tmp_path: Path, prompt: str, timeout: float = 30) -> AgentInvocation:
    return AgentInvocation(
        label="test",
        request=AgentRequest(prompt=prompt, output_path=tmp_path / "out" / "output.md"),
        stdout_path=tmp_path / "out" / "stdout.log",
        stderr_path=tmp_path / "out" / "stderr.log",
        working_dir=tmp_path,
        timeout_seconds=timeout,
    )


class TestAgentSupervisorRun:
    """Tests for AgentSupervisor.run."""

    @pytest.mark.asyncio
    async def test_success_writes_artifacts(self, tmp_path, settings, fake_adapter):
        """Prompt arrives on stdin and the output file is written."""
        supervisor = AgentSupervisor(fake_adapter, settings)
        invocation = make_invocation(tmp_path, "Review module a")

        result = await supervisor.run(invocation, CancellationToken())

        assert result.status == CLIStatus.SUCCESS
        assert result.exit_code == 0
        assert result.success
        assert invocation.request.output_path.read_text().startswith("REVIEWED\nReview module a")
        assert invocation.stdout_path.exists()
        assert invocation.stderr_path.exists()

    @pytest.mark.asyncio
    async def test_nonzero_exit_uses_stderr_as_error(self, tmp_path, settings, fake_adapter):
        supervisor = AgentSupervisor(fake_adapter, settings)
        invocation = make_invocation(tmp_path, "FAIL badly")

        result = await supervisor.run(invocation, CancellationToken())

        assert result.status == CLIStatus.ERROR
        assert result.exit_code == 3
        assert "agent crashed: FAIL badly" in result.error
        assert "agent crashed" in invocation.stderr_path.read_text()

        error = error_for_result(result)
        assert isinstance(error, AgentExitError)
        assert error.exit_code == 3

    @pytest.mark.asyncio
    async def test_error_preview_is_truncated(self, tmp_path, settings):
        """Only the tail goes to the error; the artifact keeps everything."""
        adapter = FakeAgentAdapter(script="import sys; sys.stdin.read(); sys.stderr.write('x' * 5000); sys.exit(1)")
        supervisor = AgentSupervisor(adapter, settings)
        invocation = make_invocation(tmp_path, "anything")

        result = await supervisor.run(invocation, CancellationToken())

        assert len(result.error) <= settings.error_preview_chars
        assert result.error.startswith("[...]")
        assert len(invocation.stderr_path.read_text()) == 5000

    @pytest.mark.asyncio
    async def test_exit_zero_without_output_is_failure(self, tmp_path, settings, fake_adapter):
        supervisor = AgentSupervisor(fake_adapter, settings)

        result = await supervisor.run(make_invocation(tmp_path, "NOOUTPUT"), CancellationToken())

        assert result.status == CLIStatus.MISSING_OUTPUT
        assert not result.success
        assert isinstance(error_for_result(result), AgentExitError)

    @pytest.mark.asyncio
    async def test_output_recovered_from_json_stream(self, tmp_path, settings, fake_adapter):
        """The last agent_message on stdout stands in for a missing output file."""
        supervisor = AgentSupervisor(fake_adapter, settings)
        invocation = make_invocation(tmp_path, "JSONL please")

        result = await supervisor.run(invocation, CancellationToken())

        assert result.status == CLIStatus.SUCCESS
        assert invocation.request.output_path.read_text() == "recovered: JSONL please"

    @pytest.mark.asyncio
    async def test_stale_output_is_removed(self, tmp_path, settings, fake_adapter):
        """Output left over from an earlier attempt never counts as success."""
        invocation = make_invocation(tmp_path, "NOOUTPUT")
        invocation.request.output_path.parent.mkdir(parents=True)
        invocation.request.output_path.write_text("old findings")

        result = await AgentSupervisor(fake_adapter, settings).run(invocation, CancellationToken())

        assert result.status == CLIStatus.MISSING_OUTPUT
        assert not invocation.request.output_path.exists()

    @pytest.mark.asyncio
    async def test_missing_executable_is_spawn_error(self, tmp_path, settings):
        adapter = FakeAgentAdapter(executable=None)
        invocation = make_invocation(tmp_path, "Review")

        result = await AgentSupervisor(adapter, settings).run(invocation, CancellationToken())

        assert result.status == CLIStatus.SPAWN_ERROR
        assert "not found" in result.error
        assert isinstance(error_for_result(result), ProcessSpawnError)
        assert invocation.stderr_path.exists()

    @pytest.mark.asyncio
    async def test_unlaunchable_executable_is_spawn_error(self, tmp_path, settings):
        adapter = FakeAgentAdapter(executable=str(tmp_path / "no-such-binary"))

        result = await AgentSupervisor(adapter, settings).run(
            make_invocation(tmp_path, "Review"), CancellationToken()
        )

        assert result.status == CLIStatus.SPAWN_ERROR
        assert result.error.startswith("Failed to start agent")

    @pytest.mark.asyncio
    async def test_cancel_terminates_child(self, tmp_path, settings, fake_adapter):
        supervisor = AgentSupervisor(fake_adapter, settings)
        token = CancellationToken()

        task = asyncio.ensure_future(supervisor.run(make_invocation(tmp_path, "HANG"), token))
        await asyncio.sleep(0.5)
        token.cancel()
        result = await asyncio.wait_for(task, timeout=10)

        assert result.status == CLIStatus.CANCELLED
        assert isinstance(error_for_result(result), RunCancelledError)

    @pytest.mark.asyncio
    async def test_already_cancelled_token_spawns_nothing(self, tmp_path, settings, fake_adapter):
        token = CancellationToken()
        token.cancel()
        invocation = make_invocation(tmp_path, "Review")

        result = await AgentSupervisor(fake_adapter, settings).run(invocation, token)

        assert result.status == CLIStatus.CANCELLED
        assert fake_adapter.requests == []
        assert not invocation.stdout_path.exists()

    @pytest.mark.asyncio
    async def test_timeout_terminates_child(self, tmp_path, fake_adapter):
        settings = Settings(timeouts=PhaseTimeouts(review=1), terminate_grace_seconds=1.0)
        supervisor = AgentSupervisor(fake_adapter, settings)

        result = await supervisor.run(make_invocation(tmp_path, "HANG", timeout=0.5), CancellationToken())

        assert result.status == CLIStatus.TIMEOUT
        assert "Timed out" in result.error
        assert isinstance(error_for_result(result), AgentExitError)


class TestRunWorker:
    """Tests for AgentSupervisor.run_worker."""

    @pytest.mark.asyncio
    async def test_worker_completes(self, tmp_path, settings, fake_adapter, make_config):
        events = RunEventLog()
        updates: list[WorkerStatus] = []
        supervisor = AgentSupervisor(
            fake_adapter, settings, events=events,
            on_worker_update=lambda w: updates.append(w.status),
        )
        worker = Worker(id=2, prompt="Review module b")

        await supervisor.run_worker(worker, tmp_path, make_config(), CancellationToken())

        paths = worker_paths(tmp_path, 2)
        assert worker.status == WorkerStatus.COMPLETED
        assert worker.exit_code == 0
        assert worker.output_path == str(paths.output)
        assert paths.directory.name == "worker-02"
        assert worker.started_at <= worker.finished_at
        assert updates == [WorkerStatus.RUNNING, WorkerStatus.COMPLETED]
        assert fake_adapter.requests[0].review_mode is True
        assert any("Worker 2 started" in e.message for e in events.events)

    @pytest.mark.asyncio
    async def test_worker_failure_is_warning(self, tmp_path, settings, fake_adapter, make_config):
        events = RunEventLog()
        supervisor = AgentSupervisor(fake_adapter, settings, events=events)
        worker = Worker(id=1, prompt="FAIL now")

        await supervisor.run_worker(worker, tmp_path, make_config(), CancellationToken())

        assert worker.status == WorkerStatus.FAILED
        assert worker.error_kind == ErrorKind.AGENT_EXIT
        assert worker.exit_code == 3
        warnings = [e for e in events.events if e.level.value == "warning"]
        assert warnings and "Worker 1 failed" in warnings[-1].message

    @pytest.mark.asyncio
    async def test_cancelled_worker_never_spawns(self, tmp_path, settings, fake_adapter, make_config):
        token = CancellationToken()
        token.cancel()
        worker = Worker(id=1, prompt="Review")

        await AgentSupervisor(fake_adapter, settings).run_worker(worker, tmp_path, make_config(), token)

        assert worker.status == WorkerStatus.FAILED
        assert worker.error_kind == ErrorKind.CANCELLED
        assert worker.started_at is None
        assert fake_adapter.requests == []

    @pytest.mark.asyncio
    async def test_unwritable_artifacts_fail_worker(self, tmp_path, settings, fake_adapter, make_config):
        """Filesystem errors while preparing artifacts stay local to the worker."""
        (tmp_path / "workers").write_text("not a directory")
        worker = Worker(id=1, prompt="Review")

        await AgentSupervisor(fake_adapter, settings).run_worker(
            worker, tmp_path, make_config(), CancellationToken()
        )

        assert worker.status == WorkerStatus.FAILED
        assert worker.error_kind == ErrorKind.PROCESS_SPAWN
        assert "Could not prepare worker artifacts" in worker.error
        assert fake_adapter.requests == []
