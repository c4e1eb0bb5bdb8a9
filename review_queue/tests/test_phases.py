"""Tests for the aggregation and fix stages."""

from __future__ import annotations

from pathlib import Path

import pytest

from review_queue.core.cancellation import CancellationToken
from review_queue.core.errors import PhaseError, RunCancelledError
from review_queue.core.models import ErrorKind, Worker, WorkerStatus
from review_queue.core.phases import (
    AGGREGATE_INSTRUCTION,
    FIX_INSTRUCTION,
    AggregationPhase,
    FixPhase,
    build_aggregate_prompt,
    build_fix_prompt,
)
from review_queue.core.supervisor import AgentSupervisor


def completed_worker(tmp_path: Path, worker_id: int, text: str) -> Worker:
    output = tmp_path / f"worker-{worker_id}.md"
    output.write_text(text)
    return Worker(id=worker_id, prompt=f"prompt {worker_id}", status=WorkerStatus.COMPLETED, output_path=str(output))


class TestPromptBuilders:
    """Tests for prompt construction."""

    def test_aggregate_prompt_uses_completed_workers_only(self, tmp_path):
        workers = [
            completed_worker(tmp_path, 1, "issue one"),
            Worker(id=2, prompt="prompt 2", status=WorkerStatus.FAILED, error="boom"),
            completed_worker(tmp_path, 3, "issue three"),
        ]

        prompt = build_aggregate_prompt("Merge these", workers)

        assert prompt.startswith("Merge these\n\n" + AGGREGATE_INSTRUCTION)
        assert "## Worker 1" in prompt
        assert "## Worker 3" in prompt
        assert "## Worker 2" not in prompt
        assert "issue three" in prompt
        assert f"Output file: {tmp_path / 'worker-1.md'}" in prompt
        assert prompt.index("## Worker 1") < prompt.index("## Worker 3")

    def test_fix_prompt_embeds_aggregate(self, tmp_path):
        aggregate = tmp_path / "aggregate.md"
        aggregate.write_text("1. SQL injection in db.py")

        prompt = build_fix_prompt("Fix them", aggregate)

        assert prompt.startswith("Fix them\n\n" + FIX_INSTRUCTION)
        assert str(aggregate) in prompt
        assert prompt.rstrip().endswith("1. SQL injection in db.py")


class TestStageGating:
    """Tests for when aggregation and fix run."""

    def test_aggregation_needs_a_completed_worker(self, tmp_path, make_config):
        done = [completed_worker(tmp_path, 1, "x")]
        failed = [Worker(id=1, prompt="p", status=WorkerStatus.FAILED)]

        assert AggregationPhase.should_run(make_config(), done)
        assert not AggregationPhase.should_run(make_config(), failed)
        assert not AggregationPhase.should_run(make_config(run_aggregate=False, run_fix=False), done)

    def test_fix_needs_aggregate_output(self, tmp_path, make_config):
        assert FixPhase.should_run(make_config(), tmp_path / "aggregate.md")
        assert not FixPhase.should_run(make_config(), None)
        assert not FixPhase.should_run(make_config(run_fix=False), tmp_path / "aggregate.md")


class TestStageExecution:
    """Tests for running the stages against the fake agent."""

    @pytest.mark.asyncio
    async def test_aggregate_then_fix(self, tmp_path, settings, fake_adapter, make_config):
        supervisor = AgentSupervisor(fake_adapter, settings)
        config = make_config()
        workers = [completed_worker(tmp_path, 1, "found a bug")]
        job_dir = tmp_path / "job"

        aggregate_path = await AggregationPhase(supervisor).run(workers, job_dir, config, CancellationToken())
        fix_path = await FixPhase(supervisor).run(aggregate_path, job_dir, config, CancellationToken())

        assert aggregate_path == job_dir / "aggregate.md"
        assert (job_dir / "aggregate" / "stdout.log").exists()
        assert "found a bug" in aggregate_path.read_text()
        assert fix_path == job_dir / "fix.md"
        assert FIX_INSTRUCTION in fix_path.read_text()
        assert [r.review_mode for r in fake_adapter.requests] == [False, False]

    @pytest.mark.asyncio
    async def test_aggregate_failure_is_phase_error(self, tmp_path, settings, fake_adapter, make_config):
        supervisor = AgentSupervisor(fake_adapter, settings)
        config = make_config(aggregate_prompt="FAIL during aggregation")
        workers = [completed_worker(tmp_path, 1, "found a bug")]

        with pytest.raises(PhaseError) as exc_info:
            await AggregationPhase(supervisor).run(workers, tmp_path / "job", config, CancellationToken())

        assert exc_info.value.phase == "aggregate"
        assert exc_info.value.kind == ErrorKind.AGENT_EXIT
        assert exc_info.value.message.startswith("aggregate failed:")

    @pytest.mark.asyncio
    async def test_cancelled_stage_raises_cancelled(self, tmp_path, settings, fake_adapter, make_config):
        token = CancellationToken()
        token.cancel()
        workers = [completed_worker(tmp_path, 1, "x")]

        with pytest.raises(RunCancelledError):
            await AggregationPhase(AgentSupervisor(fake_adapter, settings)).run(
                workers, tmp_path / "job", make_config(), token,
            )

    @pytest.mark.asyncio
    async def test_aggregation_without_completed_workers(self, tmp_path, settings, fake_adapter, make_config):
        workers = [Worker(id=1, prompt="p", status=WorkerStatus.FAILED)]

        with pytest.raises(ValueError):
            await AggregationPhase(AgentSupervisor(fake_adapter, settings)).run(
                workers, tmp_path / "job", make_config(), CancellationToken(),
            )
