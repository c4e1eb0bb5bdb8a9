"""Aggregation and fix stages: single agent invocations after the review batches."""

from __future__ import annotations

import logging
from pathlib import Path

from review_queue.cli_adapters.base import AgentRequest, CLIResult
from review_queue.core.cancellation import CancellationToken
from review_queue.core.errors import PhaseError, RunCancelledError
from review_queue.core.models import RunConfiguration, Worker, WorkerStatus
from review_queue.core.supervisor import AgentInvocation, AgentSupervisor, error_for_result

logger = logging.getLogger(__name__)

AGGREGATE_INSTRUCTION = "Please validate, deduplicate, and provide one complete issue list."
FIX_INSTRUCTION = "Use this validated issue list as the source of truth:"


def build_aggregate_prompt(aggregate_prompt: str, workers: list[Worker]) -> str:
    """
    Build the aggregation prompt from completed workers only.

    Each section carries the worker id, its review prompt, the path of its
    output artifact and the artifact's contents.
    """
    sections = []
    for worker in workers:
        if worker.status != WorkerStatus.COMPLETED:
            continue
        body = _read_artifact(worker.output_path) or "No output captured."
        sections.append(
            f"## Worker {worker.id}\n"
            f"Prompt:\n{worker.prompt}\n\n"
            f"Output file: {worker.output_path}\n\n"
            f"Output:\n{body}"
        )

    return f"{aggregate_prompt}\n\n{AGGREGATE_INSTRUCTION}\n\n" + "\n\n".join(sections)


def build_fix_prompt(fix_prompt: str, aggregate_path: Path) -> str:
    """Build the fix prompt around the aggregate artifact."""
    aggregate = _read_artifact(str(aggregate_path))
    return (
        f"{fix_prompt}\n\n"
        f"{FIX_INSTRUCTION}\n"
        f"(from {aggregate_path})\n\n"
        f"{aggregate}"
    )


class _SingleInvocationPhase:
    """Shared mechanics: one supervised invocation with job-scoped artifacts."""

    NAME = ""
    OUTPUT_FILE = ""

    def __init__(self, supervisor: AgentSupervisor) -> None:
        self.supervisor = supervisor

    def output_path(self, job_dir: Path) -> Path:
        return job_dir / self.OUTPUT_FILE

    async def _invoke(
        self,
        prompt: str,
        job_dir: Path,
        config: RunConfiguration,
        token: CancellationToken,
    ) -> CLIResult:
        artifact_dir = job_dir / self.NAME
        invocation = AgentInvocation(
            label=self.NAME,
            request=AgentRequest(
                prompt=prompt,
                output_path=self.output_path(job_dir),
                model=config.model,
                full_auto=config.full_auto,
                skip_git_repo_check=config.skip_git_repo_check,
                ephemeral=config.ephemeral,
                extra_args=list(self.supervisor.settings.extra_args),
            ),
            stdout_path=artifact_dir / "stdout.log",
            stderr_path=artifact_dir / "stderr.log",
            working_dir=Path(config.workspace_path),
            timeout_seconds=self.supervisor.settings.get_timeout_for_phase(self.NAME),
        )
        result = await self.supervisor.run(invocation, token)

        error = error_for_result(result)
        if error is None:
            logger.info("%s stage finished in %.1fs", self.NAME, result.duration_seconds)
            return result
        if isinstance(error, RunCancelledError):
            raise error
        raise PhaseError(self.NAME, error)


class AggregationPhase(_SingleInvocationPhase):
    """Merge and deduplicate completed worker outputs into ``aggregate.md``."""

    NAME = "aggregate"
    OUTPUT_FILE = "aggregate.md"

    @staticmethod
    def should_run(config: RunConfiguration, workers: list[Worker]) -> bool:
        return config.run_aggregate and any(w.status == WorkerStatus.COMPLETED for w in workers)

    async def run(
        self,
        workers: list[Worker],
        job_dir: Path,
        config: RunConfiguration,
        token: CancellationToken,
    ) -> Path:
        """
        Run the aggregation invocation.

        Returns:
            Path of the aggregate artifact.

        Raises:
            PhaseError: If the agent failed.
            RunCancelledError: If the run was cancelled meanwhile.
            ValueError: If no worker completed.
        """
        if not any(w.status == WorkerStatus.COMPLETED for w in workers):
            raise ValueError("Aggregation needs at least one completed worker")

        prompt = build_aggregate_prompt(config.aggregate_prompt, workers)
        result = await self._invoke(prompt, job_dir, config, token)
        return result.output_path


class FixPhase(_SingleInvocationPhase):
    """Apply remediation driven by the aggregate artifact; writes ``fix.md``."""

    NAME = "fix"
    OUTPUT_FILE = "fix.md"

    @staticmethod
    def should_run(config: RunConfiguration, aggregate_path: Path | None) -> bool:
        return config.run_fix and aggregate_path is not None

    async def run(
        self,
        aggregate_path: Path,
        job_dir: Path,
        config: RunConfiguration,
        token: CancellationToken,
    ) -> Path:
        prompt = build_fix_prompt(config.fix_prompt, aggregate_path)
        result = await self._invoke(prompt, job_dir, config, token)
        return result.output_path


def _read_artifact(path: str | None) -> str:
    if not path:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8", errors="replace").strip()
    except OSError as e:
        logger.warning("Could not read artifact %s: %s", path, e)
        return ""
