"""Prompt planning: resolve a run configuration into batched worker assignments."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

from review_queue.config.settings import MAX_WORKERS
from review_queue.core.errors import ConfigurationError
from review_queue.core.models import RunConfiguration, Worker, WorkerStatus
from review_queue.utils import PromptSanitizer, PromptTooLongError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignment:
    """One prompt bound to a worker id."""

    worker_id: int
    prompt: str


@dataclass
class BatchPlan:
    """Ordered assignments and their split into sequential batches."""

    assignments: list[Assignment]
    batches: list[list[Assignment]] = field(default_factory=list)

    @property
    def prompt_count(self) -> int:
        return len(self.assignments)

    @property
    def batch_count(self) -> int:
        return len(self.batches)

    @property
    def is_batched(self) -> bool:
        return len(self.batches) > 1


def split_into_batches(assignments: list[Assignment], cap: int) -> list[list[Assignment]]:
    """Split assignments into ceil(P/cap) order-preserving chunks of at most cap."""
    if cap < 1:
        raise ValueError("cap must be >= 1")
    count = math.ceil(len(assignments) / cap)
    return [assignments[i * cap:(i + 1) * cap] for i in range(count)]


class PromptPlanner:
    """
    Resolve a RunConfiguration into an ordered, batched prompt plan.

    Every check happens here so a bad configuration is rejected before
    any process is spawned.
    """

    def __init__(
        self,
        concurrency_cap: int = MAX_WORKERS,
        sanitizer: PromptSanitizer | None = None,
    ) -> None:
        self.concurrency_cap = concurrency_cap
        self.sanitizer = sanitizer or PromptSanitizer()

    def resolve_prompts(self, config: RunConfiguration) -> list[str]:
        """Return the ordered prompt list for a configuration (unvalidated count)."""
        if config.uses_custom_prompts:
            prompts: list[str] = []
            for entry in config.custom_prompts or []:
                for line in entry.splitlines():
                    line = line.strip()
                    if line:
                        prompts.append(line)
            return prompts

        if not config.shared_prompt:
            return []
        return [config.shared_prompt] * config.worker_count

    def validate(self, config: RunConfiguration) -> None:
        """
        Validate everything except the prompt list.

        Raises:
            ConfigurationError: On any invalid setting.
        """
        if not config.workspace_path:
            raise ConfigurationError("Workspace path is empty.")
        if not Path(config.workspace_path).is_dir():
            raise ConfigurationError(f"Workspace does not exist: {config.workspace_path}")

        if not config.uses_custom_prompts:
            if not config.shared_prompt:
                raise ConfigurationError("Review prompt is empty.")
            if not 1 <= config.worker_count <= self.concurrency_cap:
                raise ConfigurationError(
                    f"Worker count must be between 1 and {self.concurrency_cap} "
                    f"(got {config.worker_count})."
                )

        if config.run_fix and not config.run_aggregate:
            raise ConfigurationError("The fix stage requires the aggregate stage.")
        if config.run_aggregate and not config.aggregate_prompt:
            raise ConfigurationError("Aggregate prompt is empty.")
        if config.run_fix and not config.fix_prompt:
            raise ConfigurationError("Fix prompt is empty.")

    def plan(self, config: RunConfiguration) -> BatchPlan:
        """
        Build the batch plan for a fresh run.

        Raises:
            ConfigurationError: If the configuration is invalid or yields no prompts.
        """
        self.validate(config)
        prompts = self.resolve_prompts(config)
        if not prompts:
            raise ConfigurationError("No review prompts supplied.")

        assignments = [
            Assignment(worker_id=index + 1, prompt=self._check_prompt(prompt))
            for index, prompt in enumerate(prompts)
        ]
        plan = BatchPlan(
            assignments=assignments,
            batches=split_into_batches(assignments, self.concurrency_cap),
        )
        logger.info(
            "Planned %d prompt(s) in %d batch(es) (cap %d)",
            plan.prompt_count, plan.batch_count, self.concurrency_cap,
        )
        return plan

    def plan_rerun(self, workers: list[Worker]) -> BatchPlan:
        """Plan only the failed workers, keeping their ids and order."""
        assignments = [
            Assignment(worker_id=w.id, prompt=w.prompt)
            for w in sorted(workers, key=lambda w: w.id)
            if w.status == WorkerStatus.FAILED
        ]
        if not assignments:
            return BatchPlan(assignments=[], batches=[])
        return BatchPlan(
            assignments=assignments,
            batches=split_into_batches(assignments, self.concurrency_cap),
        )

    def _check_prompt(self, prompt: str) -> str:
        try:
            return self.sanitizer.validate_prompt(prompt)
        except PromptTooLongError as e:
            raise ConfigurationError(str(e)) from e
