"""Batch runner: drives review workers under the concurrency cap."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from review_queue.core.cancellation import CancellationToken
from review_queue.core.event_log import RunEventLog
from review_queue.core.models import ErrorKind, RunConfiguration, Worker, WorkerStatus
from review_queue.core.planner import Assignment, BatchPlan
from review_queue.core.supervisor import AgentSupervisor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerCounts:
    """Progress counters over the worker list."""

    total: int
    pending: int
    running: int
    completed: int
    failed: int

    @property
    def finished(self) -> int:
        return self.completed + self.failed


class WorkerPool:
    """
    Owns the ordered worker list for one run and executes batch plans.

    Batches run strictly in order: every supervisor of batch k is terminal
    before any supervisor of batch k+1 starts. A batch where every worker
    failed does not stop later batches. The cancellation token is checked
    between batches; workers of batches that never started are settled to
    failed(cancelled) without spawning.
    """

    def __init__(
        self,
        supervisor: AgentSupervisor,
        events: RunEventLog,
    ) -> None:
        self.supervisor = supervisor
        self.events = events
        self._workers: dict[int, Worker] = {}

    @property
    def workers(self) -> list[Worker]:
        """Workers ordered by id."""
        return [self._workers[i] for i in sorted(self._workers)]

    def get(self, worker_id: int) -> Worker:
        return self._workers[worker_id]

    def create_workers(self, plan: BatchPlan) -> list[Worker]:
        """Create one pending worker per assignment."""
        for assignment in plan.assignments:
            if assignment.worker_id in self._workers:
                raise ValueError(f"Worker id {assignment.worker_id} already exists")
            self._workers[assignment.worker_id] = Worker(
                id=assignment.worker_id,
                prompt=assignment.prompt,
            )
        return self.workers

    def counts(self) -> WorkerCounts:
        statuses = [w.status for w in self._workers.values()]
        return WorkerCounts(
            total=len(statuses),
            pending=statuses.count(WorkerStatus.PENDING),
            running=statuses.count(WorkerStatus.RUNNING),
            completed=statuses.count(WorkerStatus.COMPLETED),
            failed=statuses.count(WorkerStatus.FAILED),
        )

    def completed_workers(self) -> list[Worker]:
        return [w for w in self.workers if w.status == WorkerStatus.COMPLETED]

    def failed_workers(self) -> list[Worker]:
        return [w for w in self.workers if w.status == WorkerStatus.FAILED]

    async def run_plan(
        self,
        plan: BatchPlan,
        job_dir: Path,
        config: RunConfiguration,
        token: CancellationToken,
    ) -> WorkerCounts:
        """Execute every batch of a plan against existing workers."""
        total_batches = plan.batch_count

        for index, batch in enumerate(plan.batches, start=1):
            if token.is_cancelled:
                self._settle_unstarted(plan.batches[index - 1:])
                self.events.warning(
                    f"Run cancelled before batch {index}/{total_batches}; "
                    f"{sum(len(b) for b in plan.batches[index - 1:])} worker(s) not started"
                )
                break

            ids = [a.worker_id for a in batch]
            self.events.info(
                f"Batch {index}/{total_batches} started: workers {_format_ids(ids)}"
            )

            # Let every worker of the batch settle before surfacing an unexpected error
            results = await asyncio.gather(*(
                self.supervisor.run_worker(self._workers[a.worker_id], job_dir, config, token)
                for a in batch
            ), return_exceptions=True)
            for outcome in results:
                if isinstance(outcome, Exception):
                    raise outcome

            batch_workers = [self._workers[i] for i in ids]
            failed = sum(1 for w in batch_workers if w.status == WorkerStatus.FAILED)
            self.events.info(
                f"Batch {index}/{total_batches} finished: "
                f"{len(batch) - failed} completed, {failed} failed"
            )
            if failed == len(batch) and not token.is_cancelled:
                self.events.warning(f"Every worker in batch {index}/{total_batches} failed")

        return self.counts()

    def prepare_rerun(self, plan: BatchPlan) -> list[Worker]:
        """Reset the planned failed workers to pending, keeping their ids."""
        reset = []
        for assignment in plan.assignments:
            worker = self._workers[assignment.worker_id]
            worker.reset_for_rerun()
            reset.append(worker)
        return reset

    def _settle_unstarted(self, batches: list[list[Assignment]]) -> None:
        for batch in batches:
            for assignment in batch:
                worker = self._workers[assignment.worker_id]
                if worker.status == WorkerStatus.PENDING:
                    worker.mark_failed("Cancelled", ErrorKind.CANCELLED)
                    self.supervisor.notify(worker)


def _format_ids(ids: list[int]) -> str:
    if len(ids) > 2 and ids == list(range(ids[0], ids[-1] + 1)):
        return f"{ids[0]}-{ids[-1]}"
    return ", ".join(str(i) for i in ids)
