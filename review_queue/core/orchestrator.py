"""Run coordinator for the review queue.

A run goes through a fixed phase sequence:

    idle -> preparing -> reviewing -> [aggregating] -> [fixing] -> completed | failed | cancelled

- Review prompts fan out to parallel agent processes, at most MAX_WORKERS at once
- Batches run strictly one after another
- Aggregation merges the completed outputs into one issue list
- Fix applies that list
- Every finished run leaves a history record in the workspace
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Callable

from review_queue.cli_adapters import CLIAdapter, get_adapter
from review_queue.config.presets import apply_preset
from review_queue.config.settings import Settings, get_settings
from review_queue.core.cancellation import CancellationToken
from review_queue.core.errors import (
    ConfigurationError,
    PersistenceError,
    PhaseError,
    RunCancelledError,
    RunInProgressError,
)
from review_queue.core.event_log import RunEventLog
from review_queue.core.history import HistoryRefresher, HistoryStore, make_job_id
from review_queue.core.models import (
    ErrorKind,
    HistoryItem,
    ReviewQueuePhase,
    RunConfiguration,
    RunEvent,
    RunSummary,
    Worker,
)
from review_queue.core.phases import AggregationPhase, FixPhase
from review_queue.core.planner import BatchPlan, PromptPlanner
from review_queue.core.supervisor import AgentSupervisor
from review_queue.core.worker_pool import WorkerCounts, WorkerPool

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]


def all_workers_failed_message(workers: list[Worker]) -> str:
    lines = [f" Worker {w.id}: {w.error or 'unknown error'}" for w in workers]
    return "All review workers failed:\n" + "\n".join(lines)


class ReviewQueue:
    """
    Coordinates one review run at a time and exposes its observable state.

    State changes are announced to subscribers; a subscriber re-reads the
    properties (or ``snapshot()``) it cares about.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        adapter: CLIAdapter | None = None,
        history_store: HistoryStore | None = None,
        planner: PromptPlanner | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.adapter = adapter or get_adapter(self.settings.agent_cli)
        self.history = history_store or HistoryStore(self.settings)
        self.planner = planner or PromptPlanner(self.settings.max_workers)

        self.workspace_path: str | None = None
        self._listeners: list[ChangeListener] = []
        self._refresher = HistoryRefresher(
            self.history,
            lambda: self.workspace_path,
            on_change=self._notify,
        )

        self._task: asyncio.Task | None = None
        self._token: CancellationToken | None = None

        self.phase = ReviewQueuePhase.IDLE
        self.event_log = RunEventLog()
        self.config: RunConfiguration | None = None
        self.pool: WorkerPool | None = None
        self.job_id: str | None = None
        self.job_path: str | None = None
        self.job_created_at: datetime | None = None
        self.run_started_at: datetime | None = None
        self.run_finished_at: datetime | None = None
        self.aggregate_output_path: str | None = None
        self.fix_output_path: str | None = None
        self.error_message: str | None = None
        self.last_run_summary: RunSummary | None = None

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def workers(self) -> list[Worker]:
        return self.pool.workers if self.pool is not None else []

    @property
    def events(self) -> list[RunEvent]:
        return self.event_log.tail(self.settings.event_tail_limit)

    @property
    def counts(self) -> WorkerCounts:
        if self.pool is None:
            return WorkerCounts(total=0, pending=0, running=0, completed=0, failed=0)
        return self.pool.counts()

    @property
    def history_items(self) -> list[HistoryItem]:
        return self._refresher.items

    @property
    def is_history_refreshing(self) -> bool:
        return self._refresher.is_refreshing

    @property
    def last_history_refresh_at(self) -> datetime | None:
        return self._refresher.last_refresh_at

    @property
    def history_warning(self) -> str | None:
        return self._refresher.warning

    def snapshot(self) -> dict[str, Any]:
        """JSON-able view of the whole observable state."""
        counts = self.counts
        return {
            "phase": self.phase.value,
            "is_running": self.is_running,
            "workspace_path": self.workspace_path,
            "job_id": self.job_id,
            "job_path": self.job_path,
            "run_started_at": _iso(self.run_started_at),
            "run_finished_at": _iso(self.run_finished_at),
            "aggregate_output_path": self.aggregate_output_path,
            "fix_output_path": self.fix_output_path,
            "error_message": self.error_message,
            "counts": {
                "total": counts.total,
                "pending": counts.pending,
                "running": counts.running,
                "completed": counts.completed,
                "failed": counts.failed,
                "finished": counts.finished,
            },
            "workers": [w.model_dump(mode="json") for w in self.workers],
            "events": [e.model_dump(mode="json") for e in self.events],
            "last_run_summary": (
                self.last_run_summary.model_dump(mode="json") if self.last_run_summary else None
            ),
            "history_items": [item.to_record() for item in self.history_items],
            "is_history_refreshing": self.is_history_refreshing,
            "last_history_refresh_at": _iso(self.last_history_refresh_at),
            "history_warning": self.history_warning,
        }

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_run(self, config: RunConfiguration) -> asyncio.Task:
        """
        Start a run in the background.

        Raises:
            RunInProgressError: If a run is already active.
        """
        if self.is_running:
            raise RunInProgressError("A review run is already in progress.")
        # cancel_run() must see this run's token from the moment start_run returns
        self._reset_run_state(config)
        self._task = asyncio.ensure_future(self._run_fresh(config))
        return self._task

    async def run(self, config: RunConfiguration) -> RunSummary:
        """Run a full pass and return its summary."""
        return await self.start_run(config)

    def validate(self, config: RunConfiguration) -> BatchPlan:
        """
        Plan a configuration without running it.

        Raises:
            ConfigurationError: If the configuration would be rejected.
        """
        return self.planner.plan(config)

    def cancel_run(self, reason: str = "Cancelled by user") -> bool:
        """Request cancellation of the active run. Safe to call repeatedly."""
        if not self.is_running or self._token is None:
            return False
        if not self._token.cancel(reason):
            return False
        self.event_log.warning(f"Cancellation requested: {reason}")
        return True

    def rerun_failed_workers(self) -> asyncio.Task | None:
        """
        Re-run the failed workers of the last run inside the same job.

        Returns None (and does nothing) while a run is active or when no
        worker failed.
        """
        if self.is_running:
            logger.info("Rerun ignored: a run is in progress")
            return None
        if self.pool is None or self.config is None or self.job_path is None:
            logger.info("Rerun ignored: no previous run")
            return None

        plan = self.planner.plan_rerun(self.pool.workers)
        if not plan.assignments:
            logger.info("Rerun ignored: no failed workers")
            return None

        self._reset_for_rerun(plan)
        self._task = asyncio.ensure_future(self._execute(plan))
        return self._task

    async def refresh_history(self) -> list[HistoryItem]:
        return await self._refresher.refresh()

    def schedule_history_refresh(self, delay: float | None = None) -> asyncio.Task:
        return self._refresher.schedule(delay)

    def set_workspace(self, workspace_path: str | None) -> asyncio.Task:
        """Select the workspace whose history is shown; refresh is debounced."""
        self.workspace_path = (workspace_path or "").strip() or None
        self._notify()
        return self._refresher.schedule()

    async def wait_history_idle(self) -> None:
        await self._refresher.wait_idle()

    # ------------------------------------------------------------------
    # Run passes
    # ------------------------------------------------------------------

    async def _run_fresh(self, config: RunConfiguration) -> RunSummary:
        self._transition(ReviewQueuePhase.PREPARING)

        try:
            plan = self.planner.plan(config)
        except ConfigurationError as e:
            return await self._reject(e.message)

        job_id = make_job_id(self.run_started_at)
        try:
            job_dir = self.history.prepare_job(config, job_id)
        except PersistenceError as e:
            return await self._reject(e.message)

        self.job_id = job_id
        self.job_path = str(job_dir)
        self.job_created_at = self.run_started_at
        self.event_log.attach_file(job_dir / "events.jsonl")
        self.event_log.info(
            f"Job {job_id}: {plan.prompt_count} worker(s) in {plan.batch_count} batch(es)"
        )

        self.pool = WorkerPool(self._make_supervisor(), self.event_log)
        self.pool.create_workers(plan)
        self._notify()

        return await self._execute(plan)

    async def _execute(self, plan: BatchPlan) -> RunSummary:
        """Review batches, then aggregation and fix, then settle."""
        assert self.pool is not None and self.config is not None and self.job_path is not None
        config = self.config
        token = self._token
        job_dir = Path(self.job_path)
        supervisor = self.pool.supervisor

        try:
            self._transition(ReviewQueuePhase.REVIEWING)
            counts = await self.pool.run_plan(plan, job_dir, config, token)
            token.raise_if_cancelled()

            if counts.completed == 0 and config.run_aggregate:
                message = all_workers_failed_message(self.pool.failed_workers())
                self.event_log.error(message)
                return await self._finish(ReviewQueuePhase.FAILED, message)

            if AggregationPhase.should_run(config, self.pool.workers):
                self._transition(ReviewQueuePhase.AGGREGATING)
                aggregate_path = await AggregationPhase(supervisor).run(
                    self.pool.workers, job_dir, config, token,
                )
                self.aggregate_output_path = str(aggregate_path)
                self.event_log.info(f"Aggregate written to {aggregate_path}")

                token.raise_if_cancelled()
                if FixPhase.should_run(config, aggregate_path):
                    self._transition(ReviewQueuePhase.FIXING)
                    fix_path = await FixPhase(supervisor).run(aggregate_path, job_dir, config, token)
                    self.fix_output_path = str(fix_path)
                    self.event_log.info(f"Fix summary written to {fix_path}")

        except RunCancelledError as e:
            return await self._finish(ReviewQueuePhase.CANCELLED, e.message)

        except PhaseError as e:
            self.event_log.error(e.message)
            return await self._finish(ReviewQueuePhase.FAILED, e.message)

        except asyncio.CancelledError:
            # The coordinating task itself was cancelled (e.g. Ctrl-C)
            token.cancel("Run task cancelled")
            self._settle_unfinished_workers("Cancelled", ErrorKind.CANCELLED)
            await self._finish(ReviewQueuePhase.CANCELLED, "Cancelled")
            raise

        except Exception as e:
            # Stop sibling workers, settle the run, then let the caller see the error
            message = f"Run aborted: {type(e).__name__}: {e}"
            logger.exception("Run %s aborted", self.job_id)
            token.cancel(message)
            self._settle_unfinished_workers(message, ErrorKind.PROCESS_SPAWN)
            self.event_log.error(message)
            await self._finish(ReviewQueuePhase.FAILED, message)
            raise

        return await self._finish(ReviewQueuePhase.COMPLETED)

    async def _reject(self, message: str) -> RunSummary:
        """Fail a run before anything was spawned or written."""
        self.event_log.error(message)
        return await self._finish(ReviewQueuePhase.FAILED, message)

    async def _finish(self, phase: ReviewQueuePhase, error_message: str | None = None) -> RunSummary:
        self.error_message = error_message
        self.run_finished_at = datetime.now(UTC)
        self._transition(phase)

        summary = RunSummary(
            job_id=self.job_id,
            job_path=self.job_path,
            phase=self.phase,
            workers=[w.model_copy() for w in self.workers],
            aggregate_output_path=self.aggregate_output_path,
            fix_output_path=self.fix_output_path,
            error_message=error_message,
        )
        self.last_run_summary = summary
        self.event_log.info(summary.describe())

        if self.job_path is not None:
            await self._write_history()
            if self.config is not None and self.workspace_path == self.config.workspace_path:
                await self._refresher.refresh()

        self._notify()
        return summary

    async def _write_history(self) -> None:
        assert self.config is not None and self.job_id is not None and self.job_path is not None
        counts = self.counts
        item = HistoryItem(
            job_id=self.job_id,
            workspace_path=self.config.workspace_path,
            job_path=self.job_path,
            created_at=self.job_created_at,
            finished_at=self.run_finished_at,
            phase=self.phase,
            worker_count=counts.total,
            failed_worker_count=counts.failed,
            model=self.config.model,
            aggregate_output_path=self.aggregate_output_path,
            fix_output_path=self.fix_output_path,
        )
        try:
            await self.history.write(item)
        except PersistenceError as e:
            self.event_log.error(f"Could not save run history: {e.message}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reset_run_state(self, config: RunConfiguration) -> None:
        self.config = config
        self.event_log = RunEventLog(listener=self._on_event)
        self._token = CancellationToken()
        self.phase = ReviewQueuePhase.IDLE
        self.pool = None
        self.job_id = None
        self.job_path = None
        self.job_created_at = None
        self.run_started_at = datetime.now(UTC)
        self.run_finished_at = None
        self.aggregate_output_path = None
        self.fix_output_path = None
        self.error_message = None

    def _reset_for_rerun(self, plan: BatchPlan) -> None:
        """Reopen the settled job for another pass over its failed workers."""
        assert self.pool is not None
        previous = self.phase
        self._token = CancellationToken()
        self.phase = ReviewQueuePhase.PREPARING
        self.run_started_at = datetime.now(UTC)
        self.run_finished_at = None
        self.aggregate_output_path = None
        self.fix_output_path = None
        self.error_message = None
        self.event_log.info(f"Phase: {previous.value} -> {self.phase.value}")
        self.event_log.info(
            f"Rerunning {plan.prompt_count} failed worker(s) in job {self.job_id}"
        )
        self.pool.prepare_rerun(plan)
        self._notify()

    def _make_supervisor(self) -> AgentSupervisor:
        return AgentSupervisor(
            self.adapter,
            settings=self.settings,
            events=self.event_log,
            on_worker_update=lambda _worker: self._notify(),
        )

    def _transition(self, phase: ReviewQueuePhase) -> None:
        """Move forward in the phase sequence. Terminal phases are sticky."""
        current = self.phase
        if current == phase:
            return
        if current.is_terminal:
            logger.debug("Ignoring %s -> %s: run already settled", current.value, phase.value)
            return
        if phase.order < current.order:
            raise RuntimeError(f"Illegal phase transition {current.value} -> {phase.value}")

        self.phase = phase
        self.event_log.info(f"Phase: {current.value} -> {phase.value}")
        self._notify()

    def _settle_unfinished_workers(self, error: str, kind: ErrorKind) -> None:
        for worker in self.workers:
            if not worker.is_terminal:
                worker.mark_failed(error, kind)

    def _on_event(self, _event: RunEvent) -> None:
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("State listener %r failed", listener)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def build_configuration(
    fields: dict[str, Any],
    settings: Settings | None = None,
    preset_id: str | None = None,
) -> RunConfiguration:
    """
    Build a RunConfiguration from partial fields.

    Unset (None) fields come from the preset, then from ``settings.defaults``.

    Raises:
        ConfigurationError: If the preset is unknown.
    """
    settings = settings or get_settings()
    values = {key: value for key, value in fields.items() if value is not None}
    if preset_id:
        try:
            values = apply_preset(values, preset_id)
        except KeyError as e:
            raise ConfigurationError(str(e.args[0])) from e
    for key, value in settings.defaults.model_dump().items():
        values.setdefault(key, value)
    return RunConfiguration.model_validate(values)
