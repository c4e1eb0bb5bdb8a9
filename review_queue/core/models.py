"""Review queue phase definitions and run state models."""

from __future__ import annotations

from datetime import datetime, UTC
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReviewQueuePhase(str, Enum):
    """Macro-state of a review run."""

    IDLE = "idle"
    PREPARING = "preparing"
    REVIEWING = "reviewing"
    AGGREGATING = "aggregating"
    FIXING = "fixing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def order(self) -> int:
        """Position in the forward-only phase sequence."""
        return _PHASE_ORDER[self]


TERMINAL_PHASES = frozenset({
    ReviewQueuePhase.COMPLETED,
    ReviewQueuePhase.FAILED,
    ReviewQueuePhase.CANCELLED,
})

_PHASE_ORDER: dict[ReviewQueuePhase, int] = {
    ReviewQueuePhase.IDLE: 0,
    ReviewQueuePhase.PREPARING: 1,
    ReviewQueuePhase.REVIEWING: 2,
    ReviewQueuePhase.AGGREGATING: 3,
    ReviewQueuePhase.FIXING: 4,
    ReviewQueuePhase.COMPLETED: 5,
    ReviewQueuePhase.FAILED: 5,
    ReviewQueuePhase.CANCELLED: 5,
}


class WorkerStatus(str, Enum):
    """Status of a single review worker."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Error taxonomy shared by workers, phases and persistence."""

    CONFIGURATION = "configuration"
    PROCESS_SPAWN = "process_spawn"
    AGENT_EXIT = "agent_exit"
    CANCELLED = "cancelled"
    PERSISTENCE = "persistence"


class EventLevel(str, Enum):
    """Severity of a run event."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class RunConfiguration(BaseModel):
    """
    Immutable configuration of one review run.

    Custom-prompt mode is selected when ``custom_prompts`` is set; otherwise
    ``shared_prompt`` is replicated ``worker_count`` times.
    """

    model_config = ConfigDict(frozen=True)

    workspace_path: str
    worker_count: int = 3
    custom_prompts: list[str] | None = None
    shared_prompt: str = ""
    aggregate_prompt: str = ""
    fix_prompt: str = ""
    model: str | None = None
    full_auto: bool = True
    skip_git_repo_check: bool = False
    ephemeral: bool = False
    run_aggregate: bool = True
    run_fix: bool = True

    @field_validator("workspace_path", "shared_prompt", "aggregate_prompt", "fix_prompt")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("model")
    @classmethod
    def _normalize_model(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def uses_custom_prompts(self) -> bool:
        return self.custom_prompts is not None


class Worker(BaseModel):
    """One planned or executing review worker."""

    id: int
    prompt: str
    status: WorkerStatus = WorkerStatus.PENDING
    error: str | None = None
    error_kind: ErrorKind | None = None
    exit_code: int | None = None
    output_path: str | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempt: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkerStatus.COMPLETED, WorkerStatus.FAILED)

    def mark_running(self) -> None:
        """Transition pending -> running."""
        self.status = WorkerStatus.RUNNING
        self.started_at = datetime.now(UTC)
        self.finished_at = None
        self.error = None
        self.error_kind = None
        self.exit_code = None

    def mark_completed(self, exit_code: int = 0) -> None:
        self.status = WorkerStatus.COMPLETED
        self.exit_code = exit_code
        self.finished_at = datetime.now(UTC)

    def mark_failed(self, error: str, kind: ErrorKind, exit_code: int | None = None) -> None:
        self.status = WorkerStatus.FAILED
        self.error = error
        self.error_kind = kind
        self.exit_code = exit_code
        self.finished_at = datetime.now(UTC)

    def reset_for_rerun(self) -> None:
        """Return a failed worker to pending for another attempt."""
        self.status = WorkerStatus.PENDING
        self.error = None
        self.error_kind = None
        self.exit_code = None
        self.started_at = None
        self.finished_at = None
        self.attempt += 1


class RunEvent(BaseModel):
    """A timestamped, leveled orchestration log entry."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    level: EventLevel
    message: str


class HistoryItem(BaseModel):
    """Persisted summary of a finished run."""

    job_id: str
    workspace_path: str
    job_path: str
    created_at: datetime | None = None
    finished_at: datetime | None = None
    phase: ReviewQueuePhase
    worker_count: int = 0
    failed_worker_count: int = 0
    model: str | None = None
    aggregate_output_path: str | None = None
    fix_output_path: str | None = None

    def to_record(self) -> dict[str, Any]:
        """Convert to a JSON-able dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> HistoryItem:
        return cls.model_validate(data)


class RunSummary(BaseModel):
    """Outcome of one orchestration pass."""

    job_id: str | None = None
    job_path: str | None = None
    phase: ReviewQueuePhase
    workers: list[Worker] = Field(default_factory=list)
    aggregate_output_path: str | None = None
    fix_output_path: str | None = None
    error_message: str | None = None

    @property
    def completed_worker_count(self) -> int:
        return sum(1 for w in self.workers if w.status == WorkerStatus.COMPLETED)

    @property
    def failed_worker_count(self) -> int:
        return sum(1 for w in self.workers if w.status == WorkerStatus.FAILED)

    def describe(self) -> str:
        """One-line human summary."""
        return (
            f"Worker: {len(self.workers)} (ok: {self.completed_worker_count}, "
            f"failed: {self.failed_worker_count}) | Job: {self.job_id or '-'}"
        )
