"""Core orchestration module."""

from review_queue.core.cancellation import CancellationToken
from review_queue.core.errors import (
    AgentExitError,
    ConfigurationError,
    PersistenceError,
    PhaseError,
    ProcessSpawnError,
    ReviewQueueError,
    RunCancelledError,
    RunInProgressError,
)
from review_queue.core.event_log import RunEventLog
from review_queue.core.history import HistoryRefresher, HistoryStore, make_job_id, parse_job_date
from review_queue.core.models import (
    ErrorKind,
    EventLevel,
    HistoryItem,
    ReviewQueuePhase,
    RunConfiguration,
    RunEvent,
    RunSummary,
    Worker,
    WorkerStatus,
)
from review_queue.core.orchestrator import ReviewQueue, build_configuration
from review_queue.core.phases import AggregationPhase, FixPhase
from review_queue.core.planner import Assignment, BatchPlan, PromptPlanner, split_into_batches
from review_queue.core.retry_utils import create_retry_decorator, retry_io
from review_queue.core.supervisor import AgentInvocation, AgentSupervisor
from review_queue.core.worker_pool import WorkerCounts, WorkerPool

__all__ = [
    # Coordination
    "ReviewQueue",
    "build_configuration",
    "CancellationToken",
    # Models
    "ErrorKind",
    "EventLevel",
    "HistoryItem",
    "ReviewQueuePhase",
    "RunConfiguration",
    "RunEvent",
    "RunSummary",
    "Worker",
    "WorkerStatus",
    # Errors
    "AgentExitError",
    "ConfigurationError",
    "PersistenceError",
    "PhaseError",
    "ProcessSpawnError",
    "ReviewQueueError",
    "RunCancelledError",
    "RunInProgressError",
    # Planning and execution
    "Assignment",
    "BatchPlan",
    "PromptPlanner",
    "split_into_batches",
    "AgentInvocation",
    "AgentSupervisor",
    "WorkerCounts",
    "WorkerPool",
    "AggregationPhase",
    "FixPhase",
    # Events and history
    "RunEventLog",
    "HistoryRefresher",
    "HistoryStore",
    "make_job_id",
    "parse_job_date",
    # Retry utilities
    "create_retry_decorator",
    "retry_io",
]
