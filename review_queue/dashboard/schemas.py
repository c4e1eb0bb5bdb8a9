"""API schemas for the Review Queue control API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from review_queue.core.models import HistoryItem, RunEvent, RunSummary, Worker


class RunRequest(BaseModel):
    """Request to start a review run. Unset fields fall back to preset, then defaults."""
    workspace_path: str
    worker_count: int | None = None
    custom_prompts: list[str] | None = None
    shared_prompt: str | None = None
    aggregate_prompt: str | None = None
    fix_prompt: str | None = None
    model: str | None = None
    full_auto: bool | None = None
    skip_git_repo_check: bool | None = None
    ephemeral: bool | None = None
    run_aggregate: bool | None = None
    run_fix: bool | None = None
    preset_id: str | None = None

    def run_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"preset_id"})


class RunResponse(BaseModel):
    """Response from starting a run."""
    status: str
    message: str
    worker_count: int
    batch_count: int


class ActionResponse(BaseModel):
    """Response from a cancel or rerun request."""
    success: bool
    message: str


class WorkerCountsResponse(BaseModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    finished: int = 0


class StateResponse(BaseModel):
    """Full observable state of the queue."""
    phase: str
    is_running: bool
    workspace_path: str | None = None
    job_id: str | None = None
    job_path: str | None = None
    run_started_at: datetime | None = None
    run_finished_at: datetime | None = None
    aggregate_output_path: str | None = None
    fix_output_path: str | None = None
    error_message: str | None = None
    counts: WorkerCountsResponse = Field(default_factory=WorkerCountsResponse)
    workers: list[Worker] = Field(default_factory=list)
    events: list[RunEvent] = Field(default_factory=list)
    last_run_summary: RunSummary | None = None
    history_items: list[HistoryItem] = Field(default_factory=list)
    is_history_refreshing: bool = False
    last_history_refresh_at: datetime | None = None
    history_warning: str | None = None


class LimitsResponse(BaseModel):
    """Fixed limits and defaults the client should respect."""
    max_workers: int
    default_worker_count: int
    event_tail_limit: int
    history_limit: int


class HistoryResponse(BaseModel):
    """Run history of the selected workspace."""
    workspace_path: str | None = None
    items: list[HistoryItem] = Field(default_factory=list)
    is_refreshing: bool = False
    last_refresh_at: datetime | None = None
    warning: str | None = None


class WorkspaceRequest(BaseModel):
    """Select the workspace whose history is tracked."""
    workspace_path: str
