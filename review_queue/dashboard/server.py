"""FastAPI control API for the Review Queue."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from review_queue.config.presets import BUILT_IN_PRESETS, ReviewPreset
from review_queue.core.errors import ConfigurationError, RunInProgressError
from review_queue.core.models import RunEvent
from review_queue.core.orchestrator import ReviewQueue, build_configuration

from .schemas import (
    ActionResponse,
    HistoryResponse,
    LimitsResponse,
    RunRequest,
    RunResponse,
    StateResponse,
    WorkspaceRequest,
)

logger = logging.getLogger(__name__)


def create_app(queue: ReviewQueue | None = None) -> FastAPI:
    """Build the API around a ReviewQueue (a fresh one by default)."""
    queue = queue or ReviewQueue()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Review Queue API started")
        yield
        # Shutdown
        if queue.cancel_run("Server shutting down"):
            logger.info("Cancelled active run on shutdown")
        logger.info("Review Queue API shutting down")

    app = FastAPI(
        title="Review Queue",
        description="Control API for parallel code review runs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.queue = queue

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === State ===

    @app.get("/api/state", response_model=StateResponse)
    async def get_state():
        """Current run state, workers, event tail and history."""
        return queue.snapshot()

    @app.get("/api/limits", response_model=LimitsResponse)
    async def get_limits():
        settings = queue.settings
        return LimitsResponse(
            max_workers=settings.max_workers,
            default_worker_count=settings.defaults.worker_count,
            event_tail_limit=settings.event_tail_limit,
            history_limit=settings.history_limit,
        )

    @app.get("/api/presets", response_model=list[ReviewPreset])
    async def get_presets():
        return BUILT_IN_PRESETS

    @app.get("/api/events", response_model=list[RunEvent])
    async def get_events(limit: int = Query(default=200, ge=0)):
        return queue.event_log.tail(limit)

    # === Runs ===

    @app.post("/api/runs", response_model=RunResponse, status_code=202)
    async def start_run(request: RunRequest):
        """Validate and start a run in the background."""
        try:
            config = build_configuration(request.run_fields(), queue.settings, request.preset_id)
            plan = queue.validate(config)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=e.message)

        try:
            queue.start_run(config)
        except RunInProgressError as e:
            raise HTTPException(status_code=409, detail=e.message)

        if queue.workspace_path != config.workspace_path:
            queue.set_workspace(config.workspace_path)

        return RunResponse(
            status="accepted",
            message=f"Run started with {plan.prompt_count} worker(s)",
            worker_count=plan.prompt_count,
            batch_count=plan.batch_count,
        )

    @app.post("/api/runs/cancel", response_model=ActionResponse)
    async def cancel_run():
        if queue.cancel_run():
            return ActionResponse(success=True, message="Cancellation requested")
        return ActionResponse(success=False, message="No active run")

    @app.post("/api/runs/rerun-failed", response_model=ActionResponse, status_code=202)
    async def rerun_failed():
        if queue.rerun_failed_workers() is None:
            return ActionResponse(success=False, message="Nothing to rerun")
        return ActionResponse(success=True, message="Rerunning failed workers")

    # === History ===

    @app.get("/api/history", response_model=HistoryResponse)
    async def get_history():
        return _history_response(queue)

    @app.post("/api/history/refresh", response_model=HistoryResponse)
    async def refresh_history():
        await queue.refresh_history()
        return _history_response(queue)

    @app.put("/api/workspace", response_model=HistoryResponse)
    async def set_workspace(request: WorkspaceRequest):
        """Select a workspace; its history refreshes after a short debounce."""
        if not request.workspace_path.strip():
            raise HTTPException(status_code=400, detail="Path is required")
        queue.set_workspace(request.workspace_path)
        return _history_response(queue)

    return app


def _history_response(queue: ReviewQueue) -> HistoryResponse:
    return HistoryResponse(
        workspace_path=queue.workspace_path,
        items=queue.history_items,
        is_refreshing=queue.is_history_refreshing,
        last_refresh_at=queue.last_history_refresh_at,
        warning=queue.history_warning,
    )


async def serve(queue: ReviewQueue | None = None, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Serve the API inside an already running event loop."""
    import uvicorn
    server = uvicorn.Server(uvicorn.Config(create_app(queue), host=host, port=port))
    await server.serve()


def run_server(host: str = "127.0.0.1", port: int = 8080):
    """Run the API server."""
    import uvicorn
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    run_server()
