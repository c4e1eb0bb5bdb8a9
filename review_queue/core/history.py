"""Durable per-workspace run history with crash-tolerant reads."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from review_queue.config.settings import Settings, get_settings
from review_queue.core.errors import PersistenceError
from review_queue.core.models import HistoryItem, ReviewQueuePhase, RunConfiguration
from review_queue.core.retry_utils import retry_io
from review_queue.utils import PathTraversalError, PromptSanitizer

logger = logging.getLogger(__name__)

JOB_ID_TIME_FORMAT = "%Y%m%d-%H%M%S"


def make_job_id(now: datetime | None = None) -> str:
    """Job ids sort chronologically: ``YYYYmmdd-HHMMSS-<8 hex>``."""
    now = now or datetime.now(UTC)
    return f"{now.strftime(JOB_ID_TIME_FORMAT)}-{secrets.token_hex(4)}"


def parse_job_date(job_id: str) -> datetime | None:
    """Recover the creation time encoded in a job id."""
    prefix = "-".join(job_id.split("-")[:2])
    try:
        return datetime.strptime(prefix, JOB_ID_TIME_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


@retry_io
def _write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON with temp file + fsync + rename."""
    temp_file = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        temp_file.replace(path)
    except OSError:
        temp_file.unlink(missing_ok=True)
        raise

    # Sync directory on POSIX so the rename itself is durable
    if os.name == "posix":
        try:
            dir_fd = os.open(str(path.parent), os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError as dir_sync_error:
            logger.debug("Directory sync skipped: %s", dir_sync_error)


@retry_io
def _append_line(path: Path, record: dict[str, Any]) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")
        f.flush()
        os.fsync(f.fileno())


class HistoryStore:
    """
    One HistoryItem per finished run, keyed by (workspace, job id).

    Layout under ``<workspace>/<runtime_dir>/``::

        history.jsonl          # index, one line per write (last line per job wins)
        <job_id>/config.json   # run configuration, written at prepare time
        <job_id>/summary.json  # the HistoryItem
        <job_id>/...           # worker and stage artifacts

    Writes and reads for a workspace are serialized by one asyncio.Lock.
    Reads skip anything unreadable instead of failing the whole listing.
    """

    INDEX_FILE = "history.jsonl"
    SUMMARY_FILE = "summary.json"
    CONFIG_FILE = "config.json"

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._locks: dict[str, asyncio.Lock] = {}

    def runtime_root(self, workspace_path: str | Path) -> Path:
        return self.settings.runtime_root(workspace_path)

    def job_dir(self, workspace_path: str | Path, job_id: str) -> Path:
        return self.runtime_root(workspace_path) / job_id

    def lock_for(self, workspace_path: str | Path) -> asyncio.Lock:
        key = str(Path(workspace_path).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def prepare_job(self, config: RunConfiguration, job_id: str) -> Path:
        """
        Create the job directory and record its configuration.

        Raises:
            PersistenceError: If the directory cannot be created.
        """
        job_dir = self.job_dir(config.workspace_path, job_id)
        try:
            job_dir.mkdir(parents=True, exist_ok=True)
            _write_json_atomic(job_dir / self.CONFIG_FILE, config.model_dump(mode="json"))
        except OSError as e:
            raise PersistenceError(f"Cannot prepare job directory {job_dir}: {e}") from e
        return job_dir

    async def write(self, item: HistoryItem) -> None:
        """
        Persist a HistoryItem (summary file + index line).

        Raises:
            PersistenceError: If the write still fails after retries.
        """
        async with self.lock_for(item.workspace_path):
            record = item.to_record()
            job_dir = Path(item.job_path)
            try:
                job_dir.mkdir(parents=True, exist_ok=True)
                _write_json_atomic(job_dir / self.SUMMARY_FILE, record)
                _append_line(self.runtime_root(item.workspace_path) / self.INDEX_FILE, record)
            except OSError as e:
                logger.error("Failed to write history for %s: %s", item.job_id, e, exc_info=True)
                raise PersistenceError(f"Failed to write history for {item.job_id}: {e}") from e

        logger.debug("History written for job %s (%s)", item.job_id, item.phase.value)

    async def list(self, workspace_path: str | Path, limit: int | None = None) -> list[HistoryItem]:
        """
        Read every HistoryItem of a workspace, most recent first.

        Raises:
            PersistenceError: If the history directory exists but cannot be listed.
        """
        async with self.lock_for(workspace_path):
            items = self._scan(Path(workspace_path))

        items.sort(key=_sort_key, reverse=True)
        return items[:limit] if limit is not None else items

    def _scan(self, workspace_path: Path) -> list[HistoryItem]:
        root = self.runtime_root(workspace_path)
        if not root.is_dir():
            return []

        guard = PromptSanitizer(root)
        items: dict[str, HistoryItem] = {}

        for item in self._read_index(root / self.INDEX_FILE):
            try:
                job_dir = guard.contained_path(item.job_path)
            except PathTraversalError as e:
                logger.warning("Ignoring history entry %s: %s", item.job_id, e)
                continue
            if not job_dir.is_dir():
                logger.debug("Job directory for %s is gone, skipping", item.job_id)
                items.pop(item.job_id, None)
                continue
            items[item.job_id] = item

        try:
            children = sorted(root.iterdir())
        except OSError as e:
            raise PersistenceError(f"Cannot list history in {root}: {e}") from e

        for child in children:
            if child.name in items or not child.is_dir():
                continue
            item = self._read_job_dir(child, workspace_path)
            if item is not None:
                items[item.job_id] = item

        return [self._drop_missing_artifacts(item) for item in items.values()]

    def _read_index(self, index_path: Path) -> list[HistoryItem]:
        if not index_path.exists():
            return []
        try:
            lines = index_path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as e:
            logger.warning("Cannot read history index %s: %s", index_path, e)
            return []

        items = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                items.append(HistoryItem.from_record(json.loads(line)))
            except (ValueError, ValidationError) as e:
                # Torn final line after a crash, or hand edits
                logger.warning("Skipping history index line %d: %s", number, e)
        return items

    def _read_job_dir(self, job_dir: Path, workspace_path: Path) -> HistoryItem | None:
        summary_path = job_dir / self.SUMMARY_FILE
        try:
            if summary_path.exists():
                with open(summary_path, encoding="utf-8") as f:
                    return HistoryItem.from_record(json.load(f))
            return self._infer_item(job_dir, workspace_path)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Skipping unreadable job directory %s: %s", job_dir.name, e)
            return None

    def _infer_item(self, job_dir: Path, workspace_path: Path) -> HistoryItem | None:
        """Reconstruct a summary for a job that never finished writing one."""
        config_path = job_dir / self.CONFIG_FILE
        workers_dir = job_dir / "workers"
        if not config_path.exists() and not workers_dir.is_dir():
            logger.debug("%s does not look like a job directory", job_dir.name)
            return None

        model = None
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                model = RunConfiguration.model_validate(json.load(f)).model

        worker_dirs = sorted(workers_dir.glob("worker-*")) if workers_dir.is_dir() else []
        failed = 0
        for worker_dir in worker_dirs:
            stderr_path = worker_dir / "stderr.log"
            if stderr_path.exists() and stderr_path.read_text(encoding="utf-8", errors="replace").strip():
                failed += 1

        aggregate_path = job_dir / "aggregate.md"
        fix_path = job_dir / "fix.md"
        if fix_path.exists():
            phase = ReviewQueuePhase.COMPLETED
        elif worker_dirs and failed == len(worker_dirs):
            phase = ReviewQueuePhase.FAILED
        elif aggregate_path.exists():
            phase = ReviewQueuePhase.AGGREGATING
        else:
            phase = ReviewQueuePhase.REVIEWING

        return HistoryItem(
            job_id=job_dir.name,
            workspace_path=str(workspace_path),
            job_path=str(job_dir),
            created_at=parse_job_date(job_dir.name),
            phase=phase,
            worker_count=len(worker_dirs),
            failed_worker_count=failed,
            model=model,
            aggregate_output_path=str(aggregate_path) if aggregate_path.exists() else None,
            fix_output_path=str(fix_path) if fix_path.exists() else None,
        )

    @staticmethod
    def _drop_missing_artifacts(item: HistoryItem) -> HistoryItem:
        updates = {}
        for field_name in ("aggregate_output_path", "fix_output_path"):
            path = getattr(item, field_name)
            if path and not Path(path).exists():
                updates[field_name] = None
        return item.model_copy(update=updates) if updates else item


def _sort_key(item: HistoryItem) -> tuple[bool, datetime, str]:
    created = item.created_at or datetime.min.replace(tzinfo=UTC)
    return (item.created_at is not None, created, item.job_id)


class HistoryRefresher:
    """
    Debounced history listing for the current workspace.

    ``schedule()`` replaces any pending refresh, so a burst of workspace
    edits turns into a single disk scan once the burst settles.
    """

    def __init__(
        self,
        store: HistoryStore,
        workspace: Callable[[], str | None],
        limit: int | None = None,
        debounce_seconds: float | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self._workspace = workspace
        self.limit = limit if limit is not None else store.settings.history_limit
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None
            else store.settings.history_debounce_seconds
        )
        self._on_change = on_change

        self.items: list[HistoryItem] = []
        self.is_refreshing = False
        self.last_refresh_at: datetime | None = None
        self.warning: str | None = None
        self.scan_count = 0
        self._pending: asyncio.Task | None = None

    async def refresh(self) -> list[HistoryItem]:
        """Re-read history now. Failures become ``warning``, never exceptions."""
        workspace = (self._workspace() or "").strip()
        if not workspace:
            self.items = []
            self._changed()
            return self.items

        self.is_refreshing = True
        self._changed()
        try:
            self.scan_count += 1
            self.items = await self.store.list(workspace, limit=self.limit)
            self.warning = None
        except PersistenceError as e:
            logger.warning("History refresh failed: %s", e)
            self.warning = str(e)
        finally:
            self.is_refreshing = False
            self.last_refresh_at = datetime.now(UTC)
            self._changed()
        return self.items

    def schedule(self, delay: float | None = None) -> asyncio.Task:
        """Refresh after ``delay`` seconds, superseding any pending refresh."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.ensure_future(self._delayed(
            self.debounce_seconds if delay is None else delay
        ))
        return self._pending

    async def wait_idle(self) -> None:
        """Wait for the pending scheduled refresh, if any."""
        pending = self._pending
        if pending is None:
            return
        try:
            await pending
        except asyncio.CancelledError:
            if not pending.cancelled():
                raise

    async def _delayed(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.refresh()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
