"""Append-only, leveled log of orchestration events for one run."""

from __future__ import annotations

import json
import logging
from datetime import datetime, UTC
from pathlib import Path
from typing import Callable

from review_queue.core.models import EventLevel, RunEvent

logger = logging.getLogger(__name__)

_LOG_LEVELS: dict[EventLevel, int] = {
    EventLevel.INFO: logging.INFO,
    EventLevel.WARNING: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}

EventListener = Callable[[RunEvent], None]


class RunEventLog:
    """
    Run-scoped event record.

    Events are never mutated or removed. Timestamps never go backwards, even
    if the wall clock does. Each event is mirrored to the module logger and,
    once attached, to an ``events.jsonl`` file in the job directory.
    """

    def __init__(self, listener: EventListener | None = None) -> None:
        self._events: list[RunEvent] = []
        self._listener = listener
        self._sink: Path | None = None

    def attach_file(self, path: Path) -> None:
        """Start mirroring events to a JSONL file, backfilling earlier ones."""
        self._sink = path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            for event in self._events:
                f.write(json.dumps(event.model_dump(mode="json"), ensure_ascii=False) + "\n")

    def append(self, level: EventLevel, message: str) -> RunEvent:
        now = datetime.now(UTC)
        if self._events and now < self._events[-1].timestamp:
            now = self._events[-1].timestamp
        event = RunEvent(timestamp=now, level=level, message=message)
        self._events.append(event)

        logger.log(_LOG_LEVELS[level], "%s", message)
        self._write(event)
        if self._listener is not None:
            self._listener(event)
        return event

    def info(self, message: str) -> RunEvent:
        return self.append(EventLevel.INFO, message)

    def warning(self, message: str) -> RunEvent:
        return self.append(EventLevel.WARNING, message)

    def error(self, message: str) -> RunEvent:
        return self.append(EventLevel.ERROR, message)

    @property
    def events(self) -> tuple[RunEvent, ...]:
        return tuple(self._events)

    def tail(self, limit: int = 200) -> list[RunEvent]:
        if limit <= 0:
            return []
        return self._events[-limit:]

    def last_error(self) -> RunEvent | None:
        for event in reversed(self._events):
            if event.level == EventLevel.ERROR:
                return event
        return None

    def __len__(self) -> int:
        return len(self._events)

    def _write(self, event: RunEvent) -> None:
        if self._sink is None:
            return
        try:
            with self._sink.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.model_dump(mode="json"), ensure_ascii=False) + "\n")
        except OSError as e:
            # The in-memory log stays authoritative
            logger.debug("Could not append event to %s: %s", self._sink, e)
