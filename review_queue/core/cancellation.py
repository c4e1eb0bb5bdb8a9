"""Run-scoped cooperative cancellation."""

from __future__ import annotations

import asyncio
import logging

from review_queue.core.errors import RunCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    A single cancellation signal shared by the batch runner and every supervisor.

    The batch runner polls ``is_cancelled`` between batches; supervisors
    await ``wait()`` alongside their child process.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> bool:
        """
        Fire the token.

        Returns:
            True on the first call, False if already cancelled.
        """
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        logger.info("Cancellation requested: %s", reason)
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason or "Cancelled")
