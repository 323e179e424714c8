"""Debounced per-thread batching of rapid user input."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from chatlog.core.config import settings
from chatlog.models.thread import new_id

logger = logging.getLogger(__name__)

INTERACTIVE_WINDOW = 10.0
CONCATENATE_WINDOW = 30.0
BATCH_WINDOWS = {"interactive": INTERACTIVE_WINDOW, "concatenate": CONCATENATE_WINDOW}


def window_for_policy(policy: str) -> float:
    try:
        return BATCH_WINDOWS[policy]
    except KeyError:
        raise ValueError(f"Unknown batch policy: {policy}") from None


def default_window() -> float:
    if settings.batch_window is not None:
        return settings.batch_window
    return window_for_policy(settings.batch_policy)


@dataclass
class FlushedBatch:
    thread_id: str
    fragments: list[str]
    message_ids: list[str]

    @property
    def content(self) -> str:
        return "\n".join(self.fragments)


FlushHandler = Callable[[FlushedBatch], Union[Awaitable[None], None]]


@dataclass
class _PendingBatch:
    fragments: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    updated_at: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.Task] = None
    on_flush: Optional[FlushHandler] = None


class MessageBatcher:
    """Coalesces submissions per thread; each submit restarts that thread's timer.

    Must be used from within a running event loop.
    """

    def __init__(self, on_flush: FlushHandler | None = None, window: float | None = None):
        self.on_flush = on_flush
        self.window = window if window is not None else default_window()
        self._batches: dict[str, _PendingBatch] = {}

    def submit(
        self,
        thread_id: str,
        content: str,
        message_id: str | None = None,
        on_flush: FlushHandler | None = None,
    ) -> str:
        message_id = message_id or new_id()
        batch = self._batches.setdefault(thread_id, _PendingBatch())
        if batch.timer:
            batch.timer.cancel()

        batch.fragments.append(content)
        batch.message_ids.append(message_id)
        batch.updated_at = time.monotonic()
        if on_flush:
            batch.on_flush = on_flush
        batch.timer = asyncio.create_task(self._expire(thread_id, self.window))

        logger.debug(
            f"Batched message for thread {thread_id} "
            f"(size {len(batch.fragments)}, window {self.window}s)"
        )
        return message_id

    def pending_count(self, thread_id: str) -> int:
        batch = self._batches.get(thread_id)
        return len(batch.fragments) if batch else 0

    def clear(self, thread_id: str) -> None:
        """Drop a pending batch without flushing it."""
        batch = self._batches.pop(thread_id, None)
        if batch and batch.timer:
            batch.timer.cancel()

    async def force_flush(self, thread_id: str) -> FlushedBatch | None:
        return await self._flush(thread_id)

    async def shutdown(self, flush: bool = False) -> None:
        for thread_id in list(self._batches):
            if flush:
                await self._flush(thread_id)
            else:
                self.clear(thread_id)

    async def _expire(self, thread_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._flush(thread_id)

    async def _flush(self, thread_id: str) -> FlushedBatch | None:
        batch = self._batches.pop(thread_id, None)
        if not batch:
            return None
        if batch.timer and batch.timer is not asyncio.current_task():
            batch.timer.cancel()

        flushed = FlushedBatch(
            thread_id=thread_id,
            fragments=list(batch.fragments),
            message_ids=list(batch.message_ids),
        )
        logger.info(f"Flushing batch of {len(flushed.fragments)} messages for thread {thread_id}")

        handler = batch.on_flush or self.on_flush
        if handler:
            try:
                result = handler(flushed)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Flush handler failed for thread {thread_id}")
        return flushed
