"""Single-flight FIFO admission for conversational turns."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from loguru import logger

from clawless.logging_utils import log_scope

T = TypeVar("T")

Executor = Callable[[T, int], Awaitable[None]]


@dataclass
class QueueItem(Generic[T]):
    sequence: int
    payload: T
    future: asyncio.Future[None]


class RequestSerializer(Generic[T]):
    """Run enqueued payloads one at a time, in arrival order.

    Each `enqueue` returns a future settled when that payload's executor
    finishes. A failing executor rejects only its own future; draining
    continues with the next item.
    """

    def __init__(self, executor: Executor[T], *, name: str = "queue") -> None:
        self._executor = executor
        self._name = name
        self._items: deque[QueueItem[T]] = deque()
        self._sequence = 0
        self._running = False
        self._current: QueueItem[T] | None = None
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def depth(self) -> int:
        return len(self._items)

    @property
    def busy(self) -> bool:
        return self._running

    def enqueue(self, payload: T) -> asyncio.Future[None]:
        loop = asyncio.get_running_loop()
        self._sequence += 1
        item = QueueItem(sequence=self._sequence, payload=payload, future=loop.create_future())
        if self._running or self._items:
            logger.info("{}.backlog depth={} sequence={}", self._name, len(self._items) + 1, item.sequence)
        self._items.append(item)
        if not self._running:
            self._running = True
            self._drain_task = loop.create_task(self._drain())
        return item.future

    async def _drain(self) -> None:
        try:
            while self._items:
                item = self._items.popleft()
                self._current = item
                await self._execute(item)
                self._current = None
        except asyncio.CancelledError:
            self._cancel_remaining()
            raise
        finally:
            self._current = None
            self._running = False
            self._drain_task = None

    async def _execute(self, item: QueueItem[T]) -> None:
        with log_scope(f"req:{item.sequence}"):
            try:
                await self._executor(item.payload, item.sequence)
            except asyncio.CancelledError:
                if not item.future.done():
                    item.future.cancel()
                raise
            except Exception as exc:
                logger.exception("{}.item.failed sequence={}", self._name, item.sequence)
                if not item.future.done():
                    item.future.set_exception(exc)
                    # Callers that fire and forget never await the future.
                    item.future.exception()
                return
        if not item.future.done():
            item.future.set_result(None)

    def _cancel_remaining(self) -> None:
        if self._current is not None and not self._current.future.done():
            self._current.future.cancel()
        while self._items:
            item = self._items.popleft()
            if not item.future.done():
                item.future.cancel()

    async def close(self) -> None:
        """Cancel the running item and everything still pending."""
        task = self._drain_task
        if task is None:
            self._cancel_remaining()
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
