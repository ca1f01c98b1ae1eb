"""Quick/async classification of a streamed reply and live-message driving."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from loguru import logger

from clawless.errors import describe_error
from clawless.text import generate_short_id, truncate_preview

if TYPE_CHECKING:
    from clawless.channels.base import MessagingContext
    from clawless.config import Settings

QUICK_MARKER = "[MODE: QUICK]"
ASYNC_MARKER = "[MODE: ASYNC]"
NO_RESPONSE = "No response received."

ChunkCallback = Callable[[str], Awaitable[None]]
PromptRunner = Callable[[str, ChunkCallback], Awaitable[str]]
AsyncJobScheduler = Callable[[str, str, str], Awaitable[Any]]
CompletionHook = Callable[[str, str, str], None]


class StreamMode(StrEnum):
    UNDECIDED = "undecided"
    QUICK = "quick"
    ASYNC = "async"


def build_hybrid_prompt(user_text: str) -> str:
    return (
        "[SYSTEM: HYBRID MODE]\n"
        "Instructions:\n"
        "1. Analyze the User Request below.\n"
        f"2. Begin your reply with exactly one mode marker: {QUICK_MARKER} or {ASYNC_MARKER}.\n"
        f"3. For a quick task (simple question, clarification, greeting, short lookup) write {QUICK_MARKER} "
        "and then answer immediately and directly.\n"
        f"4. For a long task (research, scraping, coding, waiting, monitoring) write only {ASYNC_MARKER}. "
        "The task will be run in the background.\n\n"
        f'User Request: "{user_text}"'
    )


@dataclass(frozen=True)
class StreamOptions:
    max_response_length: int = 4000
    stream_update_interval_ms: int = 1000
    message_gap_threshold_ms: int = 10_000
    debug_stream: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> StreamOptions:
        return cls(
            max_response_length=settings.max_response_length,
            stream_update_interval_ms=settings.stream_update_interval_ms,
            message_gap_threshold_ms=settings.message_gap_threshold_ms,
            debug_stream=settings.acp_debug_stream,
        )


class StreamClassifier:
    """Classify one streamed reply and mirror quick replies into a live message.

    Chunks are buffered until the left-trimmed text starts with a mode
    marker. A buffer that can no longer become either marker is treated as
    a quick reply and replayed unchanged. Quick content is flushed to a
    live message at most once per update interval, with a trailing flush.
    A chunk arriving after a long silence closes the current live message
    so the next flush starts a fresh one.
    """

    def __init__(
        self,
        context: MessagingContext,
        *,
        request_id: int | str = 0,
        options: StreamOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.context = context
        self.request_id = request_id
        self.options = options or StreamOptions()
        self._clock = clock

        self.mode = StreamMode.UNDECIDED
        self.prefix_buffer = ""
        self.preview_buffer = ""
        self.response_text = ""
        self.live_handle: Any = None
        self.last_flush_at = clock()
        self.last_chunk_at: float | None = None
        self.finalized = False
        self.fell_back = False
        self.delivered = False

        self._lock = asyncio.Lock()
        self._flush_task: asyncio.Task[None] | None = None
        self._dirty = False

    @property
    def _interval(self) -> float:
        return self.options.stream_update_interval_ms / 1000

    @property
    def _gap_threshold(self) -> float:
        return self.options.message_gap_threshold_ms / 1000

    async def on_chunk(self, chunk: str) -> None:
        if self.finalized or self.mode is StreamMode.ASYNC or not chunk:
            return
        if self.mode is StreamMode.QUICK:
            await self._append(chunk)
            return

        self.prefix_buffer += chunk
        content = self._classify_prefix(self.prefix_buffer)
        if content is not None:
            await self._append(content)

    def _classify_prefix(self, buffer: str) -> str | None:
        """Update the mode from the buffered prefix and return quick content, if any."""
        head = buffer.lstrip()
        if head.startswith(QUICK_MARKER):
            self.mode = StreamMode.QUICK
            logger.info("live.classify request_id={} mode=quick", self.request_id)
            return head[len(QUICK_MARKER) :].lstrip()
        if head.startswith(ASYNC_MARKER):
            self.mode = StreamMode.ASYNC
            logger.info("live.classify request_id={} mode=async", self.request_id)
            return None
        if QUICK_MARKER.startswith(head) or ASYNC_MARKER.startswith(head):
            return None
        self._fall_back()
        return buffer

    def _fall_back(self) -> None:
        self.mode = StreamMode.QUICK
        self.fell_back = True
        logger.warning(
            "live.classify.fallback request_id={} reason=no mode marker buffered={}",
            self.request_id,
            len(self.prefix_buffer),
        )

    def resolve(self, full_response: str) -> StreamMode:
        """Settle the mode once the prompt has completed."""
        if self.mode is not StreamMode.UNDECIDED:
            return self.mode
        source = self.prefix_buffer or full_response
        head = source.lstrip()
        if head.startswith(QUICK_MARKER):
            self.mode = StreamMode.QUICK
            content = head[len(QUICK_MARKER) :].lstrip()
            self.preview_buffer += content
            self.response_text += content
        elif head.startswith(ASYNC_MARKER):
            self.mode = StreamMode.ASYNC
        else:
            self._fall_back()
            self.preview_buffer += source
            self.response_text += source
        logger.info("live.classify request_id={} mode={} at=completion", self.request_id, self.mode)
        return self.mode

    async def _append(self, text: str) -> None:
        now = self._clock()
        if (
            self.last_chunk_at is not None
            and self._gap_threshold > 0
            and now - self.last_chunk_at >= self._gap_threshold
            and self.live_handle is not None
            and self.preview_buffer.strip()
        ):
            await self.finalize_current()
        self.last_chunk_at = now
        self.response_text += text
        if not self.preview_buffer and self.live_handle is None and self.delivered:
            # first text of a rotated segment
            text = text.lstrip()
        if not text:
            return
        self.preview_buffer += text
        self._dirty = True
        self._schedule_flush()

    def _preview_text(self) -> str:
        return truncate_preview(self.preview_buffer, self.options.max_response_length)

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        delay = max(0.0, self._interval - (self._clock() - self.last_flush_at))
        self._flush_task = asyncio.create_task(self._flush_later(delay))

    async def _flush_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Edits already sent to the platform must finish before a cancel lands.
        await asyncio.shield(self.flush())
        if self._dirty and not self.finalized:
            # text arrived while the edit was in flight
            self._flush_task = None
            self._schedule_flush()

    async def _cancel_pending_flush(self) -> None:
        task, self._flush_task = self._flush_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def flush(self) -> None:
        async with self._lock:
            if self.finalized or self.mode is not StreamMode.QUICK:
                return
            self.last_flush_at = self._clock()
            text = self._preview_text()
            if not text.strip():
                return
            self._dirty = False
            if self.live_handle is None:
                try:
                    self.live_handle = await self.context.start_live_message(text)
                except Exception as exc:
                    logger.warning("live.start_failed request_id={} error={}", self.request_id, describe_error(exc))
                return
            try:
                await self.context.update_live_message(self.live_handle, text)
            except Exception as exc:
                logger.warning("live.update_skipped request_id={} error={}", self.request_id, describe_error(exc))
                return
            if self.options.debug_stream:
                logger.debug("live.updated request_id={} length={}", self.request_id, len(text))

    async def finalize_current(self) -> None:
        """Close the active live message; the next flush starts a new one."""
        await self._cancel_pending_flush()
        async with self._lock:
            handle = self.live_handle
            if handle is None:
                return
            try:
                await self.context.finalize_live_message(handle, self.preview_buffer)
            except Exception as exc:
                logger.warning("live.rotate_failed request_id={} error={}", self.request_id, describe_error(exc))
            else:
                logger.info("live.rotated request_id={} length={}", self.request_id, len(self.preview_buffer))
            self.delivered = True
            self.live_handle = None
            self.preview_buffer = ""
            self._dirty = False
            self.last_flush_at = self._clock()

    async def complete(self) -> str:
        """Deliver the remaining quick content and return the final segment text."""
        await self._cancel_pending_flush()
        async with self._lock:
            if self.finalized:
                return self.preview_buffer
            text = self.preview_buffer
            if self.live_handle is not None:
                try:
                    await self.context.finalize_live_message(self.live_handle, text or NO_RESPONSE)
                except Exception as exc:
                    logger.warning(
                        "live.finalize_failed request_id={} error={} keeping streamed message",
                        self.request_id,
                        describe_error(exc),
                    )
            elif text.strip() or not self.delivered:
                await self.context.send_text(text if text.strip() else NO_RESPONSE)
            self.delivered = True
            self.finalized = True
            return text

    async def abort(self) -> None:
        """Remove a live message left behind by a failed or cancelled prompt."""
        await self._cancel_pending_flush()
        async with self._lock:
            if self.finalized:
                return
            self.finalized = True
            handle, self.live_handle = self.live_handle, None
            if handle is None:
                return
            try:
                await self.context.remove_message(handle)
            except Exception as exc:
                logger.warning("live.remove_failed request_id={} error={}", self.request_id, describe_error(exc))


async def process_single_message(
    context: MessagingContext,
    request_id: int,
    *,
    run_prompt: PromptRunner,
    schedule_async_job: AsyncJobScheduler,
    options: StreamOptions | None = None,
    on_complete: CompletionHook | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> StreamMode:
    """Run one conversational turn and deliver it as a quick reply or a background job."""
    logger.info("live.begin request_id={} chat_id={}", request_id, context.chat_id)
    stop_typing = context.start_typing()
    classifier = StreamClassifier(context, request_id=request_id, options=options, clock=clock)
    try:
        full_response = await run_prompt(build_hybrid_prompt(context.text), classifier.on_chunk)
        mode = classifier.resolve(full_response)

        if mode is StreamMode.ASYNC:
            stop_typing()
            ref = generate_short_id()
            logger.info("live.async request_id={} ref={}", request_id, ref)
            await context.send_text(
                f"I've scheduled this as a background task (ref: {ref}). I'll notify you when it's done."
            )
            try:
                await schedule_async_job(context.text, context.chat_id, ref)
            except Exception as exc:
                logger.exception("live.async.schedule_failed request_id={} ref={}", request_id, ref)
                await context.send_text(f"❌ Could not start background task {ref}: {describe_error(exc)}")
            return mode

        await classifier.complete()
        text = classifier.response_text.strip()
        if on_complete is not None and text:
            try:
                on_complete(context.text, text, context.chat_id)
            except Exception:
                logger.exception("live.history_failed request_id={}", request_id)
        return mode
    except (Exception, asyncio.CancelledError):
        await classifier.abort()
        raise
    finally:
        stop_typing()
        logger.info("live.end request_id={} chat_id={} mode={}", request_id, context.chat_id, classifier.mode)
