"""Conversational turn pipeline."""

from clawless.core.live import (
    ASYNC_MARKER,
    QUICK_MARKER,
    StreamClassifier,
    StreamMode,
    StreamOptions,
    build_hybrid_prompt,
    process_single_message,
)
from clawless.core.queue import QueueItem, RequestSerializer

__all__ = [
    "ASYNC_MARKER",
    "QUICK_MARKER",
    "QueueItem",
    "RequestSerializer",
    "StreamClassifier",
    "StreamMode",
    "StreamOptions",
    "build_hybrid_prompt",
    "process_single_message",
]
