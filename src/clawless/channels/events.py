"""Channel bus event models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from clawless.channels.base import MessagingContext


@dataclass(frozen=True)
class InboundMessage:
    """Message received from a chat platform, with the context to answer it."""

    channel: str
    sender_id: str
    chat_id: str
    content: str
    context: MessagingContext
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def session_id(self) -> str:
        return f"{self.channel}:{self.chat_id}"


@dataclass(frozen=True)
class OutboundMessage:
    """Text to push into one chat outside of a conversational turn."""

    channel: str
    chat_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
