"""Base channel interface and the per-message messaging capabilities."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from clawless.channels.bus import MessageBus
from clawless.channels.events import InboundMessage, OutboundMessage

StopTyping = Callable[[], None]


class MessagingContext(ABC):
    """Everything a conversational turn may do in the chat it came from.

    One instance is built per inbound message by the platform adapter.
    Live message handles are opaque to callers.
    """

    chat_id: str
    text: str

    @abstractmethod
    async def send_text(self, text: str) -> None:
        """Send text, split into ordered chunks under the platform limit."""

    @abstractmethod
    async def start_live_message(self, initial: str) -> Any:
        """Send the first version of a message that will be edited in place."""

    @abstractmethod
    async def update_live_message(self, handle: Any, text: str) -> None:
        """Edit a live message. An unchanged edit is not an error."""

    @abstractmethod
    async def finalize_live_message(self, handle: Any, text: str) -> None:
        """Write the final text: the first chunk replaces the live message, the rest follow as new messages."""

    @abstractmethod
    async def remove_message(self, handle: Any) -> None:
        """Delete a message sent earlier."""

    @abstractmethod
    def start_typing(self) -> StopTyping:
        """Show a typing indicator until the returned callable is invoked."""


def start_typing_loop(send_action: Callable[[], Awaitable[Any]], *, interval: float, label: str) -> StopTyping:
    """Repeat a typing action until stopped. The stop callable is idempotent."""

    async def _loop() -> None:
        try:
            while True:
                await send_action()
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("{}.typing_loop.error", label)

    task = asyncio.create_task(_loop())
    return task.cancel


class BaseChannel(ABC):
    """Abstract base class for channel adapters."""

    name: str = "base"

    def __init__(self, bus: MessageBus) -> None:
        self.bus = bus

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform and publish inbound messages until stopped."""

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect from the platform."""

    @abstractmethod
    async def send_text_to_chat(self, chat_id: str, text: str) -> None:
        """Deliver text to a chat without an inbound message to reply to."""

    async def send(self, message: OutboundMessage) -> None:
        await self.send_text_to_chat(message.chat_id, message.content)

    async def publish_inbound(self, message: InboundMessage) -> None:
        await self.bus.publish_inbound(message)
