"""Signal-based channel bus."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

from blinker import Signal

from clawless.channels.events import InboundMessage, OutboundMessage

InboundHandler = Callable[[InboundMessage], Coroutine[Any, Any, None]]
OutboundHandler = Callable[[OutboundMessage], Coroutine[Any, Any, None]]


class MessageBus:
    """In-process message bus backed by blinker signals.

    Inbound carries chat messages (with their reply context) to the
    runtime; outbound carries text pushed into a chat by scheduled jobs.
    """

    def __init__(self) -> None:
        self._inbound = Signal("clawless.inbound")
        self._outbound = Signal("clawless.outbound")

    @property
    def has_outbound_receivers(self) -> bool:
        return bool(self._outbound.receivers)

    async def publish_inbound(self, message: InboundMessage) -> None:
        await self._inbound.send_async(self, message=message)

    async def publish_outbound(self, message: OutboundMessage) -> None:
        await self._outbound.send_async(self, message=message)

    async def send_text(self, channel: str, chat_id: str, text: str, **metadata: Any) -> None:
        await self.publish_outbound(OutboundMessage(channel=channel, chat_id=chat_id, content=text, metadata=metadata))

    def on_inbound(self, handler: InboundHandler) -> Callable[[], None]:
        async def _receiver(sender: Any, *, message: InboundMessage) -> None:
            await handler(message)

        self._inbound.connect(_receiver, weak=False)
        return lambda: self._inbound.disconnect(_receiver)

    def on_outbound(self, handler: OutboundHandler) -> Callable[[], None]:
        async def _receiver(sender: Any, *, message: OutboundMessage) -> None:
            await handler(message)

        self._outbound.connect(_receiver, weak=False)
        return lambda: self._outbound.disconnect(_receiver)
