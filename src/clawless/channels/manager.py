"""Channel manager."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from loguru import logger

from clawless.channels.base import BaseChannel
from clawless.channels.bus import MessageBus
from clawless.channels.events import InboundMessage, OutboundMessage
from clawless.errors import describe_error

InboundConsumer = Callable[[InboundMessage], Awaitable[object]]


class ChannelManager:
    """Coordinate inbound routing and outbound dispatch for channels."""

    def __init__(self, bus: MessageBus, on_inbound: InboundConsumer) -> None:
        self.bus = bus
        self._on_inbound = on_inbound
        self._channels: dict[str, BaseChannel] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._unsub_inbound: Callable[[], None] | None = None
        self._unsub_outbound: Callable[[], None] | None = None

    def register(self, channel: BaseChannel) -> None:
        self._channels[channel.name] = channel

    @property
    def channels(self) -> dict[str, BaseChannel]:
        return dict(self._channels)

    def enabled_channels(self) -> Iterable[str]:
        return self._channels.keys()

    async def start(self) -> None:
        self._unsub_inbound = self.bus.on_inbound(self._process_inbound)
        self._unsub_outbound = self.bus.on_outbound(self._process_outbound)
        for channel in self._channels.values():
            self._tasks.append(asyncio.create_task(self._run_channel(channel)))
        logger.info("channels.started names={}", ",".join(self._channels))

    async def wait(self) -> None:
        """Block until every channel task has ended."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        for channel in self._channels.values():
            try:
                await channel.stop()
            except Exception:
                logger.exception("channels.stop_failed name={}", channel.name)
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                continue
        self._tasks.clear()
        if self._unsub_inbound is not None:
            self._unsub_inbound()
            self._unsub_inbound = None
        if self._unsub_outbound is not None:
            self._unsub_outbound()
            self._unsub_outbound = None

    async def _run_channel(self, channel: BaseChannel) -> None:
        try:
            await channel.start()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("channels.crashed name={}", channel.name)

    async def _process_inbound(self, message: InboundMessage) -> None:
        try:
            await self._on_inbound(message)
        except Exception as exc:
            logger.exception("channels.inbound_failed channel={} chat_id={}", message.channel, message.chat_id)
            try:
                await message.context.send_text(f"❌ Error: {describe_error(exc)}")
            except Exception:
                logger.exception("channels.inbound_reply_failed channel={} chat_id={}", message.channel, message.chat_id)

    async def _process_outbound(self, message: OutboundMessage) -> None:
        channel = self._channels.get(message.channel)
        if channel is None:
            logger.warning("channels.outbound_unrouted channel={} chat_id={}", message.channel, message.chat_id)
            return
        try:
            await channel.send(message)
        except Exception:
            logger.exception("channels.outbound_failed channel={} chat_id={}", message.channel, message.chat_id)
