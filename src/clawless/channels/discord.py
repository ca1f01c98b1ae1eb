"""Discord channel adapter."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Any, cast

import discord
from discord.ext import commands
from loguru import logger

from clawless.channels.base import BaseChannel, MessagingContext, StopTyping, start_typing_loop
from clawless.channels.bus import MessageBus
from clawless.channels.events import InboundMessage
from clawless.errors import DeliveryError
from clawless.text import chunk_text, truncate_preview

DISCORD_MESSAGE_LIMIT = 2000


class DiscordMessageContext(MessagingContext):
    """Reply capabilities for one Discord channel message."""

    def __init__(
        self,
        channel: discord.abc.Messageable,
        chat_id: str,
        text: str,
        *,
        source: discord.Message | None = None,
        message_limit: int = DISCORD_MESSAGE_LIMIT,
        typing_interval: float = 8.0,
    ) -> None:
        self.channel = channel
        self.chat_id = chat_id
        self.text = text
        self.source = source
        self.message_limit = message_limit
        self.typing_interval = typing_interval

    async def _send(self, content: str) -> discord.Message:
        kwargs: dict[str, Any] = {"content": content}
        if self.source is not None:
            kwargs["reference"] = self.source.to_reference(fail_if_not_exists=False)
            kwargs["mention_author"] = False
        return await self.channel.send(**kwargs)

    async def send_text(self, text: str) -> None:
        for chunk in chunk_text(text, limit=self.message_limit):
            await self._send(chunk)

    async def start_live_message(self, initial: str) -> discord.Message:
        return await self._send(truncate_preview(initial or "…", self.message_limit))

    async def update_live_message(self, handle: Any, text: str) -> None:
        message = cast(discord.Message, handle)
        content = truncate_preview(text, self.message_limit)
        if message.content == content:
            return
        try:
            await message.edit(content=content)
        except discord.HTTPException as exc:
            raise DeliveryError(f"discord edit failed: {exc}") from exc

    async def finalize_live_message(self, handle: Any, text: str) -> None:
        chunks = chunk_text(text, limit=self.message_limit) or [text]
        await self.update_live_message(handle, chunks[0])
        for chunk in chunks[1:]:
            await self._send(chunk)

    async def remove_message(self, handle: Any) -> None:
        await cast(discord.Message, handle).delete()

    def start_typing(self) -> StopTyping:
        async def _send_action() -> None:
            await self.channel.typing()

        return start_typing_loop(_send_action, interval=self.typing_interval, label="discord")


@dataclass(frozen=True)
class DiscordConfig:
    """Discord adapter config."""

    token: str
    allow_from: set[str]
    allow_channels: set[str]
    command_prefix: str = "!"
    proxy: str | None = None
    message_limit: int = DISCORD_MESSAGE_LIMIT
    typing_interval: float = 8.0


class DiscordChannel(BaseChannel):
    """Discord adapter based on discord.py."""

    name = "discord"

    def __init__(self, bus: MessageBus, config: DiscordConfig) -> None:
        super().__init__(bus)
        self._config = config
        self._bot: commands.Bot | None = None

    async def start(self) -> None:
        if not self._config.token:
            raise RuntimeError("discord token is empty")

        intents = discord.Intents.default()
        intents.messages = True
        intents.message_content = True

        # Proxy usage is opt-in; ambient proxy env vars are ignored.
        proxy = self._config.proxy or None
        bot = commands.Bot(command_prefix=self._config.command_prefix, intents=intents, help_command=None, proxy=proxy)
        self._bot = bot

        @bot.event
        async def on_ready() -> None:
            logger.info("discord.ready user={} id={}", str(bot.user), bot.user.id if bot.user else "<unknown>")

        @bot.event
        async def on_message(message: discord.Message) -> None:
            await self._on_message(message)

        logger.info(
            "discord.start allow_from_count={} allow_channels_count={} proxy_enabled={}",
            len(self._config.allow_from),
            len(self._config.allow_channels),
            bool(proxy),
        )
        try:
            async with bot:
                await bot.start(self._config.token)
        finally:
            self._bot = None
            logger.info("discord.stopped")

    async def stop(self) -> None:
        if self._bot is not None:
            await self._bot.close()

    async def send_text_to_chat(self, chat_id: str, text: str) -> None:
        channel = await self._resolve_channel(chat_id)
        if channel is None:
            raise DeliveryError(f"discord channel {chat_id} is not reachable")
        for chunk in chunk_text(text, limit=self._config.message_limit):
            await channel.send(content=chunk)

    def _strip_prefix(self, content: str) -> str:
        prefix = f"{self._config.command_prefix}ask "
        if content.startswith(prefix):
            return content[len(prefix) :]
        bot_user = self._bot.user if self._bot is not None else None
        if bot_user is not None:
            for mention in (f"<@{bot_user.id}>", f"<@!{bot_user.id}>"):
                content = content.replace(mention, "")
        return content.strip()

    async def _on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return
        if not self._allow_message(message):
            return

        chat_id = str(message.channel.id)
        content = self._strip_prefix(message.content)
        if not content:
            return
        logger.info(
            "discord.inbound channel_id={} sender_id={} username={} content={}",
            chat_id,
            message.author.id,
            message.author.name,
            content[:100],
        )
        context = DiscordMessageContext(
            message.channel,
            chat_id,
            content,
            source=message,
            message_limit=self._config.message_limit,
            typing_interval=self._config.typing_interval,
        )
        await self.publish_inbound(
            InboundMessage(
                channel=self.name,
                sender_id=str(message.author.id),
                chat_id=chat_id,
                content=content,
                context=context,
                metadata={"username": message.author.name, "message_id": message.id},
            )
        )

    async def _resolve_channel(self, chat_id: str) -> discord.abc.Messageable | None:
        if self._bot is None:
            return None
        channel_id = int(chat_id)
        channel = self._bot.get_channel(channel_id)
        if channel is not None:
            return channel  # type: ignore[return-value]
        with contextlib.suppress(discord.HTTPException):
            fetched = await self._bot.fetch_channel(channel_id)
            if isinstance(fetched, discord.abc.Messageable):
                return fetched
        return None

    def _allow_message(self, message: discord.Message) -> bool:
        channel_id = str(message.channel.id)
        if self._config.allow_channels and channel_id not in self._config.allow_channels:
            return False

        if not message.content.strip():
            return False

        sender_tokens = {str(message.author.id), message.author.name}
        if getattr(message.author, "global_name", None):
            sender_tokens.add(cast(str, message.author.global_name))
        if self._config.allow_from and sender_tokens.isdisjoint(self._config.allow_from):
            logger.warning(
                "discord.inbound.denied channel_id={} sender_id={} reason=allow_from",
                message.channel.id,
                message.author.id,
            )
            return False

        if isinstance(message.channel, discord.DMChannel) or message.content.startswith(
            f"{self._config.command_prefix}ask "
        ):
            return True

        bot_user = self._bot.user if self._bot is not None else None
        if bot_user is None:
            return False
        if bot_user in message.mentions:
            return True

        ref = message.reference
        if ref is None:
            return False
        resolved = ref.resolved
        return bool(isinstance(resolved, discord.Message) and resolved.author and resolved.author.id == bot_user.id)
