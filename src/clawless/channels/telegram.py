"""Telegram channel adapter."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, ClassVar

from loguru import logger
from telegram import Bot, Message, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters
from telegramify_markdown import markdownify as md

from clawless.channels.base import BaseChannel, MessagingContext, StopTyping, start_typing_loop
from clawless.channels.bus import MessageBus
from clawless.channels.events import InboundMessage
from clawless.errors import DeliveryError
from clawless.text import ABORT_COMMAND_NAMES, chunk_text, truncate_preview

TELEGRAM_MESSAGE_LIMIT = 4000


def _not_modified(error: BadRequest) -> bool:
    return "message is not modified" in str(error).lower()


async def send_markdown(bot: Bot, chat_id: int, text: str, **kwargs: Any) -> Message:
    """Send MarkdownV2, falling back to plain text when Telegram rejects the entities."""
    try:
        return await bot.send_message(chat_id=chat_id, text=md(text), parse_mode=ParseMode.MARKDOWN_V2, **kwargs)
    except BadRequest as exc:
        logger.debug("telegram.send.plain_fallback chat_id={} error={}", chat_id, exc)
        return await bot.send_message(chat_id=chat_id, text=text, parse_mode=None, **kwargs)


class ClawlessMessageFilter(filters.MessageFilter):
    GROUP_CHAT_TYPES: ClassVar[set[str]] = {"group", "supergroup"}

    def filter(self, message: Message) -> bool | dict[str, list[Any]] | None:
        text = message.text
        if not text:
            return False

        # Private chat: every non-command message is a prompt.
        if message.chat.type == "private":
            return not filters.COMMAND.filter(message)

        # Group chat: only `/ask`, a mention of the bot, or a reply to the bot.
        if message.chat.type in self.GROUP_CHAT_TYPES:
            bot = message.get_bot()
            if text.startswith("/ask "):
                return True
            if self._mentions_bot(message, text, bot.id, (bot.username or "").lower()):
                return True
            reply_to = message.reply_to_message
            return bool(reply_to and reply_to.from_user and reply_to.from_user.id == bot.id)

        return False

    @staticmethod
    def _mentions_bot(message: Message, text: str, bot_id: int, bot_username: str) -> bool:
        for entity in message.entities or ():
            if entity.type == "mention" and bot_username:
                mention_text = text[entity.offset : entity.offset + entity.length]
                if mention_text.lower() == f"@{bot_username}":
                    return True
                continue
            if entity.type == "text_mention" and entity.user and entity.user.id == bot_id:
                return True
        return False


class TelegramMessageContext(MessagingContext):
    """Reply capabilities for one Telegram chat message."""

    def __init__(
        self,
        bot: Bot,
        chat_id: str,
        text: str,
        *,
        message_id: int | None = None,
        message_limit: int = TELEGRAM_MESSAGE_LIMIT,
        typing_interval: float = 4.0,
    ) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.text = text
        self.message_id = message_id
        self.message_limit = message_limit
        self.typing_interval = typing_interval

    async def send_text(self, text: str) -> None:
        for chunk in chunk_text(text, limit=self.message_limit):
            await send_markdown(self.bot, int(self.chat_id), chunk)

    async def start_live_message(self, initial: str) -> int:
        message = await self.bot.send_message(
            chat_id=int(self.chat_id),
            text=truncate_preview(initial or "…", self.message_limit),
        )
        return message.message_id

    async def update_live_message(self, handle: Any, text: str) -> None:
        try:
            await self.bot.edit_message_text(
                chat_id=int(self.chat_id),
                message_id=int(handle),
                text=truncate_preview(text, self.message_limit),
            )
        except BadRequest as exc:
            if _not_modified(exc):
                return
            raise DeliveryError(f"telegram edit failed: {exc}") from exc

    async def finalize_live_message(self, handle: Any, text: str) -> None:
        chunks = chunk_text(text, limit=self.message_limit) or [text]
        first, rest = chunks[0], chunks[1:]
        try:
            await self.bot.edit_message_text(
                chat_id=int(self.chat_id),
                message_id=int(handle),
                text=md(first),
                parse_mode=ParseMode.MARKDOWN_V2,
            )
        except BadRequest as exc:
            if not _not_modified(exc):
                await self.update_live_message(handle, first)
        for chunk in rest:
            await send_markdown(self.bot, int(self.chat_id), chunk)

    async def remove_message(self, handle: Any) -> None:
        await self.bot.delete_message(chat_id=int(self.chat_id), message_id=int(handle))

    def start_typing(self) -> StopTyping:
        async def _send_action() -> None:
            await self.bot.send_chat_action(chat_id=int(self.chat_id), action=ChatAction.TYPING)

        return start_typing_loop(_send_action, interval=self.typing_interval, label="telegram")


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram adapter config."""

    token: str
    allow_from: set[str]
    message_limit: int = TELEGRAM_MESSAGE_LIMIT
    typing_interval: float = 4.0


class TelegramChannel(BaseChannel):
    """Telegram adapter using long polling mode."""

    name = "telegram"

    def __init__(self, bus: MessageBus, config: TelegramConfig) -> None:
        super().__init__(bus)
        self._config = config
        self._app: Application | None = None
        self._running = False

    async def start(self) -> None:
        if not self._config.token:
            raise RuntimeError("telegram token is empty")
        logger.info("telegram.channel.start allow_from_count={}", len(self._config.allow_from))
        self._running = True
        self._app = Application.builder().token(self._config.token).build()
        self._app.add_handler(CommandHandler("start", self._on_start))
        self._app.add_handler(CommandHandler("help", self._on_help))
        self._app.add_handler(CommandHandler(list(ABORT_COMMAND_NAMES), self._on_text, block=False))
        self._app.add_handler(MessageHandler(ClawlessMessageFilter(), self._on_text, block=False))
        await self._app.initialize()
        await self._app.start()
        updater = self._app.updater
        if updater is None:
            return
        await updater.start_polling(drop_pending_updates=True, allowed_updates=["message"])
        logger.info("telegram.channel.polling")
        while self._running:
            await asyncio.sleep(0.5)

    async def stop(self) -> None:
        self._running = False
        if self._app is None:
            return
        updater = self._app.updater
        if updater is not None:
            await updater.stop()
        await self._app.stop()
        await self._app.shutdown()
        self._app = None
        logger.info("telegram.channel.stopped")

    async def send_text_to_chat(self, chat_id: str, text: str) -> None:
        if self._app is None:
            raise DeliveryError("telegram channel is not running")
        for chunk in chunk_text(text, limit=self._config.message_limit):
            await send_markdown(self._app.bot, int(chat_id), chunk)

    async def _on_start(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None:
            return
        await update.message.reply_text("Clawless is online. Send text to talk to the agent.")

    async def _on_help(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None:
            return
        await update.message.reply_text(
            "Commands:\n"
            "/start - show startup message\n"
            "/help - show this help\n"
            "/abort - stop the running request\n\n"
            "All plain text is sent to the agent."
        )

    def _allowed(self, user: Any) -> bool:
        sender_tokens = {str(user.id)}
        if user.username:
            sender_tokens.add(user.username)
        return not self._config.allow_from or not sender_tokens.isdisjoint(self._config.allow_from)

    async def _on_text(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message is None or update.effective_user is None:
            return
        user = update.effective_user
        if not self._allowed(user):
            logger.warning("telegram.channel.denied sender_id={} username={}", user.id, user.username or "")
            await update.message.reply_text("Access denied.")
            return

        chat_id = str(update.message.chat_id)
        text = update.message.text or ""
        if text.startswith("/ask "):
            text = text[5:]
        elif text.startswith("/"):
            # "/abort@my_bot" in groups
            command, _, rest = text.partition(" ")
            text = f"{command.split('@', 1)[0]} {rest}".strip()

        logger.info(
            "telegram.channel.inbound chat_id={} sender_id={} username={} content={}",
            chat_id,
            user.id,
            user.username or "",
            text[:100],
        )
        context = TelegramMessageContext(
            update.message.get_bot(),
            chat_id,
            text,
            message_id=update.message.message_id,
            message_limit=self._config.message_limit,
            typing_interval=self._config.typing_interval,
        )
        await self.publish_inbound(
            InboundMessage(
                channel=self.name,
                sender_id=str(user.id),
                chat_id=chat_id,
                content=text,
                context=context,
                metadata={"username": user.username or "", "message_id": update.message.message_id},
            )
        )
