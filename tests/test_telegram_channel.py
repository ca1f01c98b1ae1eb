from __future__ import annotations

from types import SimpleNamespace

import pytest
from telegram.error import BadRequest
from telegram.ext import CommandHandler

from clawless.channels import telegram as telegram_module
from clawless.channels.bus import MessageBus
from clawless.channels.telegram import TelegramChannel, TelegramConfig, TelegramMessageContext
from clawless.errors import DeliveryError
from clawless.text import ABORT_COMMAND_NAMES, is_abort_command


class DummyBot:
    def __init__(self, *, fail_first: bool = False, edit_error: str | None = None) -> None:
        self.fail_first = fail_first
        self.edit_error = edit_error
        self.calls: list[dict[str, object]] = []
        self.edits: list[dict[str, object]] = []
        self.deleted: list[int] = []

    async def send_message(self, **kwargs: object) -> SimpleNamespace:
        self.calls.append(kwargs)
        if self.fail_first and len(self.calls) == 1:
            raise BadRequest("Can't parse entities: unmatched end tag")
        return SimpleNamespace(message_id=40 + len(self.calls))

    async def edit_message_text(self, **kwargs: object) -> None:
        self.edits.append(kwargs)
        if self.edit_error is not None:
            raise BadRequest(self.edit_error)

    async def delete_message(self, *, chat_id: int, message_id: int) -> None:
        self.deleted.append(message_id)


class DummyMessage:
    def __init__(self, *, chat_id: int, text: str, bot: DummyBot | None = None, message_id: int = 1) -> None:
        self.chat_id = chat_id
        self.text = text
        self.message_id = message_id
        self.bot = bot or DummyBot()
        self.replies: list[str] = []

    async def reply_text(self, text: str) -> None:
        self.replies.append(text)

    def get_bot(self) -> DummyBot:
        return self.bot


def _update(message: DummyMessage, *, user_id: int = 1, username: str | None = "tester") -> SimpleNamespace:
    return SimpleNamespace(
        message=message,
        effective_user=SimpleNamespace(id=user_id, username=username, full_name="Test User"),
    )


def _channel(allow_from: set[str] | None = None) -> tuple[TelegramChannel, list[object]]:
    channel = TelegramChannel(MessageBus(), TelegramConfig(token="1:t", allow_from=allow_from or set()))  # noqa: S106
    published: list[object] = []

    async def _publish_inbound(msg: object) -> None:
        published.append(msg)

    channel.publish_inbound = _publish_inbound  # type: ignore[method-assign]
    return channel, published


@pytest.mark.asyncio
async def test_on_text_denies_sender_not_in_allowlist() -> None:
    channel, published = _channel({"alice", "42"})
    message = DummyMessage(chat_id=999, text="hello")

    await channel._on_text(_update(message, user_id=7, username="mallory"), None)  # type: ignore[arg-type]

    assert published == []
    assert message.replies == ["Access denied."]


@pytest.mark.asyncio
async def test_on_text_allows_sender_by_username_or_id() -> None:
    channel, published = _channel({"alice", "42"})

    await channel._on_text(_update(DummyMessage(chat_id=999, text="hi"), user_id=1, username="alice"), None)  # type: ignore[arg-type]
    await channel._on_text(_update(DummyMessage(chat_id=999, text="yo"), user_id=42, username=None), None)  # type: ignore[arg-type]

    assert [msg.content for msg in published] == ["hi", "yo"]  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_on_text_strips_ask_command_and_bot_suffix() -> None:
    channel, published = _channel()

    await channel._on_text(_update(DummyMessage(chat_id=-5, text="/ask what time is it")), None)  # type: ignore[arg-type]
    await channel._on_text(_update(DummyMessage(chat_id=-5, text="/abort@clawless_bot")), None)  # type: ignore[arg-type]

    first, second = published
    assert first.content == "what time is it"  # type: ignore[attr-defined]
    assert first.chat_id == "-5"  # type: ignore[attr-defined]
    assert first.context.text == "what time is it"  # type: ignore[attr-defined]
    assert second.content == "/abort"  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_send_text_to_chat_falls_back_to_plain_text_when_entity_parse_fails() -> None:
    channel, _ = _channel()
    bot = DummyBot(fail_first=True)
    channel._app = SimpleNamespace(bot=bot)  # type: ignore[assignment]

    await channel.send_text_to_chat("123", "a < b")

    assert len(bot.calls) == 2
    assert bot.calls[0]["parse_mode"] == "MarkdownV2"
    assert bot.calls[1]["parse_mode"] is None
    assert bot.calls[1]["text"] == "a < b"
    assert bot.calls[1]["chat_id"] == 123


@pytest.mark.asyncio
async def test_send_text_to_chat_requires_running_channel() -> None:
    channel, _ = _channel()

    with pytest.raises(DeliveryError):
        await channel.send_text_to_chat("123", "hello")


@pytest.mark.asyncio
async def test_context_splits_long_messages() -> None:
    bot = DummyBot()
    context = TelegramMessageContext(bot, "10", "q", message_limit=50)  # type: ignore[arg-type]

    await context.send_text("line\n" * 30)

    assert len(bot.calls) > 1
    assert all(call["parse_mode"] == "MarkdownV2" for call in bot.calls)


@pytest.mark.asyncio
async def test_live_message_lifecycle() -> None:
    bot = DummyBot()
    context = TelegramMessageContext(bot, "10", "q")  # type: ignore[arg-type]

    handle = await context.start_live_message("draft")
    await context.update_live_message(handle, "draft two")
    await context.finalize_live_message(handle, "**final**")
    await context.remove_message(handle)

    assert handle == 41
    assert bot.calls[0]["text"] == "draft"
    assert "parse_mode" not in bot.calls[0]
    assert bot.edits[0]["text"] == "draft two"
    assert bot.edits[1]["parse_mode"] == "MarkdownV2"
    assert bot.deleted == [41]


@pytest.mark.asyncio
async def test_unchanged_edit_is_ignored_and_other_errors_raise() -> None:
    unchanged = TelegramMessageContext(DummyBot(edit_error="Message is not modified"), "10", "q")  # type: ignore[arg-type]
    await unchanged.update_live_message(5, "same")

    broken = TelegramMessageContext(DummyBot(edit_error="Message to edit not found"), "10", "q")  # type: ignore[arg-type]
    with pytest.raises(DeliveryError):
        await broken.update_live_message(5, "gone")


class DummyApplication:
    def __init__(self) -> None:
        self.handlers: list[object] = []
        self.updater = None
        self.bot = DummyBot()

    def add_handler(self, handler: object) -> None:
        self.handlers.append(handler)

    async def initialize(self) -> None:
        return None

    async def start(self) -> None:
        return None


@pytest.mark.asyncio
async def test_abort_command_handlers_match_abort_detection(monkeypatch: pytest.MonkeyPatch) -> None:
    application = DummyApplication()
    builder = SimpleNamespace(token=lambda _token: SimpleNamespace(build=lambda: application))
    monkeypatch.setattr(telegram_module, "Application", SimpleNamespace(builder=lambda: builder))
    channel, _ = _channel()

    await channel.start()

    command_sets = [handler.commands for handler in application.handlers if isinstance(handler, CommandHandler)]
    abort_commands = next(commands for commands in command_sets if "abort" in commands)
    assert set(abort_commands) == set(ABORT_COMMAND_NAMES)
    assert all(is_abort_command(f"/{name}") for name in abort_commands)
