"""Append-only conversation history prepended to fresh agent sessions."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from clawless.text import truncate_preview

ENTRY_PREVIEW_CHARS = 2000


@dataclass(frozen=True)
class ConversationEntry:
    chat_id: str
    user: str
    assistant: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


class ConversationHistory:
    """Completed exchanges on disk plus background results waiting for the next prompt.

    Every agent session starts without memory, so the most recent exchanges
    and any pending background results are written ahead of each prompt.
    """

    def __init__(self, file_path: Path, *, context_limit: int = 10) -> None:
        self.file_path = file_path
        self.context_limit = context_limit
        self._lock = threading.Lock()
        self._pending: list[str] = []

    def record(self, user: str, assistant: str, chat_id: str) -> ConversationEntry:
        entry = ConversationEntry(chat_id=str(chat_id), user=user, assistant=assistant)
        with self._lock:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with self.file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(entry), ensure_ascii=False) + "\n")
        logger.debug("history.recorded chat_id={} user_chars={} assistant_chars={}", chat_id, len(user), len(assistant))
        return entry

    def recent(self, limit: int | None = None, *, chat_id: str | None = None) -> list[ConversationEntry]:
        limit = self.context_limit if limit is None else limit
        if limit <= 0 or not self.file_path.exists():
            return []
        entries: list[ConversationEntry] = []
        with self._lock, self.file_path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = ConversationEntry(**json.loads(line))
                except (json.JSONDecodeError, TypeError):
                    logger.warning("history.invalid_line path={}", self.file_path)
                    continue
                if chat_id is None or entry.chat_id == str(chat_id):
                    entries.append(entry)
        return entries[-limit:]

    def append_context(self, text: str) -> None:
        """Queue text to be shown to the agent with the next conversational prompt."""
        with self._lock:
            self._pending.append(text)

    def take_pending(self) -> list[str]:
        with self._lock:
            pending, self._pending = self._pending, []
        return pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def build_prompt(self, prompt: str, *, chat_id: str | None = None, consume_pending: bool = True) -> str:
        sections: list[str] = []
        entries = self.recent(chat_id=chat_id)
        if entries:
            lines = ["[CONVERSATION HISTORY]"]
            for entry in entries:
                lines.append(f"User: {truncate_preview(entry.user, ENTRY_PREVIEW_CHARS)}")
                lines.append(f"Assistant: {truncate_preview(entry.assistant, ENTRY_PREVIEW_CHARS)}")
            sections.append("\n".join(lines))
        if consume_pending:
            pending = self.take_pending()
            if pending:
                sections.append("[BACKGROUND RESULTS]\n" + "\n\n".join(pending))
        if not sections:
            return prompt
        return "\n\n".join([*sections, prompt])
