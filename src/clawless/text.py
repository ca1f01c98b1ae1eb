"""Text helpers shared by channels, the live stream and scheduled jobs."""

from __future__ import annotations

import re
import secrets
import string

ABORT_COMMAND_NAMES = ("abort", "cancel", "stop")
_ABORT_COMMANDS = frozenset({*ABORT_COMMAND_NAMES, *(f"/{name}" for name in ABORT_COMMAND_NAMES)})
_BASE36 = string.digits + string.ascii_lowercase

_THOUGHT_BLOCK_RE = re.compile(r"<thought>[\s\S]*?</thought>", re.IGNORECASE)
_THINKING_LINE_RE = re.compile(r"^Thinking\.+\s*$", re.MULTILINE)
_THINKING_PAREN_RE = re.compile(r"\(Thinking: [\s\S]*?\)", re.IGNORECASE)
_THINKING_BRACKET_RE = re.compile(r"\[Thinking: [\s\S]*?\]", re.IGNORECASE)


def normalize_command_text(text: object) -> str:
    return re.sub(r"[!?.]+$", "", str(text or "").strip().lower())


def is_abort_command(text: object) -> bool:
    """Return whether a chat message asks to abort the running request."""
    normalized = normalize_command_text(text)
    if not normalized:
        return False
    if normalized in _ABORT_COMMANDS:
        return True
    compact = re.sub(r"\s+", " ", normalized)
    return compact in {"please abort", "please cancel", "please stop"}


def strip_thinking_process(text: str) -> str:
    """Remove reasoning markers some agents leave in their final output."""
    if not text:
        return ""
    result = _THOUGHT_BLOCK_RE.sub("", text)
    result = _THINKING_LINE_RE.sub("", result)
    result = _THINKING_PAREN_RE.sub("", result)
    result = _THINKING_BRACKET_RE.sub("", result)
    return result.strip()


def normalize_outgoing_text(text: object) -> str:
    return strip_thinking_process(str(text or "").strip())


def generate_short_id() -> str:
    """Random 8 character base36 id used for job references."""
    return "".join(secrets.choice(_BASE36) for _ in range(8))


def truncate_preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[: limit - 1]}…"


def chunk_text(text: str, *, limit: int) -> list[str]:
    """Split text into ordered chunks no longer than `limit`, preferring line breaks."""
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        split_at = remaining.rfind("\n", 0, limit)
        if split_at <= 0:
            split_at = limit
        chunks.append(remaining[:split_at].rstrip())
        remaining = remaining[split_at:].lstrip("\n")
    return [chunk for chunk in chunks if chunk]
