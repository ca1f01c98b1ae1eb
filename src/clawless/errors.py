"""Application-level exception types for Clawless."""

from __future__ import annotations

import json


class ClawlessError(Exception):
    """Base exception for Clawless."""


class ConfigurationError(ClawlessError):
    """Raised for configuration and startup validation errors."""


class AgentError(ClawlessError):
    """Base exception for one failed agent invocation."""


class AgentTimeoutError(AgentError):
    """Raised when the overall or idle deadline of a session fires."""

    def __init__(self, kind: str, seconds: float) -> None:
        self.kind = kind
        self.seconds = seconds
        label = "no agent activity" if kind == "idle" else "agent did not finish"
        super().__init__(f"{kind} timeout: {label} within {seconds:g}s")


class AgentCancelledError(AgentError):
    """Raised when the caller cancels a running session."""


class ProtocolError(AgentError):
    """Raised for malformed or unexpected messages on the ACP connection."""


class ProcessError(AgentError):
    """Raised when the agent process cannot start or exits unexpectedly."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        signal: int | None = None,
        stderr_tail: str = "",
    ) -> None:
        self.returncode = returncode
        self.signal = signal
        self.stderr_tail = stderr_tail
        detail = f"{message}. {stderr_tail[-500:]}" if stderr_tail.strip() else message
        super().__init__(detail)


class DeliveryError(ClawlessError):
    """Raised when a chat platform rejects a send or edit."""


class ScheduleError(ClawlessError):
    """Raised for invalid schedule definitions."""


class ScheduleNotFoundError(ScheduleError):
    """Raised when a schedule id does not exist."""


def describe_error(error: object, fallback: str = "Unknown error") -> str:
    """Render any raised value as a short user-facing message."""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    if error is None:
        return fallback
    try:
        return json.dumps(error, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(error)
