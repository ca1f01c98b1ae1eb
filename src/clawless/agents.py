"""Command line builders for the supported ACP agents."""

from __future__ import annotations

from dataclasses import dataclass, field

from clawless.config import Settings
from clawless.errors import ConfigurationError


@dataclass(frozen=True)
class CliAgent:
    """One ACP-capable agent executable and its launch options."""

    command: str
    display_name: str = "Agent"
    model: str | None = None
    approval_mode: str | None = None
    include_directories: tuple[str, ...] = ()
    extra_args: tuple[str, ...] = field(default_factory=tuple)

    def build_acp_args(self) -> list[str]:
        return list(self.extra_args)

    def log_token(self) -> str:
        token = self.command.replace("\\", "/").rsplit("/", 1)[-1] or self.command
        return "-".join(token.lower().split())


class GeminiAgent(CliAgent):
    def build_acp_args(self) -> list[str]:
        args = ["--experimental-acp"]
        if self.approval_mode:
            args.extend(["--approval-mode", self.approval_mode])
        if self.model:
            args.extend(["--model", self.model])
        if self.include_directories:
            args.extend(["--include-directories", ",".join(self.include_directories)])
        return [*args, *self.extra_args]


class OpencodeAgent(CliAgent):
    def build_acp_args(self) -> list[str]:
        args = ["acp"]
        if self.model:
            args.extend(["--model", self.model])
        return [*args, *self.extra_args]


def build_agent(settings: Settings) -> CliAgent:
    common = {
        "model": settings.agent_model,
        "approval_mode": settings.approval_mode,
        "include_directories": tuple(settings.include_directories),
        "extra_args": tuple(settings.agent_args),
    }
    if settings.agent == "gemini":
        return GeminiAgent(command=settings.agent_command or "gemini", display_name="Gemini CLI", **common)
    if settings.agent == "opencode":
        return OpencodeAgent(command=settings.agent_command or "opencode", display_name="OpenCode", **common)
    if not settings.agent_command:
        raise ConfigurationError("CLAWLESS_AGENT_COMMAND is required for a custom agent")
    return CliAgent(command=settings.agent_command, display_name=settings.agent_command, **common)
