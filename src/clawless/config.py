"""Configuration management for Clawless."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from clawless.errors import ConfigurationError

MessagingPlatform = Literal["telegram", "discord"]
AgentKind = Literal["gemini", "opencode", "custom"]
PermissionStrategy = Literal["allow_once", "reject_once", "cancelled"]

CommaList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLAWLESS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Messaging
    messaging_platform: MessagingPlatform = Field(default="telegram", description="Active platform adapter")
    telegram_token: str | None = Field(default=None, description="Telegram bot token from BotFather")
    telegram_allow_from: CommaList = Field(default_factory=list, description="Allowed Telegram user ids or usernames")
    discord_token: str | None = Field(default=None, description="Discord bot token")
    discord_allow_from: CommaList = Field(default_factory=list, description="Allowed Discord user ids or names")
    discord_allow_channels: CommaList = Field(default_factory=list, description="Allowed Discord channel ids")
    discord_command_prefix: str = Field(default="!", description="Discord command prefix")
    discord_proxy: str | None = Field(default=None, description="Optional proxy for the Discord gateway")
    default_chat_id: str | None = Field(default=None, description="Destination chat for scheduled job results")

    # Agent
    agent: AgentKind = Field(default="gemini", description="Which CLI agent to drive")
    agent_command: str | None = Field(default=None, description="Agent executable, defaults per agent kind")
    agent_args: CommaList = Field(default_factory=list, description="Extra arguments for the agent command")
    agent_model: str | None = Field(default=None, description="Model passed to the agent")
    approval_mode: str | None = Field(default="yolo", description="Gemini approval mode")
    include_directories: CommaList = Field(default_factory=list, description="Extra directories exposed to the agent")
    agent_cwd: Path | None = Field(default=None, description="Working directory for agent processes")

    # Session limits
    acp_timeout_seconds: float = Field(default=20 * 60, gt=0, description="Overall deadline per prompt")
    acp_idle_timeout_seconds: float = Field(default=5 * 60, gt=0, description="Deadline without agent activity")
    kill_grace_seconds: float = Field(default=5.0, ge=0, description="Wait after SIGTERM before SIGKILL")
    stderr_tail_max_chars: int = Field(default=4000, ge=0, description="Retained agent stderr characters")
    permission_strategy: PermissionStrategy = Field(default="allow_once", description="ACP permission auto-answer")
    mcp_servers_json: str | None = Field(default=None, description="Explicit MCP server override as JSON")
    mcp_settings_path: Path | None = Field(default=None, description="Settings file holding an mcpServers mapping")

    # Streaming
    stream_update_interval_ms: int = Field(default=1000, ge=0, description="Minimum interval between live edits")
    message_gap_threshold_ms: int = Field(default=10_000, ge=0, description="Silence that closes a live message")
    max_response_length: int = Field(default=4000, ge=2, description="Live preview length limit")
    max_message_length: int | None = Field(default=None, description="Platform message size override")
    typing_interval_seconds: float = Field(default=4.0, gt=0, description="Typing indicator refresh interval")
    acp_debug_stream: bool = Field(default=False, description="Log every live preview edit")

    # Scheduling
    timezone: str = Field(default="UTC", description="Scheduler timezone (IANA name)")
    history_context_limit: int = Field(default=10, ge=0, description="Exchanges prepended to background prompts")
    home: Path | None = Field(default=None, description="State directory for schedules and history")

    @field_validator(
        "telegram_allow_from",
        "discord_allow_from",
        "discord_allow_channels",
        "agent_args",
        "include_directories",
        mode="before",
    )
    @classmethod
    def _split_comma_list(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip().lstrip("@") for item in value.split(",") if item.strip()]
        return value

    def resolve_home(self) -> Path:
        home = self.home or Path.home() / ".clawless"
        return home.expanduser()

    def resolve_agent_cwd(self, workspace: Path) -> Path:
        return (self.agent_cwd or workspace).expanduser().resolve()

    def platform_message_limit(self) -> int:
        if self.max_message_length:
            return self.max_message_length
        return 2000 if self.messaging_platform == "discord" else 4000

    def validate_platform(self) -> None:
        if self.messaging_platform == "telegram":
            token = (self.telegram_token or "").strip()
            if ":" not in token:
                raise ConfigurationError("CLAWLESS_TELEGRAM_TOKEN is missing or malformed")
        elif not (self.discord_token or "").strip():
            raise ConfigurationError("CLAWLESS_DISCORD_TOKEN is missing")


def load_settings(workspace: Path) -> Settings:
    """Load settings from the environment and the workspace `.env` file."""
    env_file = workspace / ".env"
    return Settings(_env_file=env_file if env_file.exists() else None)  # type: ignore[call-arg]
