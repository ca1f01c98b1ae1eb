from __future__ import annotations

from pathlib import Path

import pytest

from clawless.agents import GeminiAgent, OpencodeAgent, build_agent
from clawless.config import Settings, load_settings
from clawless.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for key in ("CLAWLESS_TELEGRAM_TOKEN", "CLAWLESS_DISCORD_TOKEN", "CLAWLESS_AGENT", "CLAWLESS_MESSAGING_PLATFORM"):
        monkeypatch.delenv(key, raising=False)


def test_comma_lists_are_split_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAWLESS_TELEGRAM_ALLOW_FROM", " @alice, 42 ,,bob")
    monkeypatch.setenv("CLAWLESS_INCLUDE_DIRECTORIES", "/srv/docs,/srv/notes")

    settings = Settings(_env_file=None)  # type: ignore[call-arg]

    assert settings.telegram_allow_from == ["alice", "42", "bob"]
    assert settings.include_directories == ["/srv/docs", "/srv/notes"]


def test_workspace_env_file_is_loaded(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("CLAWLESS_AGENT=opencode\nCLAWLESS_TIMEZONE=Europe/Berlin\n", encoding="utf-8")

    settings = load_settings(tmp_path)

    assert settings.agent == "opencode"
    assert settings.timezone == "Europe/Berlin"


def test_platform_message_limit_defaults_and_override() -> None:
    assert Settings(_env_file=None).platform_message_limit() == 4000  # type: ignore[call-arg]
    assert Settings(_env_file=None, messaging_platform="discord").platform_message_limit() == 2000  # type: ignore[call-arg]
    assert Settings(_env_file=None, max_message_length=1000).platform_message_limit() == 1000  # type: ignore[call-arg]


def test_validate_platform_checks_the_active_token() -> None:
    with pytest.raises(ConfigurationError, match="TELEGRAM_TOKEN"):
        Settings(_env_file=None, telegram_token="no-colon").validate_platform()  # type: ignore[call-arg]
    with pytest.raises(ConfigurationError, match="DISCORD_TOKEN"):
        Settings(_env_file=None, messaging_platform="discord").validate_platform()  # type: ignore[call-arg]

    Settings(_env_file=None, telegram_token="123:abc").validate_platform()  # type: ignore[call-arg]
    Settings(_env_file=None, messaging_platform="discord", discord_token="tok").validate_platform()  # type: ignore[call-arg]


def test_gemini_agent_arguments() -> None:
    settings = Settings(  # type: ignore[call-arg]
        _env_file=None,
        agent_model="gemini-2.5-pro",
        include_directories=["/a", "/b"],
        agent_args=["--debug"],
    )

    agent = build_agent(settings)

    assert isinstance(agent, GeminiAgent)
    assert agent.command == "gemini"
    assert agent.build_acp_args() == [
        "--experimental-acp",
        "--approval-mode",
        "yolo",
        "--model",
        "gemini-2.5-pro",
        "--include-directories",
        "/a,/b",
        "--debug",
    ]


def test_opencode_and_custom_agents() -> None:
    opencode = build_agent(Settings(_env_file=None, agent="opencode", agent_command="/opt/bin/opencode"))  # type: ignore[call-arg]
    assert isinstance(opencode, OpencodeAgent)
    assert opencode.build_acp_args() == ["acp"]
    assert opencode.log_token() == "opencode"

    custom = build_agent(Settings(_env_file=None, agent="custom", agent_command="my agent", agent_args=["--acp"]))  # type: ignore[call-arg]
    assert custom.build_acp_args() == ["--acp"]
    assert custom.log_token() == "my-agent"

    with pytest.raises(ConfigurationError):
        build_agent(Settings(_env_file=None, agent="custom"))  # type: ignore[call-arg]
