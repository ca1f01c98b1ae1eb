"""Runtime bootstrap helpers."""

from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger

from clawless.app.runtime import AppRuntime
from clawless.channels.base import BaseChannel
from clawless.channels.manager import ChannelManager
from clawless.config import load_settings


def build_runtime(
    workspace: Path,
    *,
    agent: str | None = None,
    model: str | None = None,
    platform: str | None = None,
) -> AppRuntime:
    """Build app runtime for one workspace."""
    settings = load_settings(workspace)
    updates: dict[str, object] = {}
    if agent:
        updates["agent"] = agent
    if model:
        updates["agent_model"] = model
    if platform:
        updates["messaging_platform"] = platform
    if updates:
        settings = settings.model_copy(update=updates)
    return AppRuntime(workspace, settings)


def build_channel(runtime: AppRuntime) -> BaseChannel:
    """Create the adapter for the configured messaging platform."""
    settings = runtime.settings
    settings.validate_platform()
    if settings.messaging_platform == "discord":
        from clawless.channels.discord import DiscordChannel, DiscordConfig

        return DiscordChannel(
            runtime.bus,
            DiscordConfig(
                token=settings.discord_token or "",
                allow_from=set(settings.discord_allow_from),
                allow_channels=set(settings.discord_allow_channels),
                command_prefix=settings.discord_command_prefix,
                proxy=settings.discord_proxy,
                message_limit=settings.platform_message_limit(),
                typing_interval=max(settings.typing_interval_seconds, 8.0),
            ),
        )

    from clawless.channels.telegram import TelegramChannel, TelegramConfig

    return TelegramChannel(
        runtime.bus,
        TelegramConfig(
            token=settings.telegram_token or "",
            allow_from=set(settings.telegram_allow_from),
            message_limit=settings.platform_message_limit(),
            typing_interval=settings.typing_interval_seconds,
        ),
    )


async def serve(runtime: AppRuntime, channel: BaseChannel | None = None) -> None:
    """Run the gateway until every channel stops or the task is cancelled."""
    manager = ChannelManager(runtime.bus, runtime.handle_inbound)
    manager.register(channel or build_channel(runtime))
    await runtime.start()
    await manager.start()
    try:
        await manager.wait()
    except asyncio.CancelledError:
        logger.info("gateway.cancelled")
        raise
    finally:
        await manager.stop()
        await runtime.stop()
