"""Application runtime: wires the queue, agent sessions, schedules and history."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

from loguru import logger

from clawless.acp.mcp import resolve_mcp_servers
from clawless.acp.session import ChunkCallback, ProcessSession
from clawless.agents import CliAgent, build_agent
from clawless.channels.base import MessagingContext
from clawless.channels.bus import MessageBus
from clawless.channels.events import InboundMessage
from clawless.config import Settings
from clawless.core.live import StreamOptions, process_single_message
from clawless.core.queue import RequestSerializer
from clawless.errors import AgentCancelledError, DeliveryError, describe_error
from clawless.history import ConversationHistory
from clawless.scheduler.jobs import JobRunner
from clawless.scheduler.store import Schedule, ScheduleStore, ScheduleType
from clawless.text import is_abort_command, truncate_preview

SessionFactory = Callable[..., ProcessSession]


class AppRuntime:
    """Global runtime shared by every channel."""

    def __init__(
        self,
        workspace: Path,
        settings: Settings,
        *,
        bus: MessageBus | None = None,
        agent: CliAgent | None = None,
        session_factory: SessionFactory = ProcessSession,
    ) -> None:
        self.workspace = workspace.resolve()
        self.settings = settings
        self.home = settings.resolve_home()
        self.agent = agent or build_agent(settings)
        self.bus = bus or MessageBus()
        self.stream_options = StreamOptions.from_settings(settings)
        self.history = ConversationHistory(self.home / "history.jsonl", context_limit=settings.history_context_limit)
        self.schedules = ScheduleStore(self.home / "schedules.json", timezone=settings.timezone)
        self.jobs = JobRunner(
            run_prompt=self.run_job_prompt,
            send_text_to_chat=self.send_text_to_chat,
            resolve_target_chat_id=self.resolve_target_chat_id,
            history=self.history,
        )
        self.schedules.set_handler(self.jobs)
        self.queue: RequestSerializer[MessagingContext] = RequestSerializer(self._execute_turn)
        self._session_factory = session_factory
        self._active_session: ProcessSession | None = None
        self._last_chat_id: str | None = None

    async def start(self) -> None:
        self.schedules.start()
        logger.info(
            "runtime.started agent={} platform={} home={}",
            self.agent.display_name,
            self.settings.messaging_platform,
            self.home,
        )

    async def stop(self) -> None:
        self.abort_active("shutdown")
        await self.queue.close()
        self.schedules.shutdown()
        logger.info("runtime.stopped")

    def create_session(self, label: str) -> ProcessSession:
        settings = self.settings
        return self._session_factory(
            self.agent.command,
            self.agent.build_acp_args(),
            cwd=settings.resolve_agent_cwd(self.workspace),
            timeout_seconds=settings.acp_timeout_seconds,
            idle_timeout_seconds=settings.acp_idle_timeout_seconds,
            kill_grace_seconds=settings.kill_grace_seconds,
            stderr_tail_max_chars=settings.stderr_tail_max_chars,
            permission_strategy=settings.permission_strategy,
            mcp_servers=resolve_mcp_servers(settings.mcp_servers_json, settings.mcp_settings_path),
            label=label,
        )

    async def run_prompt(
        self,
        prompt: str,
        on_chunk: ChunkCallback | None = None,
        *,
        label: str | None = None,
        track: bool = False,
    ) -> str:
        """Run one prompt in a fresh agent session. Tracked sessions can be aborted from chat."""
        session = self.create_session(label or self.agent.log_token())
        if track:
            self._active_session = session
        try:
            return await session.run(prompt, on_chunk)
        finally:
            if self._active_session is session:
                self._active_session = None

    async def run_job_prompt(self, prompt: str, schedule_id: str) -> str:
        return await self.run_prompt(prompt, label=f"{self.agent.log_token()}-job-{schedule_id}")

    def abort_active(self, reason: str) -> bool:
        session = self._active_session
        if session is None:
            return False
        return session.cancel(reason)

    async def handle_inbound(self, message: InboundMessage) -> asyncio.Future[None] | None:
        context = message.context
        if is_abort_command(message.content):
            aborted = self.abort_active("aborted from chat")
            logger.info("runtime.abort chat_id={} aborted={}", message.chat_id, aborted)
            await context.send_text("⏹️ Aborted the running request." if aborted else "Nothing is running.")
            return None

        self._last_chat_id = message.chat_id
        return self.queue.enqueue(context)

    async def _execute_turn(self, context: MessagingContext, sequence: int) -> None:
        async def _run(prompt: str, on_chunk: ChunkCallback) -> str:
            return await self.run_prompt(
                self.history.build_prompt(prompt, chat_id=context.chat_id),
                on_chunk,
                label=f"{self.agent.log_token()}-req-{sequence}",
                track=True,
            )

        try:
            await process_single_message(
                context,
                sequence,
                run_prompt=_run,
                schedule_async_job=self.schedule_async_job,
                options=self.stream_options,
                on_complete=self.history.record,
            )
        except AgentCancelledError as exc:
            logger.info("runtime.turn.cancelled sequence={} reason={}", sequence, exc)
        except Exception as exc:
            try:
                await context.send_text(f"❌ Error: {describe_error(exc)}")
            except Exception:
                logger.exception("runtime.turn.error_reply_failed sequence={}", sequence)
            raise

    async def schedule_async_job(self, message: str, chat_id: str, ref: str) -> Schedule:
        return self.schedules.create(
            message,
            type=ScheduleType.ASYNC_CONVERSATION,
            description=f"Async: {truncate_preview(message, 60)}",
            metadata={"chat_id": chat_id, "channel": self.settings.messaging_platform},
            schedule_id=ref,
        )

    def resolve_target_chat_id(self) -> str | None:
        return self.settings.default_chat_id or self._last_chat_id

    async def send_text_to_chat(self, chat_id: str, text: str, **metadata: Any) -> None:
        if not self.bus.has_outbound_receivers:
            raise DeliveryError("no channel is running to deliver the message")
        await self.bus.send_text(self.settings.messaging_platform, str(chat_id), text, **metadata)
