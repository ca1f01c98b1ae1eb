"""Execution of fired schedules."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from loguru import logger

from clawless.errors import describe_error
from clawless.history import ConversationHistory
from clawless.logging_utils import log_scope
from clawless.scheduler.store import Schedule, ScheduleType
from clawless.text import normalize_outgoing_text

JobPromptRunner = Callable[[str, str], Awaitable[str]]
ChatSender = Callable[[str, str], Awaitable[None]]


def build_job_prompt(message: str) -> str:
    return (
        "[SYSTEM: BACKGROUND TASK]\n"
        "Perform the following task immediately.\n"
        "Do not ask any follow-up questions.\n"
        "Provide the final result directly.\n\n"
        f'User Request: "{message}"'
    )


class JobRunner:
    """Run a fired schedule in its own agent session and deliver the outcome."""

    def __init__(
        self,
        *,
        run_prompt: JobPromptRunner,
        send_text_to_chat: ChatSender,
        resolve_target_chat_id: Callable[[], str | None],
        history: ConversationHistory | None = None,
    ) -> None:
        self._run_prompt = run_prompt
        self._send_text_to_chat = send_text_to_chat
        self._resolve_target_chat_id = resolve_target_chat_id
        self._history = history

    def _destination(self, schedule: Schedule) -> str | None:
        if schedule.type is ScheduleType.ASYNC_CONVERSATION:
            return schedule.chat_id
        return self._resolve_target_chat_id()

    async def __call__(self, schedule: Schedule) -> None:
        with log_scope(f"job:{schedule.id}"):
            await self.run(schedule)

    async def run(self, schedule: Schedule) -> None:
        logger.info("scheduler.job.start id={} type={}", schedule.id, schedule.type)
        is_async = schedule.type is ScheduleType.ASYNC_CONVERSATION
        if is_async and not schedule.chat_id:
            logger.error("scheduler.job.dropped id={} reason=missing chat_id", schedule.id)
            return

        try:
            prompt = build_job_prompt(schedule.message)
            if self._history is not None:
                prompt = self._history.build_prompt(prompt, consume_pending=False)
            response = normalize_outgoing_text(await self._run_prompt(prompt, schedule.id))

            if is_async:
                chat_id = schedule.chat_id or ""
                formatted = (
                    f'✅ Background task completed.\n\nOriginal Request: "{schedule.message}"\n\nResult:\n{response}'
                )
                await self._send_text_to_chat(chat_id, normalize_outgoing_text(formatted))
                logger.info("scheduler.job.delivered id={} chat_id={}", schedule.id, chat_id)
                if self._history is not None:
                    self._history.record(schedule.message, response, chat_id)
                    self._history.append_context(f'Background task result for "{schedule.message}":\n\n{response}')
                return

            target = self._resolve_target_chat_id()
            if target is None:
                logger.info("scheduler.job.undelivered id={} reason=no bound chat", schedule.id)
                return
            await self._send_text_to_chat(target, response)
            logger.info("scheduler.job.delivered id={} chat_id={}", schedule.id, target)
        except Exception as exc:
            logger.exception("scheduler.job.failed id={}", schedule.id)
            await self._notify_failure(schedule, exc)

    async def _notify_failure(self, schedule: Schedule, error: Exception) -> None:
        destination = self._destination(schedule)
        if destination is None:
            return
        prefix = "Background task failed" if schedule.type is ScheduleType.ASYNC_CONVERSATION else "Scheduled task failed"
        text = f"❌ {prefix}: {schedule.label}\n\nError: {describe_error(error)}"
        try:
            await self._send_text_to_chat(destination, normalize_outgoing_text(text))
        except Exception:
            logger.exception("scheduler.job.notify_failed id={} chat_id={}", schedule.id, destination)
