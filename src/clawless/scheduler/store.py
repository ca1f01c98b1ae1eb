"""Durable schedule records triggered by APScheduler."""

from __future__ import annotations

import json
import threading
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from clawless.errors import ScheduleError, ScheduleNotFoundError
from clawless.text import generate_short_id

ScheduleHandler = Callable[["Schedule"], Awaitable[None]]


class ScheduleType(StrEnum):
    RECURRING = "recurring"
    ONE_TIME = "one_time"
    ASYNC_CONVERSATION = "async_conversation"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Schedule(BaseModel):
    """One persisted agent invocation and where its result goes."""

    id: str
    message: str
    description: str = ""
    type: ScheduleType
    cron_expression: str | None = None
    run_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    last_run_at: datetime | None = None

    @field_validator("run_at", "created_at", "last_run_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _check_trigger(self) -> Schedule:
        if not self.message.strip():
            raise ValueError("message must not be empty")
        if self.type is ScheduleType.RECURRING:
            if not (self.cron_expression or "").strip():
                raise ValueError("recurring schedules need a cron expression")
        elif self.run_at is None:
            raise ValueError(f"{self.type} schedules need run_at")
        if self.type is ScheduleType.ASYNC_CONVERSATION and not self.chat_id:
            raise ValueError("async_conversation schedules need metadata.chat_id")
        return self

    @property
    def chat_id(self) -> str | None:
        value = self.metadata.get("chat_id")
        return str(value) if value not in (None, "") else None

    @property
    def label(self) -> str:
        return self.description or self.message


class ScheduleStore:
    """Schedule collection persisted as one JSON file.

    The file is reloaded wholesale at construction and rewritten on every
    mutation. `start()` registers every schedule with an AsyncIOScheduler;
    due schedules are passed to the handler installed with `set_handler`.
    """

    def __init__(
        self,
        file_path: str | Path,
        *,
        timezone: str = "UTC",
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.file_path = Path(file_path)
        self.timezone = timezone
        self._lock = threading.RLock()
        self._scheduler = scheduler
        self._started = False
        self._handler: ScheduleHandler | None = None
        self._schedules: dict[str, Schedule] = self._load()

    def _load(self) -> dict[str, Schedule]:
        """Load schedules from the JSON file, skipping invalid records."""
        if not self.file_path.exists():
            return {}
        try:
            with open(self.file_path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("scheduler.store.load_failed path={} error={}", self.file_path, e)
            return {}
        if not isinstance(raw, list):
            logger.error("scheduler.store.load_failed path={} error=expected a list", self.file_path)
            return {}
        schedules: dict[str, Schedule] = {}
        for record in raw:
            try:
                schedule = Schedule.model_validate(record)
            except ValidationError as e:
                logger.warning("scheduler.store.invalid_record record={} error={}", record, e.errors()[:1])
                continue
            schedules[schedule.id] = schedule
        logger.info("scheduler.store.loaded path={} count={}", self.file_path, len(schedules))
        return schedules

    def _save(self) -> None:
        """Save schedules to the JSON file."""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        records = [schedule.model_dump(mode="json") for schedule in self._schedules.values()]
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(records, f, ensure_ascii=False, indent=2)
        tmp_path.replace(self.file_path)

    def set_handler(self, handler: ScheduleHandler) -> None:
        self._handler = handler

    def create(
        self,
        message: str,
        *,
        type: ScheduleType | str,  # noqa: A002
        description: str = "",
        cron_expression: str | None = None,
        run_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        schedule_id: str | None = None,
    ) -> Schedule:
        schedule_type = ScheduleType(type)
        if schedule_type is ScheduleType.ASYNC_CONVERSATION and run_at is None:
            run_at = _utcnow()
        try:
            schedule = Schedule(
                id=schedule_id or generate_short_id(),
                message=message,
                description=description,
                type=schedule_type,
                cron_expression=cron_expression,
                run_at=run_at,
                metadata=dict(metadata or {}),
            )
        except ValidationError as e:
            raise ScheduleError(f"invalid schedule: {e.errors()[0]['msg']}") from e
        self._build_trigger(schedule)

        with self._lock:
            if schedule.id in self._schedules:
                raise ScheduleError(f"schedule {schedule.id} already exists")
            self._schedules[schedule.id] = schedule
            self._save()
        logger.info("scheduler.store.created id={} type={}", schedule.id, schedule.type)
        self._register(schedule)
        return schedule

    def update(self, schedule_id: str, **changes: Any) -> Schedule:
        with self._lock:
            existing = self._schedules.get(schedule_id)
            if existing is None:
                raise ScheduleNotFoundError(f"schedule {schedule_id} not found")
            merged = {**existing.model_dump(), **changes, "id": schedule_id}
            try:
                schedule = Schedule.model_validate(merged)
            except ValidationError as e:
                raise ScheduleError(f"invalid schedule: {e.errors()[0]['msg']}") from e
            self._build_trigger(schedule)
            self._schedules[schedule_id] = schedule
            self._save()
        logger.info("scheduler.store.updated id={} fields={}", schedule_id, ",".join(sorted(changes)))
        self._register(schedule)
        return schedule

    def delete(self, schedule_id: str) -> Schedule:
        with self._lock:
            schedule = self._schedules.pop(schedule_id, None)
            if schedule is None:
                raise ScheduleNotFoundError(f"schedule {schedule_id} not found")
            self._save()
        self._unregister(schedule_id)
        logger.info("scheduler.store.deleted id={}", schedule_id)
        return schedule

    def get(self, schedule_id: str) -> Schedule | None:
        with self._lock:
            return self._schedules.get(schedule_id)

    def list(self) -> list[Schedule]:
        with self._lock:
            return sorted(self._schedules.values(), key=lambda schedule: schedule.created_at)

    def _build_trigger(self, schedule: Schedule) -> BaseTrigger:
        try:
            if schedule.type is ScheduleType.RECURRING:
                return CronTrigger.from_crontab(schedule.cron_expression or "", timezone=self.timezone)
            run_at = max(schedule.run_at or _utcnow(), _utcnow())
            return DateTrigger(run_date=run_at, timezone=self.timezone)
        except ValueError as e:
            raise ScheduleError(f"invalid trigger for schedule {schedule.id}: {e}") from e

    def start(self) -> None:
        if self._started:
            return
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        self._scheduler.start()
        self._started = True
        for schedule in self.list():
            try:
                self._register(schedule)
            except ScheduleError:
                logger.exception("scheduler.store.register_failed id={}", schedule.id)
        logger.info("scheduler.started count={} timezone={}", len(self._schedules), self.timezone)

    def shutdown(self) -> None:
        if self._started and self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._started = False

    def _register(self, schedule: Schedule) -> None:
        if not self._started or self._scheduler is None:
            return
        self._scheduler.add_job(
            self.fire,
            trigger=self._build_trigger(schedule),
            args=[schedule.id],
            id=schedule.id,
            name=schedule.label[:80],
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=None,
        )

    def _unregister(self, schedule_id: str) -> None:
        if not self._started or self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(schedule_id)
        except JobLookupError:
            pass

    async def fire(self, schedule_id: str) -> None:
        """Run one due schedule. Handler failures are logged, never raised."""
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                logger.warning("scheduler.fire.missing id={}", schedule_id)
                return
            if schedule.type is ScheduleType.RECURRING:
                schedule = schedule.model_copy(update={"last_run_at": _utcnow()})
                self._schedules[schedule_id] = schedule
            else:
                del self._schedules[schedule_id]
            self._save()
        if schedule.type is not ScheduleType.RECURRING:
            self._unregister(schedule_id)

        logger.info("scheduler.fire id={} type={}", schedule_id, schedule.type)
        if schedule.type is ScheduleType.ASYNC_CONVERSATION and not schedule.chat_id:
            logger.error("scheduler.fire.dropped id={} reason=missing chat_id", schedule_id)
            return
        if self._handler is None:
            logger.warning("scheduler.fire.no_handler id={}", schedule_id)
            return
        try:
            await self._handler(schedule)
        except Exception:
            logger.exception("scheduler.fire.failed id={}", schedule_id)
