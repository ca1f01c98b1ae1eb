"""Durable schedules and their execution."""

from clawless.scheduler.jobs import JobRunner, build_job_prompt
from clawless.scheduler.store import Schedule, ScheduleStore, ScheduleType

__all__ = ["JobRunner", "Schedule", "ScheduleStore", "ScheduleType", "build_job_prompt"]
