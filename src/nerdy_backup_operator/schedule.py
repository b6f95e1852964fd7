from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from croniter import croniter

from .models import BackupPolicyStatus

DEFAULT_INTERVAL = timedelta(hours=1)
CRON_FIELD_COUNT = 5


class ScheduleError(ValueError):
    """Raised when a cron schedule cannot be parsed; carries the hourly fallback."""

    def __init__(self, *, schedule: str, reason: str, fallback: datetime) -> None:
        super().__init__(f"invalid schedule '{schedule}': {reason}")
        self.schedule = schedule
        self.fallback = fallback


@dataclass(frozen=True)
class ScheduleDecision:
    run: bool
    next_run: datetime
    error: ScheduleError | None = None


def next_run(schedule: str, from_time: datetime) -> datetime:
    expression = schedule.strip()
    if not expression:
        return from_time + DEFAULT_INTERVAL

    fallback = from_time + DEFAULT_INTERVAL
    if len(expression.split()) != CRON_FIELD_COUNT:
        raise ScheduleError(
            schedule=expression,
            reason=f"expected {CRON_FIELD_COUNT} fields (minute hour day-of-month month day-of-week)",
            fallback=fallback,
        )
    try:
        return croniter(expression, from_time).get_next(datetime)
    except (ValueError, KeyError) as error:
        raise ScheduleError(
            schedule=expression, reason=str(error) or error.__class__.__name__, fallback=fallback
        ) from error


def next_run_or_fallback(schedule: str, from_time: datetime) -> tuple[datetime, ScheduleError | None]:
    try:
        return next_run(schedule, from_time), None
    except ScheduleError as error:
        return error.fallback, error


def should_run_now(status: BackupPolicyStatus, schedule: str, now: datetime) -> ScheduleDecision:
    if status.next_run_time is not None and now < status.next_run_time:
        _, error = next_run_or_fallback(schedule, now)
        return ScheduleDecision(run=False, next_run=status.next_run_time, error=error)

    if status.last_backup_time is None:
        _, error = next_run_or_fallback(schedule, now)
        return ScheduleDecision(run=True, next_run=now, error=error)

    upcoming, error = next_run_or_fallback(schedule, status.last_backup_time)
    return ScheduleDecision(run=not now < upcoming, next_run=upcoming, error=error)
