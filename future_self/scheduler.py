"""Cron registration for the letter jobs using APScheduler."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from .config import Settings, get_settings
from .jobs import RETRY_JOB, WEEKLY_JOB, LetterJobs

# crontab numbers Sunday as 0 (or 7); APScheduler numbers Monday as 0
WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _weekday_number(value: str) -> int:
    value = value.lower()
    if value in WEEKDAYS:
        return WEEKDAYS.index(value)
    number = int(value)
    if not 0 <= number <= 7:
        raise ValueError(f"Weekday out of range: {value}")
    return number % 7


def crontab_weekdays(field: str) -> str:
    """Rewrite a crontab day-of-week field as an explicit list of day names.

    Ranges and steps are expanded in crontab numbering, so ``0-3`` becomes
    ``sun,mon,tue,wed`` and ``*/2`` becomes ``sun,tue,thu,sat``.
    """
    if field == "*":
        return field

    days: set[int] = set()
    for part in field.split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"Invalid step in day-of-week field: {field!r}")

        if base == "*":
            first, last = 0, 6
        elif "-" in base:
            start, end = base.split("-", 1)
            first = _weekday_number(start)
            last = 7 if end == "7" else _weekday_number(end)
        else:
            first = _weekday_number(base)
            last = 6 if step_text else first

        if first > last:
            raise ValueError(f"Invalid day-of-week range: {part!r}")
        days.update(day % 7 for day in range(first, last + 1, step))

    return ",".join(WEEKDAYS[day] for day in sorted(days))


def crontab_trigger(expr: str, timezone: str) -> CronTrigger:
    """Build a trigger from a standard five-field crontab expression."""
    fields = expr.split()
    if len(fields) != 5:
        raise ValueError(f"Wrong number of fields in crontab expression: {expr!r}")

    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=crontab_weekdays(day_of_week),
        timezone=timezone,
    )


def build_scheduler(config: Settings | None = None) -> AsyncIOScheduler:
    """Create an unstarted scheduler in the configured timezone."""
    config = config or get_settings()
    return AsyncIOScheduler(timezone=config.scheduler_timezone)


def register_jobs(
    scheduler: AsyncIOScheduler, jobs: LetterJobs, config: Settings | None = None
) -> None:
    """Add the weekly and retry jobs.

    Runs never overlap within an instance and missed runs collapse into one;
    the distributed lock covers overlap across instances.
    """
    config = config or get_settings()
    scheduler.add_job(
        jobs.generate_weekly_letters,
        crontab_trigger(config.weekly_letter_cron, config.scheduler_timezone),
        id=WEEKLY_JOB,
        name=WEEKLY_JOB,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        jobs.retry_failed_letters,
        crontab_trigger(config.retry_cron, config.scheduler_timezone),
        id=RETRY_JOB,
        name=RETRY_JOB,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(
        f"Scheduled {WEEKLY_JOB} ({config.weekly_letter_cron}) and "
        f"{RETRY_JOB} ({config.retry_cron}) in {config.scheduler_timezone}"
    )
