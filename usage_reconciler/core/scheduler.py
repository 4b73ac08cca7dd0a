"""
Recurring audit scheduling.

Arms one timed job per enabled schedule type and re-arms it after every run.
"""

import calendar
import logging
import re
import sqlite3
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler

from usage_reconciler.storage.audit_store import AuditStore

from .audit import STATUS_FAILED, AuditResult, AuditService
from .clock import Clock, SystemClock, to_epoch_ms

logger = logging.getLogger(__name__)

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class ScheduleType(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class AuditConfig:
    """Which audits run automatically, and when.

    ``weekly_day`` counts from Sunday (0) to Saturday (6).
    """
    daily_enabled: bool = False
    daily_time: str = "00:00"
    weekly_enabled: bool = False
    weekly_day: int = 0
    monthly_enabled: bool = False

    def __post_init__(self):
        if not _TIME_PATTERN.match(str(self.daily_time)):
            raise ValueError(f"daily_time must be HH:MM, got {self.daily_time!r}")
        if not isinstance(self.weekly_day, int) or not 0 <= self.weekly_day <= 6:
            raise ValueError(f"weekly_day must be between 0 (Sunday) and 6, got {self.weekly_day!r}")

    def is_enabled(self, schedule_type: ScheduleType) -> bool:
        return {
            ScheduleType.DAILY: self.daily_enabled,
            ScheduleType.WEEKLY: self.weekly_enabled,
            ScheduleType.MONTHLY: self.monthly_enabled,
        }[schedule_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dailyEnabled": self.daily_enabled,
            "dailyTime": self.daily_time,
            "weeklyEnabled": self.weekly_enabled,
            "weeklyDay": self.weekly_day,
            "monthlyEnabled": self.monthly_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditConfig":
        """Build a config from its stored form; missing keys take defaults.

        Raises:
            ValueError: If the data has unknown keys or invalid values
        """
        keys = {
            "dailyEnabled": "daily_enabled",
            "dailyTime": "daily_time",
            "weeklyEnabled": "weekly_enabled",
            "weeklyDay": "weekly_day",
            "monthlyEnabled": "monthly_enabled",
        }
        unknown = set(data) - set(keys)
        if unknown:
            raise ValueError(f"Unknown audit config keys: {sorted(unknown)}")
        values = asdict(cls())
        for key, attr in keys.items():
            if key in data:
                values[attr] = data[key]
        for attr in ("daily_enabled", "weekly_enabled", "monthly_enabled"):
            values[attr] = bool(values[attr])
        return cls(**values)


def _sunday_weekday(moment: datetime) -> int:
    return (moment.weekday() + 1) % 7


def next_daily_run(now: datetime, run_time: str) -> datetime:
    """Next occurrence of HH:MM; tomorrow if today's has passed."""
    hours, minutes = (int(part) for part in run_time.split(":"))
    candidate = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def next_weekly_run(now: datetime, day: int) -> datetime:
    """Midnight of the next given weekday (Sunday = 0), never today."""
    days_until = (day - _sunday_weekday(now) + 7) % 7 or 7
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=days_until)


def next_monthly_run(now: datetime) -> datetime:
    """Midnight on the first day of the next month."""
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def _month_before(day: date) -> date:
    year, month = (day.year, day.month - 1) if day.month > 1 else (day.year - 1, 12)
    return day.replace(year=year, month=month, day=min(day.day, calendar.monthrange(year, month)[1]))


def scheduled_period(schedule_type: ScheduleType, today: date) -> Tuple[str, str]:
    """Date range audited by a scheduled run ending on ``today``.

    Daily covers today, weekly the last seven days, monthly the last month.
    """
    if schedule_type == ScheduleType.DAILY:
        start = today
    elif schedule_type == ScheduleType.WEEKLY:
        start = today - timedelta(days=7)
    else:
        start = _month_before(today)
    return start.isoformat(), today.isoformat()


def job_id(schedule_type: ScheduleType) -> str:
    return f"audit-{schedule_type.value}"


class AuditScheduler:
    """Owns the timed jobs for recurring audits.

    At most one job exists per schedule type. Configuration lives in the
    metadata table; run bookkeeping in the schedule table.
    """

    def __init__(
        self,
        audit_service: AuditService,
        audit_store: AuditStore,
        clock: Optional[Clock] = None,
        backend: Optional[BackgroundScheduler] = None,
    ):
        self.audit_service = audit_service
        self.audit_store = audit_store
        self.clock = clock or SystemClock()
        self.backend = backend if backend is not None else BackgroundScheduler()

    def get_config(self) -> AuditConfig:
        stored = self.audit_store.get_audit_config()
        if stored is None:
            return AuditConfig()
        return AuditConfig.from_dict(stored)

    def next_run(self, schedule_type: ScheduleType, config: AuditConfig) -> datetime:
        now = self.clock.now()
        if schedule_type == ScheduleType.DAILY:
            return next_daily_run(now, config.daily_time)
        if schedule_type == ScheduleType.WEEKLY:
            return next_weekly_run(now, config.weekly_day)
        return next_monthly_run(now)

    def schedule_audits(self) -> Dict[str, Optional[datetime]]:
        """Clear every job, then arm one per enabled schedule type.

        Returns:
            Next run time per schedule type, None when disabled
        """
        self.clear_scheduled_timers()
        config = self.get_config()
        armed = {}
        for schedule_type in ScheduleType:
            armed[schedule_type.value] = self._arm(schedule_type, config)
        logger.info(
            "Audits scheduled (daily=%s, weekly=%s, monthly=%s)",
            config.daily_enabled, config.weekly_enabled, config.monthly_enabled,
        )
        return armed

    def _arm(self, schedule_type: ScheduleType, config: AuditConfig) -> Optional[datetime]:
        run_time = config.daily_time if schedule_type == ScheduleType.DAILY else None
        run_day = config.weekly_day if schedule_type == ScheduleType.WEEKLY else None
        if not config.is_enabled(schedule_type):
            self.audit_store.set_schedule(schedule_type.value, False, run_time, run_day, None)
            return None

        next_run = self.next_run(schedule_type, config)
        self.backend.add_job(
            self.run_scheduled,
            "date",
            run_date=next_run,
            args=[schedule_type],
            id=job_id(schedule_type),
            replace_existing=True,
        )
        self.audit_store.set_schedule(schedule_type.value, True, run_time, run_day, to_epoch_ms(next_run))
        logger.info("Scheduled %s audit for %s", schedule_type.value, next_run.isoformat())
        return next_run

    def clear_scheduled_timers(self) -> None:
        for schedule_type in ScheduleType:
            if self.backend.get_job(job_id(schedule_type)) is not None:
                self.backend.remove_job(job_id(schedule_type))
        logger.debug("Cleared all scheduled audit jobs")

    def save_config(self, config: AuditConfig) -> Dict[str, Optional[datetime]]:
        """Persist the configuration and re-arm the jobs from it."""
        self.audit_store.save_audit_config(config.to_dict())
        logger.info("Saved audit config %s", config.to_dict())
        return self.schedule_audits()

    def run_scheduled(self, schedule_type: ScheduleType) -> Optional[AuditResult]:
        """Run one scheduled audit, record the outcome and re-arm its job.

        A failing audit is logged and recorded as ``failed``; it never
        escapes into the scheduler thread.
        """
        schedule_type = ScheduleType(schedule_type)
        now = self.clock.now()
        today = now.astimezone(timezone.utc).date() if now.tzinfo else now.date()
        start_date, end_date = scheduled_period(schedule_type, today)
        logger.info("Running %s audit for %s..%s", schedule_type.value, start_date, end_date)

        result = None
        try:
            result = self.audit_service.run_audit(start_date, end_date, schedule_type.value)
            status = result.status
        except Exception as e:
            logger.exception("%s audit failed: %s", schedule_type.value, e)
            status = STATUS_FAILED

        try:
            self.audit_store.record_run(schedule_type.value, to_epoch_ms(self.clock.now()), status)
        except sqlite3.Error as e:
            logger.error("Could not record %s audit run: %s", schedule_type.value, e)
        finally:
            self._arm(schedule_type, self.get_config())
        return result

    def get_schedule_status(self) -> Dict[str, Dict[str, Any]]:
        """Enable flag and last/next run bookkeeping per schedule type."""
        states = self.audit_store.get_schedule_states()
        return {
            name: {
                "enabled": state.enabled,
                "lastRunAt": state.last_run_at,
                "lastRunStatus": state.last_run_status,
                "nextRunAt": state.next_run_at,
            }
            for name, state in states.items()
        }

    def start(self) -> Dict[str, Optional[datetime]]:
        armed = self.schedule_audits()
        if not self.backend.running:
            self.backend.start()
        logger.info("Audit scheduler started")
        return armed

    def shutdown(self) -> None:
        self.clear_scheduled_timers()
        if self.backend.running:
            self.backend.shutdown(wait=False)
        logger.info("Audit scheduler stopped")
