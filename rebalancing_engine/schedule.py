"""
Rebalancing Engine - Schedule Expressions.

============================================================
PURPOSE
============================================================
Computes when a periodic strategy is next due.

Every cadence is a ScheduleExpression with one contract:

    next_occurrence(after) -> first due time strictly after ``after``

CADENCES:
- daily / weekly: fixed interval
- monthly / quarterly: calendar months, day clamped to month end
- custom: 5-field crontab ("minute hour day month day_of_week"),
  evaluated in UTC by APScheduler's CronTrigger. Day-of-week
  accepts names (mon-fri); numeric values follow APScheduler
  (0 = Monday).

============================================================
"""

import calendar
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from core.clock import ensure_utc
from core.exceptions import ValidationError

from .types import ScheduleCadence, TriggerSettings


logger = logging.getLogger(__name__)


# ============================================================
# SCHEDULE EXPRESSION
# ============================================================

class ScheduleExpression(ABC):
    """A recurring due time."""

    @abstractmethod
    def next_occurrence(self, after: datetime) -> datetime:
        """
        Get the first occurrence strictly after ``after``.

        Args:
            after: Reference time (naive values are taken as UTC)

        Returns:
            UTC datetime
        """
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        pass


class IntervalSchedule(ScheduleExpression):
    """Fixed-length interval."""

    def __init__(self, interval: timedelta, label: str):
        if interval <= timedelta(0):
            raise ValidationError("Schedule interval must be positive", field="schedule")
        self._interval = interval
        self._label = label

    def next_occurrence(self, after: datetime) -> datetime:
        return ensure_utc(after) + self._interval

    @property
    def description(self) -> str:
        return self._label


class MonthlySchedule(ScheduleExpression):
    """
    Calendar-month interval.

    Jan 31 + 1 month = Feb 28 (or 29); the time of day is kept.
    """

    def __init__(self, months: int, label: str):
        if months < 1:
            raise ValidationError("Schedule months must be >= 1", field="schedule")
        self._months = months
        self._label = label

    def next_occurrence(self, after: datetime) -> datetime:
        after = ensure_utc(after)
        month_index = after.month - 1 + self._months
        year = after.year + month_index // 12
        month = month_index % 12 + 1
        day = min(after.day, calendar.monthrange(year, month)[1])
        return after.replace(year=year, month=month, day=day)

    @property
    def description(self) -> str:
        return self._label


class CronSchedule(ScheduleExpression):
    """Crontab expression evaluated in UTC."""

    def __init__(self, expression: str):
        expression = (expression or "").strip()
        if not expression:
            raise ValidationError(
                "Custom schedule requires an expression",
                field="triggers.custom_schedule_expr",
            )

        try:
            self._trigger = CronTrigger.from_crontab(expression, timezone="UTC")
        except ValueError as e:
            raise ValidationError(
                f"Invalid custom schedule expression '{expression}': {e}",
                field="triggers.custom_schedule_expr",
                cause=e,
            )

        self._expression = expression

    def next_occurrence(self, after: datetime) -> datetime:
        # The trigger returns times >= its reference point
        reference = ensure_utc(after) + timedelta(microseconds=1)
        fire_time = self._trigger.get_next_fire_time(None, reference)
        if fire_time is None:
            raise ValidationError(
                f"Schedule '{self._expression}' has no occurrence after {after.isoformat()}",
                field="triggers.custom_schedule_expr",
            )
        return ensure_utc(fire_time)

    @property
    def description(self) -> str:
        return f"cron({self._expression})"


# ============================================================
# FACTORY
# ============================================================

def parse_schedule(
    cadence: ScheduleCadence,
    custom_expression: Optional[str] = None,
) -> ScheduleExpression:
    """
    Build the schedule expression for a cadence.

    Raises:
        ValidationError: custom cadence without a valid expression
    """
    if cadence == ScheduleCadence.DAILY:
        return IntervalSchedule(timedelta(days=1), "daily")
    if cadence == ScheduleCadence.WEEKLY:
        return IntervalSchedule(timedelta(weeks=1), "weekly")
    if cadence == ScheduleCadence.MONTHLY:
        return MonthlySchedule(1, "monthly")
    if cadence == ScheduleCadence.QUARTERLY:
        return MonthlySchedule(3, "quarterly")
    return CronSchedule(custom_expression or "")


def schedule_for(triggers: TriggerSettings) -> ScheduleExpression:
    """Schedule expression of a strategy's trigger settings."""
    return parse_schedule(triggers.schedule, triggers.custom_schedule_expr)
