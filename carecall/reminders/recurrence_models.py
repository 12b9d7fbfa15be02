"""
Recurring reminder models and patterns
"""
import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from carecall.core.errors import InvalidInputError
from carecall.utils.timezone import (
    local_to_utc,
    local_weekday,
    parse_time_of_day,
    to_utc_aware,
    validate_timezone,
)

logger = logging.getLogger(__name__)

# Upper bound on steps when fast-forwarding a series past a point in time
MAX_ADVANCE_STEPS = 5000


class RecurrenceFrequency(str, Enum):
    """Types of recurrence patterns"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


@dataclass
class RecurrenceDescriptor:
    """Everything needed to rebuild the next occurrence of a recurring reminder"""
    frequency: RecurrenceFrequency
    timezone: str
    time_of_day: Optional[str] = None  # local "HH:mm"; defaults to the current occurrence's local time
    interval: int = 1  # Every N days/weeks/months
    days_of_week: List[int] = field(default_factory=list)
    day_of_month: Optional[int] = None
    ends_at: Optional[datetime] = None

    def __post_init__(self):
        self.frequency = RecurrenceFrequency(self.frequency)
        if self.interval is None or self.interval < 1:
            raise InvalidInputError("interval must be >= 1", {"interval": self.interval})
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise InvalidInputError("day_of_month must be 1-31", {"day_of_month": self.day_of_month})
        self.days_of_week = sorted(set(self.days_of_week or []))
        if any(d < 0 or d > 6 for d in self.days_of_week):
            raise InvalidInputError("days_of_week values must be 0-6 (0 = Sunday)", {"days_of_week": self.days_of_week})
        self.ends_at = to_utc_aware(self.ends_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "timezone": self.timezone,
            "time_of_day": self.time_of_day,
            "interval": self.interval,
            "days_of_week": self.days_of_week,
            "day_of_month": self.day_of_month,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
        }

    @classmethod
    def from_reminder(cls, reminder) -> "RecurrenceDescriptor":
        return cls(
            frequency=reminder.frequency,
            timezone=reminder.timezone,
            time_of_day=reminder.time_of_day,
            interval=reminder.interval or 1,
            days_of_week=list(reminder.days_of_week or []),
            day_of_month=reminder.day_of_month,
            ends_at=reminder.ends_at,
        )


def _add_months(d: date, months: int, day: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


class RecurrenceCalculator:
    """Calculates next occurrence for recurrence patterns"""

    @staticmethod
    def next_reminder_occurrence(
        descriptor: RecurrenceDescriptor,
        current_due_at: datetime,
    ) -> Optional[datetime]:
        """Next UTC occurrence after `current_due_at`, or None when the series has ended"""
        zone = validate_timezone(descriptor.timezone)
        current_local = to_utc_aware(current_due_at).astimezone(zone)
        at = (
            parse_time_of_day(descriptor.time_of_day)
            if descriptor.time_of_day
            else current_local.time().replace(second=0, microsecond=0)
        )
        current_date = current_local.date()

        if descriptor.frequency == RecurrenceFrequency.WEEKLY:
            next_date = RecurrenceCalculator._weekly_next_date(descriptor, current_date)
        elif descriptor.frequency == RecurrenceFrequency.MONTHLY:
            day = descriptor.day_of_month or current_date.day
            next_date = _add_months(current_date, descriptor.interval, day)
        else:
            # daily and custom both step by `interval` days
            next_date = current_date + timedelta(days=descriptor.interval)

        next_due = local_to_utc(datetime.combine(next_date, at), descriptor.timezone)
        if descriptor.ends_at and next_due > descriptor.ends_at:
            return None
        return next_due

    @staticmethod
    def _weekly_next_date(descriptor: RecurrenceDescriptor, current_date: date) -> date:
        if not descriptor.days_of_week:
            return current_date + timedelta(weeks=descriptor.interval)

        current_weekday = local_weekday(current_date)
        week_start = current_date - timedelta(days=current_weekday)
        # Later selected day in the same week
        for day in descriptor.days_of_week:
            if day > current_weekday:
                return week_start + timedelta(days=day)
        # Week exhausted: first selected day `interval` weeks on
        next_week_start = week_start + timedelta(weeks=descriptor.interval)
        return next_week_start + timedelta(days=descriptor.days_of_week[0])

    @staticmethod
    def first_occurrence_after(
        descriptor: RecurrenceDescriptor,
        current_due_at: datetime,
        after: datetime,
    ) -> Optional[datetime]:
        """Step the series forward until it passes `after`; None if it ends first"""
        after = to_utc_aware(after)
        due = to_utc_aware(current_due_at)
        for _ in range(MAX_ADVANCE_STEPS):
            due = RecurrenceCalculator.next_reminder_occurrence(descriptor, due)
            if due is None or due > after:
                return due
        logger.warning(
            f"Recurrence did not pass {after.isoformat()} within {MAX_ADVANCE_STEPS} steps; "
            f"descriptor={descriptor.to_dict()}"
        )
        return None
