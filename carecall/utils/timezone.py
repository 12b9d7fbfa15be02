import logging
import re
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from carecall.core.errors import InvalidInputError, InvalidTimezoneError

logger = logging.getLogger(__name__)

_TIME_OF_DAY_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_LOCAL_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:\d{2})?$")
_UTC_NAMES = {"UTC", "Etc/UTC"}

# Weekly scans look at the local date of `after` plus the following seven days
_WEEKLY_SCAN_DAYS = 8


def is_valid_timezone(tz_name: Optional[str]) -> bool:
    """True for region-style IANA names (America/New_York) and UTC; abbreviations like EST are rejected."""
    if not tz_name or not isinstance(tz_name, str):
        return False
    if "/" not in tz_name and tz_name not in _UTC_NAMES:
        return False
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def validate_timezone(tz_name: Optional[str]) -> ZoneInfo:
    if not is_valid_timezone(tz_name):
        raise InvalidTimezoneError(f"Invalid timezone: {tz_name}", {"timezone": tz_name})
    return ZoneInfo(tz_name)


def parse_time_of_day(value: str) -> time:
    """Parse a 24h "HH:mm" string."""
    match = _TIME_OF_DAY_RE.match(value or "")
    if not match:
        raise InvalidInputError(f"Invalid time of day: {value!r} (expected HH:mm)", {"time_of_day": value})
    return time(int(match.group(1)), int(match.group(2)))


def format_time_of_day(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def parse_local_datetime(value: str) -> datetime:
    """
    Parse "YYYY-MM-DDTHH:mm[:ss]".
    - Without an offset the result is naive (a wall-clock time in some zone)
    - With "Z" or "+HH:MM" the result is aware and denotes an absolute instant
    """
    if not value or not _LOCAL_DATETIME_RE.match(value):
        raise InvalidInputError(f"Invalid local date-time: {value!r}", {"due_at_local": value})
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise InvalidInputError(f"Invalid local date-time: {value!r}", {"due_at_local": value}) from e


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def local_to_utc(local_naive: datetime, tz_name: str) -> datetime:
    """
    Convert a wall-clock time in `tz_name` to an aware UTC datetime.

    DST policy:
    - Spring-forward gap: the nonexistent time moves forward by the gap size
      (02:30 on a 1h gap day becomes 03:30 local)
    - Fall-back overlap: the later of the two instants (standard time)

    Both rules reduce to taking the later of the fold=0 and fold=1 readings.
    """
    zone = validate_timezone(tz_name)
    naive = local_naive.replace(tzinfo=None)
    first = naive.replace(tzinfo=zone, fold=0).astimezone(dt_timezone.utc)
    second = naive.replace(tzinfo=zone, fold=1).astimezone(dt_timezone.utc)
    if first == second:
        return first

    resolved = max(first, second)
    resolved_local = resolved.astimezone(zone)
    note = "ambiguous (fall-back), later instant chosen"
    if resolved_local.replace(tzinfo=None) != naive:
        note = f"nonexistent (spring-forward), moved to {resolved_local:%H:%M}"
    logger.info(
        f"DST adjustment tz={tz_name} local={naive.isoformat()} "
        f"offset={resolved_local.strftime('%z')} note={note}"
    )
    return resolved


def local_weekday(d: date) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday."""
    return d.isoweekday() % 7


def validate_days_of_week(days_of_week: Iterable[int]) -> list[int]:
    days = sorted(set(days_of_week or []))
    if not days:
        raise InvalidInputError("days_of_week must not be empty", {"days_of_week": []})
    if any(not isinstance(d, int) or d < 0 or d > 6 for d in days):
        raise InvalidInputError("days_of_week values must be 0-6 (0 = Sunday)", {"days_of_week": days})
    return days


def next_weekly_occurrence(
    time_of_day: str,
    timezone: str,
    days_of_week: Iterable[int],
    after: datetime,
) -> datetime:
    """Earliest UTC instant strictly after `after` that falls on a selected local weekday at `time_of_day`."""
    zone = validate_timezone(timezone)
    at = parse_time_of_day(time_of_day)
    days = set(validate_days_of_week(days_of_week))
    after_utc = to_utc_aware(after)

    start = after_utc.astimezone(zone).date()
    for offset in range(_WEEKLY_SCAN_DAYS):
        candidate_date = start + timedelta(days=offset)
        if local_weekday(candidate_date) not in days:
            continue
        candidate = local_to_utc(datetime.combine(candidate_date, at), timezone)
        if candidate > after_utc:
            return candidate

    # Unreachable with a non-empty weekday set
    raise InvalidInputError("No weekly occurrence found", {"days_of_week": sorted(days)})


def format_in_timezone(dt: datetime, tz_name: str, fmt: Optional[str] = None) -> str:
    """Render an instant in the line's zone. Default is the spoken form, e.g. "Tuesday, January 7 at 9:00 AM"."""
    local = to_utc_aware(dt).astimezone(validate_timezone(tz_name))
    if fmt:
        return local.strftime(fmt)
    hour = local.hour % 12 or 12
    return f"{local:%A, %B} {local.day} at {hour}:{local:%M} {local:%p}"
