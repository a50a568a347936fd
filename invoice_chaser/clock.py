"""Clock and time-zone policy for chase scheduling.

Every timestamp that enters the scheduler passes through ``to_instant`` once,
at the boundary, so the rest of the code only ever handles timezone-aware
UTC ``datetime`` objects.

"Business morning" is 9:00 AM in the reference business timezone.  The
reference timezone is a FIXED UTC offset (America/Chicago standard time,
UTC-6, by default) and does not follow daylight-saving transitions:

    9:00 AM CST  ->  15:00 UTC   (all year, including CDT months)

During CDT the email therefore lands at 10:00 AM local time.  Up to one hour
of drift near DST boundaries is accepted policy, not a defect; the offset is
configurable through ``ScheduleConfig.utc_offset_hours``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_UTC_OFFSET_HOURS: int = -6      # America/Chicago, standard time
DEFAULT_BUSINESS_HOUR: int = 9          # 9:00 AM local

# Fixed-width storage format: lexical order == chronological order.
_STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


# ---------------------------------------------------------------------------
# Business-morning policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BusinessClock:
    """Fixed-offset business-time policy.

    Attributes:
        utc_offset_hours: Offset of the reference business timezone from UTC.
        business_hour: Local hour at which scheduled emails go out.
    """
    utc_offset_hours: int = DEFAULT_UTC_OFFSET_HOURS
    business_hour: int = DEFAULT_BUSINESS_HOUR

    @property
    def tzinfo(self) -> timezone:
        return timezone(timedelta(hours=self.utc_offset_hours))

    def business_morning(self, day: date | datetime) -> datetime:
        """Return ``business_hour`` local time on *day* as a UTC instant.

        A ``datetime`` argument contributes its UTC calendar date, matching
        how due instants are stored (midnight UTC of the due date).

        >>> BusinessClock().business_morning(date(2026, 2, 7))
        datetime.datetime(2026, 2, 7, 15, 0, tzinfo=datetime.timezone.utc)
        """
        if isinstance(day, datetime):
            day = ensure_utc(day).date()
        local = datetime.combine(day, time(self.business_hour), tzinfo=self.tzinfo)
        return local.astimezone(timezone.utc)


_DEFAULT_CLOCK = BusinessClock()


def business_morning(
    day: date | datetime,
    *,
    utc_offset_hours: int = DEFAULT_UTC_OFFSET_HOURS,
    hour: int = DEFAULT_BUSINESS_HOUR,
) -> datetime:
    """Module-level shortcut for :meth:`BusinessClock.business_morning`."""
    if utc_offset_hours == DEFAULT_UTC_OFFSET_HOURS and hour == DEFAULT_BUSINESS_HOUR:
        return _DEFAULT_CLOCK.business_morning(day)
    return BusinessClock(utc_offset_hours, hour).business_morning(day)


# ---------------------------------------------------------------------------
# Instant helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_utc_day(instant: datetime) -> datetime:
    """Midnight UTC of the day containing *instant*."""
    instant = ensure_utc(instant)
    return instant.replace(hour=0, minute=0, second=0, microsecond=0)


def days_until(due: datetime, now: datetime) -> int:
    """Whole UTC calendar days from *now* to *due* (negative once past due).

    Time of day is ignored: an invoice due at 00:00 UTC on the 10th is
    3 days away at any time on the 7th.
    """
    return (ensure_utc(due).date() - ensure_utc(now).date()).days


def format_instant(instant: datetime) -> str:
    """Fixed-width UTC ISO string used for storage and JSON output."""
    return ensure_utc(instant).strftime(_STORAGE_FORMAT)


# ---------------------------------------------------------------------------
# Boundary conversion
# ---------------------------------------------------------------------------

def to_instant(value: Any) -> datetime | None:
    """Normalise any supported timestamp shape to an aware UTC datetime.

    Accepted shapes:
      - ``datetime`` (naive values are taken as UTC)
      - ``date`` (midnight UTC)
      - ISO-8601 strings, with ``Z`` or an explicit offset
      - ``int``/``float`` epoch seconds
      - structured timestamp objects exposing ``to_datetime()``,
        ``ToDatetime()`` (protobuf) or ``to_pydatetime()`` (pandas)

    Returns ``None`` for empty or unparseable values.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time(0), tzinfo=timezone.utc)

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug("Epoch value out of range: %r", value)
            return None

    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(s))
        except ValueError:
            logger.debug("Unparseable timestamp string: %r", value)
            return None

    for method in ("to_datetime", "ToDatetime", "to_pydatetime"):
        converter = getattr(value, method, None)
        if callable(converter):
            return to_instant(converter())

    logger.debug("Unsupported timestamp type: %s", type(value).__name__)
    return None
