"""Timezone resolution and date-range adjustment.

the store keeps UTC timestamps, callers think in local calendar days. a caller
in America/New_York asking for "June 1" means 04:00Z June 1 to 03:59:59Z June 2,
so the range is expanded to full local days here, before the compiler sees it.

also home to the bucket arithmetic (floor/next) shared by the compiler's range
alignment and the gap filling in shaping.
"""

import calendar
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone as dt_timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from queryforge.errors import InvalidDateRangeError, InvalidTimezoneError
from queryforge.models.definition import TimeUnit
from queryforge.models.query import DateRange

logger = logging.getLogger(__name__)

UTC = "UTC"
OUTPUT_FORMAT = "%Y-%m-%d %H:%M:%S"

# tried in order after an explicit timezone; proxies/edges inject the last two
HEADER_CANDIDATES = (
    "x-timezone",
    "timezone",
    "x-user-timezone",
    "x-vercel-ip-timezone",
    "cf-timezone",
)


@dataclass(frozen=True)
class TimezoneInfo:
    timezone: str
    offset_minutes: int
    source: str  # explicit, a header name, or default


def is_valid_timezone(name: str | None) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def utc_offset_minutes(name: str, at: datetime | None = None) -> int:
    """Offset of the zone from UTC at a given instant (now by default)."""
    moment = at or datetime.now(dt_timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt_timezone.utc)
    offset = moment.astimezone(ZoneInfo(name)).utcoffset() or timedelta(0)
    return int(offset.total_seconds() // 60)


def resolve(
    headers: Mapping[str, str] | None = None,
    explicit: str | None = None,
    at: datetime | None = None,
) -> TimezoneInfo:
    """Pick the caller's timezone.

    an explicit timezone that doesn't validate is an error: the caller asked
    for something specific and likely has a bug. bad header values are just
    skipped, and with nothing usable we fall back to UTC.
    """
    if explicit:
        if not is_valid_timezone(explicit):
            raise InvalidTimezoneError(f"Invalid timezone: {explicit}")
        return TimezoneInfo(explicit, utc_offset_minutes(explicit, at), "explicit")

    lowered = {k.lower(): v for k, v in (headers or {}).items()}
    for header in HEADER_CANDIDATES:
        candidate = lowered.get(header)
        if not candidate:
            continue
        if is_valid_timezone(candidate):
            return TimezoneInfo(candidate, utc_offset_minutes(candidate, at), header)
        logger.debug("Ignoring invalid timezone %r from header %s", candidate, header)

    return TimezoneInfo(UTC, 0, "default")


def _parse_point(value: str) -> datetime | date:
    """ISO date or datetime; bare dates stay dates so we know to expand them."""
    value = value.strip()
    try:
        if len(value) == 10:
            return date.fromisoformat(value)
        return datetime.fromisoformat(value)
    except ValueError:
        raise InvalidDateRangeError(f"Invalid date: {value!r}") from None


def _zone(name: str) -> ZoneInfo:
    if not is_valid_timezone(name):
        raise InvalidTimezoneError(f"Invalid timezone: {name}")
    return ZoneInfo(name)


def to_local(naive_utc: datetime, zone: ZoneInfo) -> datetime:
    return naive_utc.replace(tzinfo=dt_timezone.utc).astimezone(zone).replace(tzinfo=None)


def from_local(naive_local: datetime, zone: ZoneInfo) -> datetime:
    return naive_local.replace(tzinfo=zone).astimezone(dt_timezone.utc).replace(tzinfo=None)


def _to_utc(point: datetime | date, zone: ZoneInfo, end: bool) -> datetime:
    if isinstance(point, datetime):
        if point.tzinfo is not None:
            return point.astimezone(dt_timezone.utc).replace(tzinfo=None)
        return from_local(point, zone)
    if end:
        # next local midnight minus a second, computed in UTC so DST days come out right
        next_midnight = from_local(datetime.combine(point + timedelta(days=1), datetime.min.time()), zone)
        return next_midnight - timedelta(seconds=1)
    return from_local(datetime.combine(point, datetime.min.time()), zone)


def adjust_range(start: str, end: str, timezone: str) -> tuple[str, str]:
    """Expand local calendar dates to full local days, expressed in UTC.

    UTC is a pass-through: the strings come back untouched.
    """
    if timezone == UTC:
        return start, end

    zone = _zone(timezone)
    start_utc = _to_utc(_parse_point(start), zone, end=False)
    end_utc = _to_utc(_parse_point(end), zone, end=True)
    return start_utc.strftime(OUTPUT_FORMAT), end_utc.strftime(OUTPUT_FORMAT)


def build_date_range(
    start: str,
    end: str,
    timezone: str = UTC,
    granularity: TimeUnit | None = None,
) -> DateRange:
    """Resolve caller dates into the DateRange the compiler binds."""
    adj_start, adj_end = adjust_range(start, end, timezone)
    utc = ZoneInfo(UTC)
    start_dt = _to_utc(_parse_point(adj_start), utc, end=False)
    end_dt = _to_utc(_parse_point(adj_end), utc, end=True)
    if start_dt > end_dt:
        raise InvalidDateRangeError(f"Start date {start} is after end date {end}")
    return DateRange(start=start_dt, end=end_dt, timezone=timezone, granularity=granularity)


# --- bucket arithmetic (naive datetimes) ---


def floor_to_unit(moment: datetime, unit: TimeUnit) -> datetime:
    moment = moment.replace(microsecond=0, second=0)
    if unit == TimeUnit.MINUTE:
        return moment
    moment = moment.replace(minute=0)
    if unit == TimeUnit.HOUR:
        return moment
    moment = moment.replace(hour=0)
    if unit == TimeUnit.DAY:
        return moment
    if unit == TimeUnit.WEEK:
        return moment - timedelta(days=moment.weekday())
    return moment.replace(day=1)


def next_bucket(start: datetime, unit: TimeUnit) -> datetime:
    """Start of the bucket after the one beginning at `start`."""
    if unit == TimeUnit.MINUTE:
        return start + timedelta(minutes=1)
    if unit == TimeUnit.HOUR:
        return start + timedelta(hours=1)
    if unit == TimeUnit.DAY:
        return start + timedelta(days=1)
    if unit == TimeUnit.WEEK:
        return start + timedelta(days=7)
    days = calendar.monthrange(start.year, start.month)[1]
    return (start.replace(day=1) + timedelta(days=days)).replace(day=1)


def align_range(
    start: datetime, end: datetime, unit: TimeUnit, timezone: str = UTC
) -> tuple[datetime, datetime]:
    """Widen a UTC range to whole buckets of `unit` in `timezone`.

    keeps the WHERE range on the same boundaries the SELECT truncates to,
    so the first and last buckets aren't partial.
    """
    zone = _zone(timezone)
    local_start = floor_to_unit(to_local(start, zone), unit)
    local_end = next_bucket(floor_to_unit(to_local(end, zone), unit), unit)
    return from_local(local_start, zone), from_local(local_end, zone) - timedelta(seconds=1)


def bucket_starts(
    start: datetime, end: datetime, unit: TimeUnit, timezone: str = UTC
) -> list[datetime]:
    """Local bucket starts covering a UTC range, in order."""
    zone = _zone(timezone)
    current = floor_to_unit(to_local(start, zone), unit)
    last = to_local(end, zone)
    buckets = []
    while current <= last:
        buckets.append(current)
        current = next_bucket(current, unit)
    return buckets
