# Timezone helpers shared by the booking services and the API layer
import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

UTC = ZoneInfo("UTC")


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


def tenant_zone(name) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def to_utc(value, tz=UTC) -> datetime.datetime:
    """
    Convert an ISO-8601 string or datetime to an aware UTC datetime.
    Naive values are read as wall-clock time in `tz` (the tenant's zone).
    """
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if not isinstance(value, datetime.datetime):
        raise ValueError("Expected a datetime value")
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(UTC)


def parse_date(value) -> datetime.date:
    if isinstance(value, datetime.date) and not isinstance(value, datetime.datetime):
        return value
    return datetime.date.fromisoformat(str(value))


def local_day_bounds(day: datetime.date, tz) -> tuple:
    """UTC instants for [00:00, next 00:00) of `day` in the given zone."""
    start = datetime.datetime.combine(day, datetime.time.min, tzinfo=tz)
    end = datetime.datetime.combine(
        day + datetime.timedelta(days=1), datetime.time.min, tzinfo=tz
    )
    return start.astimezone(UTC), end.astimezone(UTC)


def sunday_based_weekday(day: datetime.date) -> int:
    # isoweekday: Monday=1 .. Sunday=7, schedules use Sunday=0
    return day.isoweekday() % 7


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    """Half-open interval intersection; touching intervals do not overlap."""
    return a_start < b_end and a_end > b_start


def isoformat(value):
    return value.isoformat() if value else None
