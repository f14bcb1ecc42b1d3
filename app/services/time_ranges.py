"""Half-open [start, end) interval helpers shared by slot generation and conflict checks."""

from datetime import UTC, date, datetime, timedelta


def to_naive_utc(dt: datetime) -> datetime:
    """Convert to naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    if dt.tzinfo is not None:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def utc_naive_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """[a_start, a_end) and [b_start, b_end) share at least one instant.

    Ranges that only touch (one ends exactly where the other starts) do not overlap.
    """
    return a_start < b_end and b_start < a_end


def clip(
    start: datetime, end: datetime, bound_start: datetime, bound_end: datetime
) -> tuple[datetime, datetime] | None:
    """Intersection of [start, end) with [bound_start, bound_end), or None if empty."""
    clipped_start = max(start, bound_start)
    clipped_end = min(end, bound_end)
    if clipped_start >= clipped_end:
        return None
    return clipped_start, clipped_end


def day_bounds(d: date) -> tuple[datetime, datetime]:
    """UTC day [d 00:00, d+1 00:00) as naive datetimes."""
    start = datetime(d.year, d.month, d.day, 0, 0, 0)
    return start, start + timedelta(days=1)


def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600
