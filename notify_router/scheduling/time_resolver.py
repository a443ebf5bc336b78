"""
Tool: Time Resolver
Purpose: Convert a recipient's local wall-clock time into the next UTC instant

Usage:
    from notify_router.scheduling.time_resolver import next_utc_for_local_time

    at = next_utc_for_local_time(now, tz_offset_minutes=-300, hour=8, minute=0)

Offsets are fixed minute values captured when the recipient last reported
them, not zone identifiers. Daylight-saving transitions are not modelled.

"Local" datetimes in this module are naive wall-clock values: the UTC instant
shifted by the offset with the tzinfo dropped.
"""

from datetime import datetime, timedelta, timezone


ONE_DAY = timedelta(days=1)


def to_local(instant: datetime, tz_offset_minutes: int) -> datetime:
    """Wall-clock time of `instant` for a recipient at the given offset."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    utc = instant.astimezone(timezone.utc).replace(tzinfo=None)
    return utc + timedelta(minutes=tz_offset_minutes)


def from_local(local: datetime, tz_offset_minutes: int) -> datetime:
    """UTC instant of a wall-clock time at the given offset."""
    utc = local - timedelta(minutes=tz_offset_minutes)
    return utc.replace(tzinfo=timezone.utc)


def local_weekday(local: datetime) -> int:
    """Weekday of a wall-clock time, 0=Sunday .. 6=Saturday."""
    return (local.weekday() + 1) % 7


def next_utc_for_local_time(
    now: datetime,
    tz_offset_minutes: int,
    hour: int,
    minute: int,
) -> datetime:
    """
    Next instant strictly after `now` at which the recipient's clock reads hour:minute.

    The candidate is today's hour:minute on the recipient's calendar; if that
    is at or before their current local time it moves to the same time
    tomorrow.

    Args:
        now: Reference instant
        tz_offset_minutes: Recipient's offset from UTC in minutes (UTC+5:30 = 330)
        hour: Local hour, 0-23
        minute: Local minute, 0-59

    Returns:
        Aware UTC datetime
    """
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be within 0-23, got {hour}")
    if not 0 <= minute <= 59:
        raise ValueError(f"minute must be within 0-59, got {minute}")

    now_local = to_local(now, tz_offset_minutes)
    candidate = now_local.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now_local:
        candidate += ONE_DAY

    return from_local(candidate, tz_offset_minutes)
