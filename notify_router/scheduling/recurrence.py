"""
Tool: Recurrence Engine
Purpose: First-fire resolution and next-occurrence computation for queue items

Usage:
    from notify_router.scheduling.recurrence import (
        resolve_schedule,
        recurrence_fields,
        plan_next_occurrence,
        build_next_occurrence,
    )

Rules:
    daily          next = previous scheduled local time + 1 day
    every_n_days   next = previous scheduled local time + interval_days
    weekdays       next = first later day whose weekday is in days_of_week
                   (0=Sun..6=Sat); an empty set means no further occurrence

Next occurrences are anchored on the previous *scheduled* local time, never
on the wall clock, so late processing does not shift the series. If the
anchored instant is already behind `now` the series is stepped forward along
the same rule instead of producing a backlog.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from notify_router.models import (
    QueueItem,
    QueueStatus,
    Recurrence,
    RepeatMode,
    Schedule,
    ScheduleMode,
    utc_now,
)
from notify_router.scheduling.time_resolver import (
    ONE_DAY,
    from_local,
    local_weekday,
    next_utc_for_local_time,
    to_local,
)


DEFAULT_LOCAL_HOUR = 8
DEFAULT_LOCAL_MINUTE = 0


@dataclass
class NextOccurrence:
    scheduled_at: datetime
    remaining_occurrences: int | None


def normalize_days(value: Any) -> list[int]:
    """Sorted, de-duplicated weekdays within 0-6; anything else is dropped."""
    if not isinstance(value, (list, tuple, set)):
        return []
    days = set()
    for raw in value:
        try:
            day = int(str(raw).strip())
        except ValueError:
            continue
        if 0 <= day <= 6:
            days.add(day)
    return sorted(days)


def _clamp(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return min(max(number, low), high)


def local_hour_minute(schedule: Schedule) -> tuple[int, int]:
    """Clamped hour/minute of an at_user_local schedule."""
    return (
        _clamp(schedule.hour, 0, 23, DEFAULT_LOCAL_HOUR),
        _clamp(schedule.minute, 0, 59, DEFAULT_LOCAL_MINUTE),
    )


def _next_allowed_weekday(local: datetime, days: list[int]) -> datetime | None:
    """First of `local`, local+1, ... local+6 falling on an allowed weekday."""
    if not days:
        return None
    candidate = local
    for _ in range(7):
        if local_weekday(candidate) in days:
            return candidate
        candidate += ONE_DAY
    return None


def resolve_schedule(
    schedule: Schedule,
    now: datetime,
    tz_offset_minutes: int = 0,
    recurrence: Recurrence | None = None,
) -> datetime:
    """
    First scheduled instant for a new item.

    now            -> `now`
    at_utc         -> the parsed instant (ValueError when unparseable)
    at_user_local  -> next local hour:minute for the recipient; with a
                      weekdays recurrence the first fire also lands on an
                      allowed weekday
    """
    if schedule.mode == ScheduleMode.NOW:
        return now

    if schedule.mode == ScheduleMode.AT_UTC:
        at = schedule.resolve_at_utc()
        if at is None:
            raise ValueError(f"Invalid schedule.atUtc: {schedule.at_utc!r}")
        return at

    hour, minute = local_hour_minute(schedule)
    first = next_utc_for_local_time(now, tz_offset_minutes, hour, minute)

    if recurrence is not None and recurrence.mode == RepeatMode.WEEKDAYS:
        days = normalize_days(recurrence.days_of_week)
        aligned = _next_allowed_weekday(to_local(first, tz_offset_minutes), days)
        if aligned is not None:
            return from_local(aligned, tz_offset_minutes)

    return first


def recurrence_fields(recurrence: Recurrence | None) -> dict[str, Any]:
    """
    QueueItem keyword arguments for a recurrence rule.

    `none` (or no rule) yields an empty dict so one-off items never carry
    recurrence fields.
    """
    if recurrence is None or recurrence.mode == RepeatMode.NONE:
        return {}

    fields: dict[str, Any] = {"repeat": recurrence.mode}
    if recurrence.mode == RepeatMode.EVERY_N_DAYS:
        fields["interval_days"] = _clamp(recurrence.interval_days, 1, 3650, 1)
    if recurrence.mode == RepeatMode.WEEKDAYS:
        fields["days_of_week"] = normalize_days(recurrence.days_of_week)
    if isinstance(recurrence.occurrences, int):
        fields["remaining_occurrences"] = max(1, recurrence.occurrences)
    if recurrence.end_at is not None:
        fields["end_at"] = recurrence.end_at
    return fields


def next_occurrence_after(
    scheduled_at: datetime,
    tz_offset_minutes: int,
    repeat: RepeatMode,
    interval_days: int | None = None,
    days_of_week: list[int] | None = None,
    hour: int | None = None,
    minute: int | None = None,
    now: datetime | None = None,
) -> datetime | None:
    """
    Next instant in the series that `scheduled_at` belongs to.

    Args:
        scheduled_at: The occurrence that just fired
        tz_offset_minutes: Offset stored on the item
        repeat: Rule
        interval_days: every_n_days step (minimum 1)
        days_of_week: weekdays set (0=Sun..6=Sat)
        hour, minute: Local clock time of the series when it was created
            from a local-time rule; re-pins the wall-clock time
        now: When given, the result is also strictly after `now`

    Returns:
        Aware UTC datetime, or None when the rule has no further occurrence
    """
    if repeat is None or repeat == RepeatMode.NONE:
        return None

    local = to_local(scheduled_at, tz_offset_minutes)
    if hour is not None and minute is not None:
        local = local.replace(
            hour=_clamp(hour, 0, 23, 0), minute=_clamp(minute, 0, 59, 0), second=0, microsecond=0
        )

    days = normalize_days(days_of_week or [])
    if repeat == RepeatMode.WEEKDAYS and not days:
        return None

    if repeat == RepeatMode.EVERY_N_DAYS:
        period = timedelta(days=_clamp(interval_days, 1, 3650, 1))
    elif repeat == RepeatMode.WEEKDAYS:
        period = timedelta(days=7)
    else:
        period = ONE_DAY

    def step(current: datetime) -> datetime:
        if repeat == RepeatMode.WEEKDAYS:
            return _next_allowed_weekday(current + ONE_DAY, days)
        return current + period

    nxt = step(local)

    if now is not None:
        now_local = to_local(now, tz_offset_minutes)
        if nxt <= now_local:
            # Whole periods keep both the interval lattice and the weekday
            nxt += ((now_local - nxt) // period) * period
            while nxt <= now_local:
                nxt = step(nxt)

    return from_local(nxt, tz_offset_minutes)


def plan_next_occurrence(item: QueueItem, now: datetime | None = None) -> NextOccurrence | None:
    """
    Decide whether a just-sent item re-arms, and when.

    Decrements `remaining_occurrences` when present; reaching 0 exhausts the
    series. A computed instant past `end_at` also ends it.
    """
    if not item.is_recurring():
        return None

    next_remaining = None
    if item.remaining_occurrences is not None:
        next_remaining = max(0, item.remaining_occurrences - 1)
        if next_remaining == 0:
            return None

    nxt = next_occurrence_after(
        scheduled_at=item.scheduled_at,
        tz_offset_minutes=item.tz_offset_minutes,
        repeat=item.repeat,
        interval_days=item.interval_days,
        days_of_week=item.days_of_week,
        hour=item.hour,
        minute=item.minute,
        now=now,
    )
    if nxt is None:
        return None
    if item.end_at is not None and nxt > item.end_at:
        return None

    return NextOccurrence(scheduled_at=nxt, remaining_occurrences=next_remaining)


def build_next_occurrence(
    item: QueueItem,
    plan: NextOccurrence,
    now: datetime | None = None,
) -> QueueItem:
    """New pending row for the next occurrence of `item`."""
    now = now or utc_now()
    return QueueItem(
        id=QueueItem.generate_id(),
        recipient_id=item.recipient_id,
        scheduled_at=plan.scheduled_at,
        category=item.category,
        type=item.type,
        title=item.title,
        body=item.body,
        data=dict(item.data),
        sender_id=item.sender_id,
        sender_name=item.sender_name,
        sender_avatar=item.sender_avatar,
        tz_offset_minutes=item.tz_offset_minutes,
        hour=item.hour,
        minute=item.minute,
        repeat=item.repeat,
        interval_days=item.interval_days,
        days_of_week=list(item.days_of_week),
        remaining_occurrences=plan.remaining_occurrences,
        end_at=item.end_at,
        occurrence=item.occurrence + 1,
        campaign_kind=item.campaign_kind,
        campaign_id=item.campaign_id,
        dedupe_key=item.dedupe_key,
        dedupe_window_ms=item.dedupe_window_ms,
        status=QueueStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
