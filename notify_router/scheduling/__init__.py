"""Pure scheduling functions: local wall-clock resolution and recurrence rules."""

from notify_router.scheduling.time_resolver import (
    from_local,
    local_weekday,
    next_utc_for_local_time,
    to_local,
)
from notify_router.scheduling.recurrence import (
    NextOccurrence,
    build_next_occurrence,
    local_hour_minute,
    next_occurrence_after,
    normalize_days,
    plan_next_occurrence,
    recurrence_fields,
    resolve_schedule,
)

__all__ = [
    "from_local",
    "local_weekday",
    "next_utc_for_local_time",
    "to_local",
    "NextOccurrence",
    "build_next_occurrence",
    "local_hour_minute",
    "next_occurrence_after",
    "normalize_days",
    "plan_next_occurrence",
    "recurrence_fields",
    "resolve_schedule",
]
