"""
Tool: Notification Router Models
Purpose: Data structures for queue items, broadcasts and delivery results

Usage:
    from notify_router.models import (
        QueueItem,
        Broadcast,
        Schedule,
        Recurrence,
        Recipient,
        DeliveryResult,
        QueueStatus,
        BroadcastStatus,
    )

Timestamps are timezone-aware UTC datetimes in memory and fixed-width ISO
strings in the database, so string comparison in SQL orders correctly.
"""

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize an instant for storage (UTC, millisecond precision)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def from_iso(value: Any) -> datetime | None:
    """Parse a stored or caller-supplied instant; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class QueueStatus(str, Enum):
    """Lifecycle of one queue item occurrence."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class BroadcastStatus(str, Enum):
    """Lifecycle of a broadcast fan-out job."""

    PENDING = "pending"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduleMode(str, Enum):
    NOW = "now"
    AT_UTC = "at_utc"
    AT_USER_LOCAL = "at_user_local"


class RepeatMode(str, Enum):
    NONE = "none"
    DAILY = "daily"
    EVERY_N_DAYS = "every_n_days"
    WEEKDAYS = "weekdays"


class CampaignKind(str, Enum):
    BROADCAST = "broadcast"


class SkipReason(str, Enum):
    """Recorded on items that end in `skipped`."""

    GLOBAL_DISABLED = "global_disabled"
    CATEGORY_DISABLED = "category_disabled"
    DEDUPED = "deduped"
    BLOCKED_SENDER = "blocked_sender"
    RATE_LIMITED = "rate_limited"
    BROADCAST_CANCELLED = "broadcast_cancelled"
    MANUAL_REMOVED = "manual_removed"


class ErrorCode(str, Enum):
    """Error codes set by the router itself (transports add their own)."""

    NO_TOKEN = "no_token"
    MISSING_FIELDS = "missing_fields"
    INVALID_TOKEN = "invalid_token"
    TRANSPORT_ERROR = "transport_error"


TERMINAL_BROADCAST_STATUSES = {
    BroadcastStatus.CANCELLED,
    BroadcastStatus.COMPLETED,
    BroadcastStatus.FAILED,
}


@dataclass
class Schedule:
    """
    When the first occurrence of a notification should fire.

    `at_utc` is kept as the caller's string until it is resolved so that an
    unparseable value can be reported where it is used.
    """

    mode: ScheduleMode = ScheduleMode.NOW
    at_utc: str | None = None
    hour: int | None = None
    minute: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"mode": self.mode.value}
        if self.mode == ScheduleMode.AT_UTC:
            out["atUtc"] = self.at_utc
        if self.mode == ScheduleMode.AT_USER_LOCAL:
            out["hour"] = self.hour
            out["minute"] = self.minute
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Schedule":
        """Create from dict; accepts both camelCase and snake_case keys."""
        data = data or {}
        at_utc = data.get("atUtc", data.get("at_utc"))
        return cls(
            mode=ScheduleMode(data.get("mode") or ScheduleMode.NOW.value),
            at_utc=str(at_utc) if at_utc is not None else None,
            hour=data.get("hour"),
            minute=data.get("minute"),
        )

    def resolve_at_utc(self) -> datetime | None:
        """Parse `at_utc`; None when it is missing or unparseable."""
        try:
            return from_iso(self.at_utc)
        except (TypeError, ValueError):
            return None


@dataclass
class Recurrence:
    """How a notification repeats after each successful send."""

    mode: RepeatMode = RepeatMode.NONE
    interval_days: int | None = None
    days_of_week: list[int] = field(default_factory=list)
    occurrences: int | None = None
    end_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"mode": self.mode.value}
        if self.mode == RepeatMode.EVERY_N_DAYS:
            out["intervalDays"] = self.interval_days
        if self.mode == RepeatMode.WEEKDAYS:
            out["daysOfWeek"] = list(self.days_of_week)
        if self.occurrences is not None:
            out["occurrences"] = self.occurrences
        if self.end_at is not None:
            out["endAt"] = to_iso(self.end_at)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Recurrence":
        """Create from dict; accepts both camelCase and snake_case keys."""
        data = data or {}
        occurrences = data.get("occurrences")
        return cls(
            mode=RepeatMode(data.get("mode") or RepeatMode.NONE.value),
            interval_days=data.get("intervalDays", data.get("interval_days")),
            days_of_week=list(data.get("daysOfWeek", data.get("days_of_week")) or []),
            occurrences=occurrences if isinstance(occurrences, int) else None,
            end_at=from_iso(data.get("endAt", data.get("end_at"))),
        )


@dataclass
class QueueItem:
    """
    One scheduled or delivered notification occurrence.

    A recurring item that sends successfully stays `sent`; the next
    occurrence is a new row with the same dedupe key and `occurrence + 1`.
    """

    id: str
    recipient_id: str
    scheduled_at: datetime

    # Content
    category: str = "admin"
    type: str = ""
    title: str = ""
    body: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    # Display attribution
    sender_id: str | None = None
    sender_name: str | None = None
    sender_avatar: str | None = None

    # Local-time scheduling
    tz_offset_minutes: int = 0
    hour: int | None = None
    minute: int | None = None

    # Recurrence
    repeat: RepeatMode | None = None
    interval_days: int | None = None
    days_of_week: list[int] = field(default_factory=list)
    remaining_occurrences: int | None = None
    end_at: datetime | None = None
    occurrence: int = 0

    # Campaign linkage
    campaign_kind: CampaignKind | None = None
    campaign_id: str | None = None

    # Deduplication
    dedupe_key: str | None = None
    dedupe_window_ms: int = 0

    # Processing claim
    claimed_by: str | None = None
    claimed_at: datetime | None = None

    # Status and audit
    status: QueueStatus = QueueStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_sent_at: datetime | None = None
    sent_at: datetime | None = None
    removed_at: datetime | None = None
    delivery_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    skipped_reason: str | None = None
    retry_after_ms: int | None = None

    def __post_init__(self) -> None:
        if self.repeat == RepeatMode.NONE:
            self.repeat = None
        if self.repeat is None:
            self.interval_days = None
            self.days_of_week = []
            self.remaining_occurrences = None
            self.end_at = None
        if self.remaining_occurrences is not None:
            self.remaining_occurrences = max(0, self.remaining_occurrences)

    _DATETIME_FIELDS = (
        "scheduled_at",
        "end_at",
        "claimed_at",
        "created_at",
        "updated_at",
        "last_sent_at",
        "sent_at",
        "removed_at",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        out: dict[str, Any] = {
            "id": self.id,
            "category": self.category,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "data": json.dumps(self.data) if self.data else None,
            "recipient_id": self.recipient_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "sender_avatar": self.sender_avatar,
            "status": self.status.value if isinstance(self.status, QueueStatus) else self.status,
            "tz_offset_minutes": self.tz_offset_minutes,
            "hour": self.hour,
            "minute": self.minute,
            "repeat": self.repeat.value if self.repeat else None,
            "interval_days": self.interval_days,
            "days_of_week": json.dumps(self.days_of_week) if self.days_of_week else None,
            "remaining_occurrences": self.remaining_occurrences,
            "occurrence": self.occurrence,
            "campaign_kind": self.campaign_kind.value if self.campaign_kind else None,
            "campaign_id": self.campaign_id,
            "dedupe_key": self.dedupe_key,
            "dedupe_window_ms": self.dedupe_window_ms,
            "claimed_by": self.claimed_by,
            "delivery_id": self.delivery_id,
            "error": self.error,
            "error_code": self.error_code,
            "skipped_reason": self.skipped_reason,
            "retry_after_ms": self.retry_after_ms,
        }
        for name in self._DATETIME_FIELDS:
            out[name] = to_iso(getattr(self, name))
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueItem":
        """Create from a database row dict."""
        data = data.copy()

        if isinstance(data.get("data"), str):
            data["data"] = json.loads(data["data"]) if data["data"] else {}
        elif data.get("data") is None:
            data["data"] = {}

        if isinstance(data.get("days_of_week"), str):
            data["days_of_week"] = json.loads(data["days_of_week"])
        elif data.get("days_of_week") is None:
            data["days_of_week"] = []

        for name in cls._DATETIME_FIELDS:
            data[name] = from_iso(data.get(name))

        if isinstance(data.get("status"), str):
            data["status"] = QueueStatus(data["status"])
        if data.get("repeat"):
            data["repeat"] = RepeatMode(data["repeat"])
        if data.get("campaign_kind"):
            data["campaign_kind"] = CampaignKind(data["campaign_kind"])

        if data.get("tz_offset_minutes") is None:
            data["tz_offset_minutes"] = 0
        if data.get("dedupe_window_ms") is None:
            data["dedupe_window_ms"] = 0

        return cls(**data)

    @staticmethod
    def generate_id() -> str:
        """Generate a new queue item ID."""
        return f"nq_{uuid.uuid4().hex[:16]}"

    def is_recurring(self) -> bool:
        return self.repeat is not None

    def missing_fields(self) -> list[str]:
        """Required content fields that are empty."""
        required = {
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "recipient_id": self.recipient_id,
        }
        return [name for name, value in required.items() if not str(value or "").strip()]

    def to_push_data(self) -> dict[str, str]:
        """
        Flatten the payload for a push data message.

        Push data maps carry strings only: non-string values are JSON encoded
        and empty values dropped.
        """
        merged: dict[str, Any] = {
            **self.data,
            "type": self.type,
            "recipient_id": self.recipient_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "sender_avatar": self.sender_avatar,
            "queue_id": self.id,
        }
        out: dict[str, str] = {}
        for key, value in merged.items():
            if value is None or value == "":
                continue
            out[key] = value if isinstance(value, str) else json.dumps(value)
        return out

    def to_public_dict(self) -> dict[str, Any]:
        """Listing representation (decoded payload, ISO timestamps)."""
        out = self.to_dict()
        out["data"] = dict(self.data)
        out["days_of_week"] = list(self.days_of_week) or None
        return out


@dataclass
class Broadcast:
    """
    Fan-out job definition.

    `cursor_last_doc_id` is the last recipient already materialized; the
    next expansion pass starts strictly after it.
    """

    id: str
    status: BroadcastStatus = BroadcastStatus.PENDING
    category: str = "admin"
    type: str = ""
    title: str = ""
    body: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    sender_id: str | None = None
    sender_name: str | None = None
    sender_avatar: str | None = None
    schedule: Schedule = field(default_factory=Schedule)
    recurrence: Recurrence = field(default_factory=Recurrence)
    batch_size: int | None = None
    cursor_last_doc_id: str | None = None
    total_enqueued: int = 0
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    _DATETIME_FIELDS = ("created_at", "updated_at", "completed_at", "cancelled_at")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        out: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value if isinstance(self.status, BroadcastStatus) else self.status,
            "category": self.category,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "data": json.dumps(self.data) if self.data else None,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "sender_avatar": self.sender_avatar,
            "schedule": json.dumps(self.schedule.to_dict()),
            "recurrence": json.dumps(self.recurrence.to_dict()),
            "batch_size": self.batch_size,
            "cursor_last_doc_id": self.cursor_last_doc_id,
            "total_enqueued": self.total_enqueued,
            "error": self.error,
        }
        for name in self._DATETIME_FIELDS:
            out[name] = to_iso(getattr(self, name))
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Broadcast":
        """Create from a database row dict."""
        data = data.copy()

        if isinstance(data.get("data"), str):
            data["data"] = json.loads(data["data"]) if data["data"] else {}
        elif data.get("data") is None:
            data["data"] = {}

        schedule = data.get("schedule")
        if isinstance(schedule, str):
            schedule = json.loads(schedule) if schedule else None
        data["schedule"] = schedule if isinstance(schedule, Schedule) else Schedule.from_dict(schedule)

        recurrence = data.get("recurrence")
        if isinstance(recurrence, str):
            recurrence = json.loads(recurrence) if recurrence else None
        data["recurrence"] = (
            recurrence if isinstance(recurrence, Recurrence) else Recurrence.from_dict(recurrence)
        )

        for name in cls._DATETIME_FIELDS:
            data[name] = from_iso(data.get(name))

        if isinstance(data.get("status"), str):
            data["status"] = BroadcastStatus(data["status"])
        if data.get("total_enqueued") is None:
            data["total_enqueued"] = 0

        return cls(**data)

    @staticmethod
    def generate_id() -> str:
        """Generate a new broadcast ID."""
        return f"bc_{uuid.uuid4().hex[:16]}"

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BROADCAST_STATUSES

    def to_public_dict(self) -> dict[str, Any]:
        out = self.to_dict()
        out["data"] = dict(self.data)
        out["schedule"] = self.schedule.to_dict()
        out["recurrence"] = self.recurrence.to_dict()
        return out


@dataclass
class Recipient:
    """Entry in the recipient directory."""

    id: str
    delivery_token: str | None = None
    tz_offset_minutes: int | None = None
    signed_up_at: datetime = field(default_factory=utc_now)
    token_updated_at: datetime | None = None
    token_invalidated_at: datetime | None = None
    engagement_first_time_scheduled: bool = False
    engagement_recurring_scheduled: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipient":
        data = data.copy()
        for name in ("signed_up_at", "token_updated_at", "token_invalidated_at"):
            data[name] = from_iso(data.get(name))
        for name in ("engagement_first_time_scheduled", "engagement_recurring_scheduled"):
            data[name] = bool(data.get(name))
        return cls(**data)

    @property
    def offset_minutes(self) -> int:
        """Stored UTC offset, 0 when unknown."""
        return self.tz_offset_minutes if isinstance(self.tz_offset_minutes, int) else 0

    def has_token(self) -> bool:
        return bool(self.delivery_token and self.delivery_token.strip())


@dataclass
class DeliveryResult:
    """
    Result of handing one message to the push transport.
    """

    success: bool
    delivery_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    should_unsubscribe: bool = False  # True if the token is invalid/unregistered
    retry_after_ms: int | None = None  # Backoff hint for transient failures

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict."""
        return asdict(self)
