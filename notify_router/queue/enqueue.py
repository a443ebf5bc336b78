"""
Tool: Direct Enqueue
Purpose: Create queue items for an explicit list of recipients

Usage:
    from notify_router.queue.enqueue import enqueue_for_recipients

    result = await enqueue_for_recipients(
        recipient_ids=["u1", "u2"],
        title="Hello",
        body="World",
        type="admin_message",
        schedule=Schedule(mode=ScheduleMode.AT_USER_LOCAL, hour=9, minute=0),
    )

Unknown recipient ids are ignored. Each item gets its own dedupe key
(`admin:{queue_id}`) so two separate requests never collapse into one send.
"""

from datetime import datetime
from typing import Any

from notify_router.config import EngineSettings, RouterConfig, load_router_config, load_settings
from notify_router.logging_config import get_logger
from notify_router.models import (
    QueueItem,
    Recurrence,
    Schedule,
    ScheduleMode,
    utc_now,
)
from notify_router.queue.store import insert_items
from notify_router.recipients import get_recipients
from notify_router.scheduling import local_hour_minute, recurrence_fields, resolve_schedule

logger = get_logger(__name__)


def validate_content(title: str, body: str, type: str) -> str | None:
    """Error message for missing required content, None when valid."""
    if not (title or "").strip() or not (body or "").strip() or not (type or "").strip():
        return "title, body, and type are required"
    return None


def validate_schedule(schedule: Schedule | None) -> str | None:
    """Error message for an unusable schedule, None when valid."""
    if schedule is None:
        return "schedule is required"
    if schedule.mode == ScheduleMode.AT_UTC and schedule.resolve_at_utc() is None:
        return "Invalid schedule.atUtc"
    if schedule.mode == ScheduleMode.AT_USER_LOCAL:
        if not isinstance(schedule.hour, int) or not isinstance(schedule.minute, int):
            return "schedule.hour and schedule.minute must be numbers for at_user_local"
    return None


async def enqueue_for_recipients(
    recipient_ids: list[str],
    title: str,
    body: str,
    type: str,
    schedule: Schedule,
    recurrence: Recurrence | None = None,
    category: str = "admin",
    data: dict[str, Any] | None = None,
    sender_id: str | None = None,
    sender_name: str | None = None,
    sender_avatar: str | None = None,
    config: RouterConfig | None = None,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Create one pending queue item per known recipient.

    Args:
        recipient_ids: Target recipients (duplicates and blanks dropped)
        title, body, type: Required content
        schedule: First-fire rule, resolved per recipient offset
        recurrence: Optional repeat rule copied onto every item
        category: Category used for kill-switch checks at delivery time
        data: Arbitrary payload
        sender_id, sender_name, sender_avatar: Display attribution
        config: RouterConfig (loaded when omitted)
        settings: EngineSettings (loaded when omitted)
        now: Reference instant

    Returns:
        {"success": True, "created": int, "queue_ids": list[str]}
        or {"success": False, "error": str} with nothing written
    """
    config = config or await load_router_config()
    settings = settings or load_settings()
    now = now or utc_now()

    if not config.global_enabled:
        return {"success": False, "error": "Notifications are globally disabled"}

    error = validate_content(title, body, type) or validate_schedule(schedule)
    if error:
        return {"success": False, "error": error}

    ids = list(dict.fromkeys(str(r).strip() for r in recipient_ids if str(r or "").strip()))
    if not ids:
        return {"success": False, "error": "No users selected"}

    recipients = await get_recipients(ids)
    rec_fields = recurrence_fields(recurrence)
    local_fields: dict[str, Any] = {}
    if schedule.mode == ScheduleMode.AT_USER_LOCAL:
        hour, minute = local_hour_minute(schedule)
        local_fields = {"hour": hour, "minute": minute}

    items: list[QueueItem] = []
    for recipient_id in ids:
        recipient = recipients.get(recipient_id)
        if recipient is None:
            continue

        offset = recipient.offset_minutes
        queue_id = QueueItem.generate_id()
        items.append(
            QueueItem(
                id=queue_id,
                recipient_id=recipient_id,
                scheduled_at=resolve_schedule(schedule, now, offset, recurrence),
                category=category or "admin",
                type=type.strip(),
                title=title.strip(),
                body=body.strip(),
                data=dict(data or {}),
                sender_id=sender_id,
                sender_name=sender_name,
                sender_avatar=sender_avatar,
                tz_offset_minutes=offset,
                dedupe_key=f"admin:{queue_id}",
                dedupe_window_ms=settings.dedupe.default_window_ms,
                created_at=now,
                updated_at=now,
                **local_fields,
                **rec_fields,
            )
        )

    result = await insert_items(items, write_batch_size=settings.store.write_batch_size)

    logger.info(
        "queue_items_enqueued",
        requested=len(ids),
        created=result["created"],
        category=category,
    )
    return {
        "success": True,
        "created": result["created"],
        "queue_ids": [item.id for item in items],
    }
