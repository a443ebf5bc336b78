"""
Tool: Broadcast Expander
Purpose: Incrementally materialize broadcast audiences into queue items

Usage:
    from notify_router.broadcast.expander import expand_broadcasts

    result = await expand_broadcasts()
    # {"processed_broadcasts": 1, "items_created": 300, ...}

Each pass takes at most `broadcast.max_per_run` pending broadcasts and one
page of recipients per broadcast. Progress is the cursor on the broadcast
row, so a pass can be interrupted and re-run at any point: the same page is
merged by dedupe key, never duplicated.
"""

from datetime import datetime
from typing import Any

from notify_router.broadcast.cancel import purge_broadcast
from notify_router.config import (
    EngineSettings,
    RouterConfig,
    clamp,
    load_router_config,
    load_settings,
)
from notify_router.logging_config import get_logger, log_context
from notify_router.models import (
    Broadcast,
    BroadcastStatus,
    CampaignKind,
    QueueItem,
    Recipient,
    ScheduleMode,
    utc_now,
)
from notify_router.queue.broadcasts import (
    advance_cursor,
    get_broadcast_status,
    list_pending_broadcasts,
    set_broadcast_status,
)
from notify_router.queue.enqueue import validate_content
from notify_router.queue.store import insert_items
from notify_router.recipients import page_recipients
from notify_router.scheduling import local_hour_minute, recurrence_fields, resolve_schedule

logger = get_logger(__name__)


def page_size_for(broadcast: Broadcast, settings: EngineSettings, requested: int | None = None) -> int:
    """Broadcast page size clamped to the configured bounds."""
    bounds = settings.broadcast
    size = broadcast.batch_size or requested or bounds.default_batch_size
    return clamp(int(size), bounds.min_batch_size, bounds.max_batch_size)


def build_broadcast_item(
    broadcast: Broadcast,
    recipient: Recipient,
    now: datetime,
    dedupe_window_ms: int,
) -> QueueItem:
    """Queue item for one recipient of a broadcast."""
    schedule = broadcast.schedule
    recurrence = broadcast.recurrence
    offset = recipient.offset_minutes

    local_fields: dict[str, Any] = {}
    if schedule.mode == ScheduleMode.AT_USER_LOCAL:
        hour, minute = local_hour_minute(schedule)
        local_fields = {"hour": hour, "minute": minute}

    return QueueItem(
        id=QueueItem.generate_id(),
        recipient_id=recipient.id,
        scheduled_at=resolve_schedule(schedule, now, offset, recurrence),
        category=broadcast.category or "admin",
        type=broadcast.type.strip(),
        title=broadcast.title.strip(),
        body=broadcast.body.strip(),
        data=dict(broadcast.data),
        sender_id=broadcast.sender_id,
        sender_name=broadcast.sender_name,
        sender_avatar=broadcast.sender_avatar,
        tz_offset_minutes=offset,
        campaign_kind=CampaignKind.BROADCAST,
        campaign_id=broadcast.id,
        dedupe_key=f"broadcast:{broadcast.id}:{recipient.id}",
        dedupe_window_ms=dedupe_window_ms,
        created_at=now,
        updated_at=now,
        **local_fields,
        **recurrence_fields(recurrence),
    )


async def _fail(broadcast: Broadcast, error: str, now: datetime) -> dict:
    await set_broadcast_status(broadcast.id, BroadcastStatus.FAILED, error=error, now=now)
    logger.warning("broadcast_failed", broadcast_id=broadcast.id, error=error)
    return {"broadcast_id": broadcast.id, "outcome": "failed", "items_created": 0, "error": error}


async def expand_broadcast(
    broadcast: Broadcast,
    page_size: int | None = None,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Materialize the next page of one pending broadcast.

    Args:
        broadcast: Broadcast to expand (must be pending)
        page_size: Requested page size when the broadcast has none
        settings: EngineSettings (loaded when omitted)
        now: Reference instant

    Returns:
        {"broadcast_id", "outcome", "items_created"} where outcome is one of
        'expanded', 'completed', 'not_due', 'failed', 'cancelled', 'stale',
        'inactive'
    """
    settings = settings or load_settings()
    now = now or utc_now()

    if broadcast.status != BroadcastStatus.PENDING:
        return {"broadcast_id": broadcast.id, "outcome": "inactive", "items_created": 0}

    missing = validate_content(broadcast.title, broadcast.body, broadcast.type)
    if missing:
        return await _fail(broadcast, "Missing title/body/type", now)

    if broadcast.schedule.mode == ScheduleMode.AT_UTC:
        at = broadcast.schedule.resolve_at_utc()
        if at is None:
            return await _fail(broadcast, "Invalid schedule.atUtc", now)
        if at > now:
            return {"broadcast_id": broadcast.id, "outcome": "not_due", "items_created": 0}

    size = page_size_for(broadcast, settings, page_size)
    page = await page_recipients(broadcast.cursor_last_doc_id, size)

    if not page:
        await set_broadcast_status(broadcast.id, BroadcastStatus.COMPLETED, now=now)
        logger.info("broadcast_completed", broadcast_id=broadcast.id)
        return {"broadcast_id": broadcast.id, "outcome": "completed", "items_created": 0}

    items = [
        build_broadcast_item(broadcast, recipient, now, settings.dedupe.default_window_ms)
        for recipient in page
    ]
    written = await insert_items(items, write_batch_size=settings.store.write_batch_size)
    created = written["created"]

    advanced = await advance_cursor(
        broadcast.id, broadcast.cursor_last_doc_id, page[-1].id, created, now=now
    )
    if not advanced:
        status = await get_broadcast_status(broadcast.id)
        if status == BroadcastStatus.PENDING:
            # Another pass moved the cursor past this page first
            logger.info(
                "broadcast_cursor_moved_during_expansion",
                broadcast_id=broadcast.id,
                expected_cursor=broadcast.cursor_last_doc_id,
            )
            return {"broadcast_id": broadcast.id, "outcome": "stale", "items_created": created}

        # Cancelled while this page was being written
        if status == BroadcastStatus.CANCELLED:
            await purge_broadcast(broadcast.id, settings=settings, now=now)
        logger.info(
            "broadcast_left_pending_during_expansion",
            broadcast_id=broadcast.id,
            status=status.value if status else None,
        )
        return {"broadcast_id": broadcast.id, "outcome": "cancelled", "items_created": created}

    outcome = "expanded"
    if len(page) < size:
        await set_broadcast_status(broadcast.id, BroadcastStatus.COMPLETED, now=now)
        outcome = "completed"

    logger.info(
        "broadcast_page_expanded",
        broadcast_id=broadcast.id,
        page_size=size,
        recipients=len(page),
        created=created,
        merged=written["merged"],
        outcome=outcome,
    )
    return {"broadcast_id": broadcast.id, "outcome": outcome, "items_created": created}


async def expand_broadcasts(
    page_size: int | None = None,
    config: RouterConfig | None = None,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Run one expansion pass over pending broadcasts.

    Returns:
        {
            "processed_broadcasts": int,
            "items_created": int,
            "broadcasts": list[dict],
        }
        or {"processed_broadcasts": 0, "items_created": 0, "skipped": True,
            "reason": "global_disabled"} when new enqueue is switched off
    """
    config = config or await load_router_config()
    settings = settings or load_settings()
    now = now or utc_now()

    if not config.global_enabled:
        return {
            "processed_broadcasts": 0,
            "items_created": 0,
            "skipped": True,
            "reason": "global_disabled",
        }

    pending = await list_pending_broadcasts(settings.broadcast.max_per_run)

    results = []
    for broadcast in pending:
        with log_context(broadcast_id=broadcast.id):
            results.append(await expand_broadcast(broadcast, page_size, settings, now))

    return {
        "processed_broadcasts": len(pending),
        "items_created": sum(r["items_created"] for r in results),
        "broadcasts": results,
    }
