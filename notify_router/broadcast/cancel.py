"""
Tool: Broadcast Cancellation
Purpose: Stop a broadcast and skip the items it already materialized

Usage:
    from notify_router.broadcast.cancel import cancel_broadcast, purge_broadcast

    await cancel_broadcast("bc_1a2b3c4d5e6f7a8b")

Cancellation is a state change, not an interrupt. An expansion pass that is
writing a page while the cancel lands notices on its cursor update and
purges again; anything still slipping through is skipped by the processor.
"""

from datetime import datetime

from notify_router.config import EngineSettings, load_settings
from notify_router.logging_config import get_logger
from notify_router.models import BroadcastStatus, SkipReason, utc_now
from notify_router.queue.broadcasts import get_broadcast, set_broadcast_status
from notify_router.queue.store import skip_campaign_items

logger = get_logger(__name__)


async def purge_broadcast(
    broadcast_id: str,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> int:
    """Skip every pending item of a broadcast; returns the number skipped."""
    settings = settings or load_settings()
    return await skip_campaign_items(
        broadcast_id,
        SkipReason.BROADCAST_CANCELLED.value,
        chunk_size=settings.broadcast.purge_limit,
        now=now,
    )


async def cancel_broadcast(
    broadcast_id: str,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Cancel a pending broadcast and purge its pending items.

    Cancelling an already-cancelled broadcast repeats the purge.

    Returns:
        {"success": True, "purged": int}
        or {"success": False, "error": str}
    """
    now = now or utc_now()

    broadcast = await get_broadcast(broadcast_id)
    if broadcast is None:
        return {"success": False, "error": "Broadcast not found"}

    changed = await set_broadcast_status(broadcast_id, BroadcastStatus.CANCELLED, now=now)
    if not changed:
        current = await get_broadcast(broadcast_id)
        if current is None or current.status != BroadcastStatus.CANCELLED:
            status = current.status.value if current else "missing"
            return {"success": False, "error": f"Broadcast is already {status}"}

    purged = await purge_broadcast(broadcast_id, settings=settings, now=now)
    logger.info("broadcast_cancelled", broadcast_id=broadcast_id, purged=purged)
    return {"success": True, "purged": purged}
