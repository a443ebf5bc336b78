"""
Tool: Delivery Policies
Purpose: Pre-send gates evaluated per queue item

Usage:
    from notify_router.delivery.policies import (
        disabled_scope,
        is_blocked_sender,
        is_deduped,
        check_connect_rate_limit,
    )

Each gate answers one question about one item; the processor decides the
resulting transition.
"""

from datetime import datetime

from notify_router import get_connection
from notify_router.config import RouterConfig
from notify_router.models import QueueItem, SkipReason, from_iso, to_iso
from notify_router.queue.store import last_dedupe_send

CONNECT_CATEGORY = "connect"
CONNECT_TYPE_PREFIX = "connect_"


def disabled_scope(item: QueueItem, config: RouterConfig) -> SkipReason | None:
    """Kill switch that applies to this item, if any."""
    if not config.global_enabled:
        return SkipReason.GLOBAL_DISABLED
    if not config.category_enabled(item.category):
        return SkipReason.CATEGORY_DISABLED
    return None


def is_blocked_sender(item: QueueItem, config: RouterConfig) -> bool:
    return (
        item.category == CONNECT_CATEGORY
        and bool(item.sender_id)
        and item.sender_id in config.connect.blocked_senders
    )


async def is_deduped(item: QueueItem) -> bool:
    """
    True when the dedupe key already had an effective send within the
    item's window, measured from the item's scheduled time.
    """
    if not item.dedupe_key or item.dedupe_window_ms <= 0:
        return False

    last = await last_dedupe_send(item.dedupe_key)
    if last is None or last.get("queue_id") == item.id:
        return False

    sent_at = from_iso(last["sent_at"])
    distance_ms = abs((item.scheduled_at - sent_at).total_seconds()) * 1000
    return distance_ms < item.dedupe_window_ms


def connect_cooldown_ms(item: QueueItem, config: RouterConfig) -> int:
    """Cooldown for a connect notification type; 0 means unlimited."""
    if not item.type.startswith(CONNECT_TYPE_PREFIX) or not item.sender_id:
        return 0
    return max(0, int(config.connect.rate_limits_ms.get(item.type, 0) or 0))


async def check_connect_rate_limit(
    sender_id: str,
    recipient_id: str,
    type: str,
    cooldown_ms: int,
    now: datetime,
) -> int | None:
    """
    Check and record a connect send for (sender, recipient, type).

    Returns:
        None when the send is allowed (the send time is recorded), otherwise
        the milliseconds left in the cooldown
    """
    conn = get_connection()
    try:
        conn.isolation_level = None
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                """
                SELECT last_sent_at FROM connect_rate_limits
                WHERE sender_id = ? AND recipient_id = ? AND type = ?
                """,
                (sender_id, recipient_id, type),
            ).fetchone()

            if row:
                elapsed_ms = (now - from_iso(row["last_sent_at"])).total_seconds() * 1000
                if 0 <= elapsed_ms < cooldown_ms:
                    conn.execute("ROLLBACK")
                    return int(cooldown_ms - elapsed_ms)

            conn.execute(
                """
                INSERT INTO connect_rate_limits (sender_id, recipient_id, type, last_sent_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(sender_id, recipient_id, type) DO UPDATE SET
                    last_sent_at = excluded.last_sent_at
                """,
                (sender_id, recipient_id, type, to_iso(now)),
            )
            conn.execute("COMMIT")
            return None
        except BaseException:
            conn.execute("ROLLBACK")
            raise
    finally:
        conn.close()
