"""
Tool: Recipient Directory
Purpose: Delivery tokens and stored UTC offsets of recipients

Usage:
    from notify_router.recipients import (
        register_recipient,
        get_recipient,
        get_recipients,
        page_recipients,
        evict_token,
    )

Recipients are paged newest signup first (signed_up_at DESC, id DESC); the
broadcast cursor is the id of the last recipient of the previous page.
"""

from datetime import datetime

from notify_router import get_connection
from notify_router.logging_config import get_logger
from notify_router.models import Recipient, to_iso, utc_now

logger = get_logger(__name__)


async def register_recipient(
    recipient_id: str,
    delivery_token: str | None = None,
    tz_offset_minutes: int | None = None,
    signed_up_at: datetime | None = None,
) -> dict:
    """
    Create a recipient or update its token/offset.

    An existing signup time is kept. Passing a token clears a previous
    invalidation.

    Returns:
        {"success": True, "recipient_id": str}
    """
    if not recipient_id:
        return {"success": False, "error": "recipient_id is required"}

    now = utc_now()
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO recipients (id, delivery_token, tz_offset_minutes, signed_up_at,
                                        token_updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    delivery_token = COALESCE(excluded.delivery_token, recipients.delivery_token),
                    tz_offset_minutes = COALESCE(excluded.tz_offset_minutes,
                                                 recipients.tz_offset_minutes),
                    token_updated_at = COALESCE(excluded.token_updated_at,
                                                recipients.token_updated_at),
                    token_invalidated_at = CASE
                        WHEN excluded.delivery_token IS NOT NULL THEN NULL
                        ELSE recipients.token_invalidated_at
                    END
                """,
                (
                    recipient_id,
                    delivery_token,
                    tz_offset_minutes,
                    to_iso(signed_up_at or now),
                    to_iso(now) if delivery_token else None,
                ),
            )
    finally:
        conn.close()

    return {"success": True, "recipient_id": recipient_id}


async def get_recipient(recipient_id: str) -> Recipient | None:
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM recipients WHERE id = ?", (recipient_id,)).fetchone()
    finally:
        conn.close()

    return Recipient.from_dict(dict(row)) if row else None


async def get_recipients(recipient_ids: list[str]) -> dict[str, Recipient]:
    """Batch lookup keyed by id; unknown ids are absent from the result."""
    if not recipient_ids:
        return {}

    found: dict[str, Recipient] = {}
    unique = list(dict.fromkeys(recipient_ids))
    conn = get_connection()
    try:
        for start in range(0, len(unique), 400):
            chunk = unique[start:start + 400]
            rows = conn.execute(
                f"SELECT * FROM recipients WHERE id IN ({', '.join('?' for _ in chunk)})",
                chunk,
            ).fetchall()
            for row in rows:
                recipient = Recipient.from_dict(dict(row))
                found[recipient.id] = recipient
    finally:
        conn.close()

    return found


async def page_recipients(after_id: str | None, limit: int) -> list[Recipient]:
    """
    One page of the recipient set in stable order.

    Args:
        after_id: Last recipient id of the previous page; None starts over
        limit: Page size

    A cursor id that no longer exists restarts from the beginning; merged
    writes make the repeated recipients harmless.
    """
    conn = get_connection()
    try:
        query = "SELECT * FROM recipients"
        params: list = []

        if after_id:
            last = conn.execute(
                "SELECT signed_up_at, id FROM recipients WHERE id = ?", (after_id,)
            ).fetchone()
            if last:
                query += " WHERE (signed_up_at < ? OR (signed_up_at = ? AND id < ?))"
                params.extend([last["signed_up_at"], last["signed_up_at"], last["id"]])
            else:
                logger.warning("recipient_cursor_missing", cursor=after_id)

        query += " ORDER BY signed_up_at DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()

    return [Recipient.from_dict(dict(row)) for row in rows]


async def recent_recipients_with_token(
    limit: int,
    engagement_pending_only: bool = False,
) -> list[Recipient]:
    """
    Recipients holding a delivery token, most recently registered token first.

    With `engagement_pending_only`, recipients whose engagement schedules
    are both already created are left out.
    """
    query = """
        SELECT * FROM recipients
        WHERE delivery_token IS NOT NULL AND delivery_token != ''
    """
    if engagement_pending_only:
        query += """
        AND (engagement_first_time_scheduled = 0 OR engagement_recurring_scheduled = 0)
        """
    query += " ORDER BY token_updated_at DESC, signed_up_at DESC, id DESC LIMIT ?"

    conn = get_connection()
    try:
        rows = conn.execute(query, (limit,)).fetchall()
    finally:
        conn.close()

    return [Recipient.from_dict(dict(row)) for row in rows]


async def evict_token(recipient_id: str, token: str | None = None) -> bool:
    """
    Remove an invalid delivery token from a recipient.

    With `token`, only evicts if the recipient still holds that token, so a
    freshly re-registered token is not lost.
    """
    query = (
        "UPDATE recipients SET delivery_token = NULL, token_invalidated_at = ? WHERE id = ?"
    )
    params: list = [to_iso(utc_now()), recipient_id]
    if token is not None:
        query += " AND delivery_token = ?"
        params.append(token)

    conn = get_connection()
    try:
        with conn:
            cursor = conn.execute(query, params)
            evicted = cursor.rowcount == 1
    finally:
        conn.close()

    if evicted:
        logger.info("delivery_token_evicted", recipient_id=recipient_id)
    return evicted


async def mark_engagement_scheduled(
    recipient_id: str,
    first_time: bool = False,
    recurring: bool = False,
) -> None:
    """Record that engagement schedules were created for a recipient."""
    assignments = []
    if first_time:
        assignments.append("engagement_first_time_scheduled = 1")
    if recurring:
        assignments.append("engagement_recurring_scheduled = 1")
    if not assignments:
        return

    conn = get_connection()
    try:
        with conn:
            conn.execute(
                f"UPDATE recipients SET {', '.join(assignments)} WHERE id = ?",
                (recipient_id,),
            )
    finally:
        conn.close()
