"""
Tool: Broadcast Store
Purpose: Persist broadcast definitions and their fan-out bookkeeping

Usage:
    from notify_router.queue.broadcasts import (
        create_broadcast,
        get_broadcast,
        list_broadcasts,
        list_pending_broadcasts,
        advance_cursor,
        set_broadcast_status,
    )

Status changes out of `pending` are conditional writes, so a cancel racing an
expansion pass leaves exactly one winner and a terminal broadcast is never
reopened by a stale pass.
"""

from datetime import datetime

from notify_router import get_connection
from notify_router.models import (
    Broadcast,
    BroadcastStatus,
    to_iso,
    utc_now,
)

MAX_LIST_LIMIT = 100

_COLUMNS = (
    "id", "status", "category", "type", "title", "body", "data", "sender_id",
    "sender_name", "sender_avatar", "schedule", "recurrence", "batch_size",
    "cursor_last_doc_id", "total_enqueued", "error", "created_at",
    "updated_at", "completed_at", "cancelled_at",
)


async def create_broadcast(broadcast: Broadcast) -> Broadcast:
    """Insert a new broadcast definition."""
    stored = broadcast.to_dict()

    conn = get_connection()
    try:
        with conn:
            conn.execute(
                f"INSERT INTO notification_broadcasts ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                tuple(stored[col] for col in _COLUMNS),
            )
    finally:
        conn.close()

    return broadcast


async def get_broadcast(broadcast_id: str) -> Broadcast | None:
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT * FROM notification_broadcasts WHERE id = ?", (broadcast_id,)
        ).fetchone()
    finally:
        conn.close()

    return Broadcast.from_dict(dict(row)) if row else None


async def list_broadcasts(limit: int = 50) -> list[Broadcast]:
    """Most recently created broadcasts first (limit 1-100)."""
    limit = min(max(int(limit), 1), MAX_LIST_LIMIT)

    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM notification_broadcasts ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
    finally:
        conn.close()

    return [Broadcast.from_dict(dict(row)) for row in rows]


async def list_pending_broadcasts(limit: int = 5) -> list[Broadcast]:
    """Pending broadcasts, oldest first, for one expansion pass."""
    conn = get_connection()
    try:
        rows = conn.execute(
            """
            SELECT * FROM notification_broadcasts
            WHERE status = 'pending'
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    finally:
        conn.close()

    return [Broadcast.from_dict(dict(row)) for row in rows]


async def advance_cursor(
    broadcast_id: str,
    expected_cursor: str | None,
    last_recipient_id: str,
    enqueued: int,
    now: datetime | None = None,
) -> bool:
    """
    Move the fan-out cursor past a materialized page.

    The update only applies while the stored cursor still equals
    `expected_cursor`, the one the page was read from.

    Returns:
        False when the broadcast left `pending` or another pass moved the
        cursor in the meantime
    """
    now = now or utc_now()

    conn = get_connection()
    try:
        with conn:
            cursor = conn.execute(
                """
                UPDATE notification_broadcasts
                SET cursor_last_doc_id = ?, total_enqueued = total_enqueued + ?, updated_at = ?
                WHERE id = ? AND status = 'pending' AND cursor_last_doc_id IS ?
                """,
                (last_recipient_id, enqueued, to_iso(now), broadcast_id, expected_cursor),
            )
            return cursor.rowcount == 1
    finally:
        conn.close()


async def set_broadcast_status(
    broadcast_id: str,
    status: BroadcastStatus,
    error: str | None = None,
    now: datetime | None = None,
    only_if_pending: bool = True,
) -> bool:
    """
    Transition a broadcast.

    Args:
        broadcast_id: Broadcast to update
        status: New status
        error: Recorded with `failed`
        now: Timestamp for updated_at/completed_at/cancelled_at
        only_if_pending: Require the current status to be `pending`

    Returns:
        True if the row changed
    """
    now = now or utc_now()
    assignments = ["status = ?", "updated_at = ?"]
    params: list = [status.value, to_iso(now)]

    if status == BroadcastStatus.COMPLETED:
        assignments.append("completed_at = ?")
        params.append(to_iso(now))
    elif status == BroadcastStatus.CANCELLED:
        assignments.append("cancelled_at = ?")
        params.append(to_iso(now))
    if error is not None:
        assignments.append("error = ?")
        params.append(error)

    query = f"UPDATE notification_broadcasts SET {', '.join(assignments)} WHERE id = ?"
    params.append(broadcast_id)
    if only_if_pending:
        query += " AND status = 'pending'"

    conn = get_connection()
    try:
        with conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount == 1
    finally:
        conn.close()


async def get_broadcast_status(broadcast_id: str) -> BroadcastStatus | None:
    """Current status only (None if the broadcast does not exist)."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT status FROM notification_broadcasts WHERE id = ?", (broadcast_id,)
        ).fetchone()
    finally:
        conn.close()

    return BroadcastStatus(row["status"]) if row else None
