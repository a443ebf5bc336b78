"""
Tool: Queue Item Store
Purpose: Persisted delivery jobs with conditional, per-row state transitions

Usage:
    from notify_router.queue.store import (
        insert_items,
        get_item,
        list_items,
        select_due,
        claim_item,
        transition,
        complete_sent,
        skip_campaign_items,
        remove_item,
        get_queue_stats,
    )

Every status change is a single `UPDATE ... WHERE status = 'pending'` so two
overlapping batches can never both move the same row. Processing claims a
row first (claimed_by/claimed_at); a claim older than the claim timeout is
treated as abandoned and may be taken over.
"""

from datetime import datetime, timedelta
from typing import Any

from notify_router import get_connection
from notify_router.logging_config import get_logger
from notify_router.models import (
    CampaignKind,
    QueueItem,
    QueueStatus,
    to_iso,
    utc_now,
)

logger = get_logger(__name__)

DEFAULT_WRITE_BATCH_SIZE = 400
MAX_LIST_LIMIT = 200

_COLUMNS = (
    "id", "category", "type", "title", "body", "data", "recipient_id",
    "sender_id", "sender_name", "sender_avatar", "status", "scheduled_at",
    "tz_offset_minutes", "hour", "minute", "repeat", "interval_days",
    "days_of_week", "remaining_occurrences", "end_at", "occurrence",
    "campaign_kind", "campaign_id", "dedupe_key", "dedupe_window_ms",
    "claimed_by", "claimed_at", "created_at", "updated_at", "last_sent_at",
    "sent_at", "removed_at", "delivery_id", "error", "error_code",
    "skipped_reason", "retry_after_ms",
)

# Columns a re-run of the same write may refresh while the row is still pending
_MERGE_COLUMNS = (
    "category", "type", "title", "body", "data", "sender_id", "sender_name",
    "sender_avatar", "scheduled_at", "tz_offset_minutes", "hour", "minute",
    "repeat", "interval_days", "days_of_week", "remaining_occurrences",
    "end_at", "dedupe_window_ms",
)

# Columns `transition` may set alongside the status
_TRANSITION_COLUMNS = {
    "error", "error_code", "skipped_reason", "retry_after_ms", "sent_at",
    "last_sent_at", "removed_at", "delivery_id",
}

_STRIP_RECURRENCE_SQL = (
    "repeat = NULL, interval_days = NULL, days_of_week = NULL, "
    "remaining_occurrences = NULL, end_at = NULL"
)

_INSERT_SQL = (
    f"INSERT INTO notification_queue ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)}) "
    "ON CONFLICT(dedupe_key, occurrence) DO UPDATE SET "
    + ", ".join(f"{col} = excluded.{col}" for col in _MERGE_COLUMNS)
    + ", updated_at = excluded.updated_at "
    "WHERE notification_queue.status = 'pending'"
)


def _row(item: QueueItem) -> tuple:
    stored = item.to_dict()
    return tuple(stored[col] for col in _COLUMNS)


def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _claim_cutoff(now: datetime, claim_timeout_seconds: int) -> str:
    return to_iso(now - timedelta(seconds=claim_timeout_seconds))


async def insert_items(
    items: list[QueueItem],
    write_batch_size: int = DEFAULT_WRITE_BATCH_SIZE,
) -> dict:
    """
    Write queue items in bounded batches.

    Rows whose (dedupe_key, occurrence) already exists are merged instead of
    duplicated, and only while they are still pending; a row that was already
    sent, failed or skipped is left untouched.

    Returns:
        {"created": int, "merged": int}
    """
    created = 0
    merged = 0
    if not items:
        return {"created": 0, "merged": 0}

    conn = get_connection()
    try:
        for chunk in _chunks(items, write_batch_size):
            keyed = [(i.dedupe_key, i.occurrence) for i in chunk if i.dedupe_key]
            existing: set[tuple[str, int]] = set()
            if keyed:
                placeholders = ", ".join("(?, ?)" for _ in keyed)
                params = [value for pair in keyed for value in pair]
                rows = conn.execute(
                    f"""
                    SELECT dedupe_key, occurrence FROM notification_queue
                    WHERE (dedupe_key, occurrence) IN (VALUES {placeholders})
                    """,
                    params,
                ).fetchall()
                existing = {(row["dedupe_key"], row["occurrence"]) for row in rows}

            with conn:
                conn.executemany(
                    _INSERT_SQL,
                    [_row(item) for item in chunk],
                )

            chunk_merged = sum(
                1 for i in chunk if i.dedupe_key and (i.dedupe_key, i.occurrence) in existing
            )
            merged += chunk_merged
            created += len(chunk) - chunk_merged
    finally:
        conn.close()

    return {"created": created, "merged": merged}


async def get_item(queue_id: str) -> QueueItem | None:
    """Point lookup by id."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT * FROM notification_queue WHERE id = ?", (queue_id,)
        ).fetchone()
    finally:
        conn.close()

    return QueueItem.from_dict(dict(row)) if row else None


async def list_items(
    status: str = "pending",
    limit: int = 50,
    cursor: str | None = None,
) -> dict:
    """
    Page through queue items ordered by scheduled time.

    Args:
        status: 'pending', 'sent', 'failed', 'skipped' or 'all'
        limit: Page size (1-200)
        cursor: Id of the last item of the previous page

    Returns:
        {"items": list[QueueItem], "next_cursor": str | None}
    """
    limit = min(max(int(limit), 1), MAX_LIST_LIMIT)
    if status != "all":
        QueueStatus(status)

    conn = get_connection()
    try:
        query = "SELECT * FROM notification_queue WHERE 1=1"
        params: list[Any] = []

        if status != "all":
            query += " AND status = ?"
            params.append(status)

        if cursor:
            last = conn.execute(
                "SELECT scheduled_at, id FROM notification_queue WHERE id = ?", (cursor,)
            ).fetchone()
            if last:
                query += " AND (scheduled_at > ? OR (scheduled_at = ? AND id > ?))"
                params.extend([last["scheduled_at"], last["scheduled_at"], last["id"]])

        query += " ORDER BY scheduled_at ASC, id ASC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()

    items = [QueueItem.from_dict(dict(row)) for row in rows]
    next_cursor = items[-1].id if len(items) == limit else None
    return {"items": items, "next_cursor": next_cursor}


async def select_due(
    now: datetime,
    limit: int,
    claim_timeout_seconds: int = 300,
) -> list[QueueItem]:
    """Pending, unclaimed items due at `now`, oldest schedule first."""
    conn = get_connection()
    try:
        rows = conn.execute(
            """
            SELECT * FROM notification_queue
            WHERE status = 'pending'
            AND scheduled_at <= ?
            AND (claimed_by IS NULL OR claimed_at < ?)
            ORDER BY scheduled_at ASC, id ASC
            LIMIT ?
            """,
            (to_iso(now), _claim_cutoff(now, claim_timeout_seconds), limit),
        ).fetchall()
    finally:
        conn.close()

    return [QueueItem.from_dict(dict(row)) for row in rows]


async def claim_item(
    queue_id: str,
    claim_id: str,
    now: datetime,
    claim_timeout_seconds: int = 300,
) -> bool:
    """
    Take the processing claim on a pending item.

    Returns:
        True if this caller now owns the item, False if it is no longer
        pending or another live claim holds it
    """
    conn = get_connection()
    try:
        with conn:
            cursor = conn.execute(
                """
                UPDATE notification_queue
                SET claimed_by = ?, claimed_at = ?
                WHERE id = ? AND status = 'pending'
                AND (claimed_by IS NULL OR claimed_at < ?)
                """,
                (claim_id, to_iso(now), queue_id, _claim_cutoff(now, claim_timeout_seconds)),
            )
            return cursor.rowcount == 1
    finally:
        conn.close()


async def release_claim(queue_id: str, claim_id: str) -> None:
    """Drop a claim without changing status (item stays pending)."""
    conn = get_connection()
    try:
        with conn:
            conn.execute(
                """
                UPDATE notification_queue SET claimed_by = NULL, claimed_at = NULL
                WHERE id = ? AND claimed_by = ?
                """,
                (queue_id, claim_id),
            )
    finally:
        conn.close()


def _transition_sql(
    fields: dict[str, Any],
    strip_recurrence: bool,
    claim_id: str | None,
) -> tuple[str, list[Any]]:
    unknown = set(fields) - _TRANSITION_COLUMNS
    if unknown:
        raise ValueError(f"Cannot set columns on transition: {sorted(unknown)}")

    assignments = ["status = ?", "updated_at = ?", "claimed_by = NULL", "claimed_at = NULL"]
    values: list[Any] = []
    for column, value in fields.items():
        assignments.append(f"{column} = ?")
        values.append(to_iso(value) if isinstance(value, datetime) else value)
    if strip_recurrence:
        assignments.append(_STRIP_RECURRENCE_SQL)

    where = "id = ? AND status = 'pending'"
    if claim_id is not None:
        where += " AND claimed_by = ?"

    return f"UPDATE notification_queue SET {', '.join(assignments)} WHERE {where}", values


async def transition(
    queue_id: str,
    status: QueueStatus,
    claim_id: str | None = None,
    strip_recurrence: bool = False,
    now: datetime | None = None,
    **fields: Any,
) -> bool:
    """
    Move a pending item to a terminal status.

    Conditional on the item still being pending (and, with `claim_id`, still
    claimed by this caller).

    Returns:
        True if the row changed, False if another caller got there first
    """
    now = now or utc_now()
    sql, values = _transition_sql(fields, strip_recurrence, claim_id)
    params = [status.value, to_iso(now), *values, queue_id]
    if claim_id is not None:
        params.append(claim_id)

    conn = get_connection()
    try:
        with conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount == 1
    finally:
        conn.close()


async def complete_sent(
    item: QueueItem,
    claim_id: str | None,
    now: datetime,
    delivery_id: str | None = None,
    next_item: QueueItem | None = None,
) -> bool:
    """
    Record a successful send in one transaction.

    Marks the row sent, stamps the dedupe key's last send, and inserts the
    next occurrence when there is one. Nothing is written unless the row was
    still pending and held by `claim_id`.
    """
    sql, values = _transition_sql(
        {"sent_at": now, "last_sent_at": now, "delivery_id": delivery_id},
        strip_recurrence=False,
        claim_id=claim_id,
    )
    params = [QueueStatus.SENT.value, to_iso(now), *values, item.id]
    if claim_id is not None:
        params.append(claim_id)

    conn = get_connection()
    try:
        with conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount != 1:
                return False

            if item.dedupe_key:
                conn.execute(
                    """
                    INSERT INTO notification_dedupe (dedupe_key, sent_at, queue_id, recipient_id)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(dedupe_key) DO UPDATE SET
                        sent_at = excluded.sent_at,
                        queue_id = excluded.queue_id,
                        recipient_id = excluded.recipient_id
                    """,
                    (item.dedupe_key, to_iso(now), item.id, item.recipient_id),
                )

            if next_item is not None:
                conn.execute(
                    f"INSERT INTO notification_queue ({', '.join(_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in _COLUMNS)}) "
                    "ON CONFLICT(dedupe_key, occurrence) DO NOTHING",
                    _row(next_item),
                )
            return True
    finally:
        conn.close()


async def last_dedupe_send(dedupe_key: str) -> dict | None:
    """Most recent effective send recorded for a dedupe key."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT * FROM notification_dedupe WHERE dedupe_key = ?", (dedupe_key,)
        ).fetchone()
    finally:
        conn.close()

    return dict(row) if row else None


async def skip_campaign_items(
    campaign_id: str,
    reason: str,
    chunk_size: int = DEFAULT_WRITE_BATCH_SIZE,
    now: datetime | None = None,
) -> int:
    """
    Skip every still-pending item of a broadcast and strip its recurrence.

    Runs in bounded chunks until no pending item is left. Items already
    sent, failed or skipped are never touched.

    Returns:
        Number of items transitioned
    """
    now = now or utc_now()
    total = 0

    conn = get_connection()
    try:
        while True:
            with conn:
                cursor = conn.execute(
                    f"""
                    UPDATE notification_queue
                    SET status = 'skipped', skipped_reason = ?, updated_at = ?,
                        claimed_by = NULL, claimed_at = NULL, {_STRIP_RECURRENCE_SQL}
                    WHERE id IN (
                        SELECT id FROM notification_queue
                        WHERE campaign_kind = ? AND campaign_id = ? AND status = 'pending'
                        ORDER BY scheduled_at ASC
                        LIMIT ?
                    )
                    AND status = 'pending'
                    """,
                    (reason, to_iso(now), CampaignKind.BROADCAST.value, campaign_id, chunk_size),
                )
                changed = cursor.rowcount
            total += changed
            if changed < chunk_size:
                break
    finally:
        conn.close()

    if total:
        logger.info("campaign_items_skipped", campaign_id=campaign_id, reason=reason, count=total)
    return total


async def remove_item(
    queue_id: str,
    reason: str = "manual_removed",
    now: datetime | None = None,
) -> dict:
    """
    Manually skip a pending item and strip its recurrence fields.

    Returns:
        {"success": True} or {"success": False, "error": str}
    """
    now = now or utc_now()
    item = await get_item(queue_id)
    if item is None:
        return {"success": False, "error": "Queue item not found"}

    changed = await transition(
        queue_id,
        QueueStatus.SKIPPED,
        strip_recurrence=True,
        now=now,
        skipped_reason=reason,
        removed_at=now,
    )
    if not changed:
        return {
            "success": False,
            "error": f"Queue item is not pending (status={item.status.value})",
        }

    logger.info("queue_item_removed", queue_id=queue_id, reason=reason)
    return {"success": True}


async def get_queue_stats() -> dict:
    """
    Count queue items per status.

    Returns:
        {"pending": int, "sent": int, "failed": int, "skipped": int, "total": int}
    """
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT status, COUNT(*) AS count FROM notification_queue GROUP BY status"
        ).fetchall()
    finally:
        conn.close()

    stats = {status.value: 0 for status in QueueStatus}
    for row in rows:
        stats[row["status"]] = row["count"]
    stats["total"] = sum(stats.values())
    return stats
