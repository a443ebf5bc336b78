"""Notify Router: scheduled push notification delivery engine

Philosophy:
    Every notification is a row. Scheduling, fan-out and delivery are discrete
    batch calls that can be interrupted and re-run at any time; progress lives
    in the rows themselves (status, cursor, claim), never in a running process.

Components:
    scheduling/: Local wall-clock resolution and recurrence rules (pure)
    queue/: Queue item and broadcast data access, direct enqueue
    broadcast/: Cursor-based broadcast fan-out and cancellation
    delivery/: Due-item processing and the push transport
    engagement: Automatic intro/recurring schedules for new recipients
    cycle: The externally triggered expansion + processing run

Database: data/notifications.db
    - notification_queue: One row per scheduled/delivered occurrence
    - notification_broadcasts: Fan-out job definitions and their cursor
    - recipients: Recipient directory (delivery token, UTC offset)
    - notification_config: Persisted RouterConfig document
    - notification_dedupe: Last effective send per dedupe key
    - connect_rate_limits: Last send per (sender, recipient, type)
"""

import os
import sqlite3
from pathlib import Path


# Path constants
PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_ROOT / "args"
DATA_PATH = PROJECT_ROOT / "data"
DB_PATH = Path(os.environ.get("NOTIFY_ROUTER_DB_PATH", str(DATA_PATH / "notifications.db")))

__version__ = "0.4.0"


def get_connection() -> sqlite3.Connection:
    """
    Get database connection, creating tables if needed.

    Returns:
        SQLite connection with row_factory set
    """
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=30)
    conn.row_factory = sqlite3.Row

    cursor = conn.cursor()

    # Queue items (one row per occurrence)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notification_queue (
            id TEXT PRIMARY KEY,
            category TEXT,
            type TEXT,
            title TEXT,
            body TEXT,
            data TEXT,
            recipient_id TEXT,
            sender_id TEXT,
            sender_name TEXT,
            sender_avatar TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            scheduled_at TEXT NOT NULL,
            tz_offset_minutes INTEGER DEFAULT 0,
            hour INTEGER,
            minute INTEGER,
            repeat TEXT,
            interval_days INTEGER,
            days_of_week TEXT,
            remaining_occurrences INTEGER,
            end_at TEXT,
            occurrence INTEGER NOT NULL DEFAULT 0,
            campaign_kind TEXT,
            campaign_id TEXT,
            dedupe_key TEXT,
            dedupe_window_ms INTEGER DEFAULT 0,
            claimed_by TEXT,
            claimed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            last_sent_at TEXT,
            sent_at TEXT,
            removed_at TEXT,
            delivery_id TEXT,
            error TEXT,
            error_code TEXT,
            skipped_reason TEXT,
            retry_after_ms INTEGER
        )
    """)

    # Broadcast definitions
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notification_broadcasts (
            id TEXT PRIMARY KEY,
            status TEXT NOT NULL DEFAULT 'pending',
            category TEXT,
            type TEXT,
            title TEXT,
            body TEXT,
            data TEXT,
            sender_id TEXT,
            sender_name TEXT,
            sender_avatar TEXT,
            schedule TEXT,
            recurrence TEXT,
            batch_size INTEGER,
            cursor_last_doc_id TEXT,
            total_enqueued INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT,
            cancelled_at TEXT
        )
    """)

    # Recipient directory
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS recipients (
            id TEXT PRIMARY KEY,
            delivery_token TEXT,
            tz_offset_minutes INTEGER,
            signed_up_at TEXT NOT NULL,
            token_updated_at TEXT,
            token_invalidated_at TEXT,
            engagement_first_time_scheduled INTEGER DEFAULT 0,
            engagement_recurring_scheduled INTEGER DEFAULT 0
        )
    """)

    # Router configuration document (singleton row)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notification_config (
            id TEXT PRIMARY KEY,
            document TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        )
    """)

    # Last effective send per dedupe key
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notification_dedupe (
            dedupe_key TEXT PRIMARY KEY,
            sent_at TEXT NOT NULL,
            queue_id TEXT,
            recipient_id TEXT
        )
    """)

    # Connect cooldowns
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS connect_rate_limits (
            sender_id TEXT NOT NULL,
            recipient_id TEXT NOT NULL,
            type TEXT NOT NULL,
            last_sent_at TEXT NOT NULL,
            PRIMARY KEY (sender_id, recipient_id, type)
        )
    """)

    # Indexes for efficient queries
    cursor.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_dedupe_occurrence "
        "ON notification_queue(dedupe_key, occurrence)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_status_scheduled "
        "ON notification_queue(status, scheduled_at)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_campaign "
        "ON notification_queue(campaign_kind, campaign_id, status)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_broadcasts_status "
        "ON notification_broadcasts(status, created_at)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_recipients_signup "
        "ON recipients(signed_up_at, id)"
    )

    conn.commit()
    return conn
