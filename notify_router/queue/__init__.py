"""Queue items and broadcasts: storage, conditional transitions, direct enqueue."""

from notify_router.queue.store import (
    claim_item,
    complete_sent,
    get_item,
    get_queue_stats,
    insert_items,
    list_items,
    remove_item,
    select_due,
    skip_campaign_items,
    transition,
)
from notify_router.queue.broadcasts import (
    advance_cursor,
    create_broadcast,
    get_broadcast,
    list_broadcasts,
    list_pending_broadcasts,
    set_broadcast_status,
)

__all__ = [
    "claim_item",
    "complete_sent",
    "get_item",
    "get_queue_stats",
    "insert_items",
    "list_items",
    "remove_item",
    "select_due",
    "skip_campaign_items",
    "transition",
    "advance_cursor",
    "create_broadcast",
    "get_broadcast",
    "list_broadcasts",
    "list_pending_broadcasts",
    "set_broadcast_status",
]
