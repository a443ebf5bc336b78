"""Delivery: due-item processing, pre-send policies and push transports."""

from notify_router.delivery.processor import (
    process_batch,
    process_item,
    process_item_by_id,
)
from notify_router.delivery.transport import PushTransport, get_transport

__all__ = [
    "process_batch",
    "process_item",
    "process_item_by_id",
    "PushTransport",
    "get_transport",
]
