"""Broadcast fan-out: cursor-based expansion and cancellation."""

from notify_router.broadcast.cancel import cancel_broadcast, purge_broadcast
from notify_router.broadcast.expander import expand_broadcast, expand_broadcasts

__all__ = [
    "cancel_broadcast",
    "purge_broadcast",
    "expand_broadcast",
    "expand_broadcasts",
]
