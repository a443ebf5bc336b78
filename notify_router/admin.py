"""
Tool: Notification Admin
Purpose: Privileged operation set over queue items, broadcasts and config

Usage:
    from notify_router.admin import NotificationAdmin
    from notify_router.permissions import GrantPermissionGate

    admin = NotificationAdmin(GrantPermissionGate({"alice": ["notifications:*"]}))
    await admin.create_notification("alice", {
        "title": "Hello",
        "body": "World",
        "type": "admin_message",
        "audience": {"mode": "all"},
        "schedule": {"mode": "at_user_local", "hour": 8, "minute": 0},
        "recurrence": {"mode": "daily"},
    })

Every method checks the permission gate first; a denial returns
{"success": False, "error": "forbidden"} with nothing read or written.
Validation problems also come back as result dicts, never as exceptions.
"""

from typing import Any

from notify_router.broadcast.cancel import cancel_broadcast
from notify_router.config import (
    EngineSettings,
    clamp,
    load_router_config,
    load_settings,
    save_router_config,
)
from notify_router.cycle import run_cycle
from notify_router.delivery.processor import TRIGGER_MANUAL, process_item_by_id
from notify_router.delivery.transport import PushTransport
from notify_router.logging_config import get_logger
from notify_router.models import (
    Broadcast,
    BroadcastStatus,
    QueueStatus,
    Recurrence,
    Schedule,
    SkipReason,
    utc_now,
)
from notify_router.permissions import (
    ACTION_MANAGE,
    ACTION_READ,
    RESOURCE_NOTIFICATIONS,
    PermissionGate,
)
from notify_router.queue.broadcasts import (
    create_broadcast,
    get_broadcast,
    list_broadcasts,
    set_broadcast_status,
)
from notify_router.queue.enqueue import (
    enqueue_for_recipients,
    validate_content,
    validate_schedule,
)
from notify_router.queue.store import get_queue_stats, list_items, remove_item

logger = get_logger(__name__)

FORBIDDEN = {"success": False, "error": "forbidden"}

QUEUE_STATUS_FILTERS = {"pending", "sent", "failed", "skipped", "all"}


def _parse_rules(payload: dict[str, Any]) -> tuple[Schedule | None, Recurrence | None, str | None]:
    """Schedule and recurrence from a request payload, or an error message."""
    try:
        schedule = Schedule.from_dict(payload["schedule"]) if payload.get("schedule") else None
        recurrence = Recurrence.from_dict(payload.get("recurrence"))
    except (TypeError, ValueError) as e:
        return None, None, f"Invalid schedule or recurrence: {e}"
    return schedule, recurrence, None


class NotificationAdmin:
    """Admin-facing operations guarded by a PermissionGate."""

    def __init__(
        self,
        gate: PermissionGate,
        settings: EngineSettings | None = None,
        transport: PushTransport | None = None,
    ):
        self.gate = gate
        self.settings = settings or load_settings()
        self.transport = transport

    def _allowed(self, subject: str | None, action: str, target_id: str | None = None) -> bool:
        return self.gate.authorized(subject, RESOURCE_NOTIFICATIONS, action, target_id)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_notification(self, subject: str | None, payload: dict[str, Any]) -> dict:
        """
        Create a broadcast (audience "all") or per-user queue items
        (audience "users").

        Returns:
            {"success": True, "mode": "broadcast", "broadcast_id": str}
            {"success": True, "mode": "users", "created": int, "queue_ids": list}
            or {"success": False, "error": str}
        """
        if not self._allowed(subject, ACTION_MANAGE):
            return FORBIDDEN

        config = await load_router_config()
        if not config.global_enabled:
            return {"success": False, "error": "Notifications are globally disabled"}

        title = str(payload.get("title") or "").strip()
        body = str(payload.get("body") or "").strip()
        type = str(payload.get("type") or "").strip()
        error = validate_content(title, body, type)
        if error:
            return {"success": False, "error": error}

        audience = payload.get("audience")
        if not isinstance(audience, dict) or audience.get("mode") not in ("users", "all"):
            return {"success": False, "error": "audience is required"}

        schedule, recurrence, error = _parse_rules(payload)
        error = error or validate_schedule(schedule)
        if error:
            return {"success": False, "error": error}

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        category = str(payload.get("category") or "admin")
        sender = {
            "sender_id": payload.get("sender_id"),
            "sender_name": str(payload.get("sender_name") or "").strip() or "Admin",
            "sender_avatar": str(payload.get("sender_avatar") or "").strip() or None,
        }

        if audience["mode"] == "all":
            batch_size = payload.get("batch_size", payload.get("batchSize"))
            bounds = self.settings.broadcast
            broadcast = Broadcast(
                id=Broadcast.generate_id(),
                category=category,
                type=type,
                title=title,
                body=body,
                data=data,
                schedule=schedule,
                recurrence=recurrence,
                batch_size=(
                    clamp(int(batch_size), bounds.min_batch_size, bounds.max_batch_size)
                    if isinstance(batch_size, int)
                    else bounds.default_batch_size
                ),
                **sender,
            )
            await create_broadcast(broadcast)
            logger.info("broadcast_created", broadcast_id=broadcast.id, subject=subject)
            return {"success": True, "mode": "broadcast", "broadcast_id": broadcast.id}

        user_ids = audience.get("user_ids", audience.get("userIds")) or []
        result = await enqueue_for_recipients(
            recipient_ids=list(user_ids),
            title=title,
            body=body,
            type=type,
            schedule=schedule,
            recurrence=recurrence,
            category=category,
            data=data,
            config=config,
            settings=self.settings,
            **sender,
        )
        if not result["success"]:
            return result
        return {"success": True, "mode": "users", **{k: v for k, v in result.items() if k != "success"}}

    # -------------------------------------------------------------------------
    # Queue items
    # -------------------------------------------------------------------------

    async def list_queue(
        self,
        subject: str | None,
        status: str = "pending",
        limit: int = 50,
        cursor: str | None = None,
    ) -> dict:
        """Queue items filtered by status, paginated by cursor."""
        if not self._allowed(subject, ACTION_READ):
            return FORBIDDEN

        status = (status or "pending").lower()
        if status not in QUEUE_STATUS_FILTERS:
            return {"success": False, "error": "Invalid status filter"}

        page = await list_items(status=status, limit=limit, cursor=cursor)
        return {
            "success": True,
            "items": [item.to_public_dict() for item in page["items"]],
            "next_cursor": page["next_cursor"],
        }

    async def remove_queue_item(
        self,
        subject: str | None,
        queue_id: str,
        reason: str | None = None,
    ) -> dict:
        """Manually skip a pending item; its recurrence is stripped."""
        if not self._allowed(subject, ACTION_MANAGE, queue_id):
            return FORBIDDEN

        reason = (reason or "").strip() or SkipReason.MANUAL_REMOVED.value
        return await remove_item(queue_id, reason=reason)

    async def update_queue_item(self, subject: str | None, queue_id: str, patch: dict) -> dict:
        """Patch one item's status; only a manual skip is accepted."""
        status = patch.get("status", QueueStatus.SKIPPED.value)
        if status != QueueStatus.SKIPPED.value:
            if not self._allowed(subject, ACTION_MANAGE, queue_id):
                return FORBIDDEN
            return {"success": False, "error": "Only status 'skipped' can be set manually"}
        return await self.remove_queue_item(subject, queue_id, patch.get("reason"))

    async def send_queue_item(
        self,
        subject: str | None,
        queue_id: str,
        force: bool = True,
        bypass_checks: bool = False,
    ) -> dict:
        """Force-send one item now."""
        if not self._allowed(subject, ACTION_MANAGE, queue_id):
            return FORBIDDEN

        return await process_item_by_id(
            queue_id,
            force=force,
            bypass_checks=bypass_checks,
            transport=self.transport,
            settings=self.settings,
        )

    # -------------------------------------------------------------------------
    # Broadcasts
    # -------------------------------------------------------------------------

    async def list_broadcasts(self, subject: str | None, limit: int = 50) -> dict:
        if not self._allowed(subject, ACTION_READ):
            return FORBIDDEN

        broadcasts = await list_broadcasts(limit)
        return {"success": True, "broadcasts": [b.to_public_dict() for b in broadcasts]}

    async def update_broadcast_status(
        self,
        subject: str | None,
        broadcast_id: str,
        status: str,
    ) -> dict:
        """
        Set a broadcast's status. Cancelling also purges its pending items.
        Terminal broadcasts cannot change status.
        """
        if not self._allowed(subject, ACTION_MANAGE, broadcast_id):
            return FORBIDDEN

        try:
            target = BroadcastStatus(str(status or ""))
        except ValueError:
            return {"success": False, "error": "Invalid status"}

        if target == BroadcastStatus.CANCELLED:
            return await cancel_broadcast(broadcast_id, settings=self.settings)

        broadcast = await get_broadcast(broadcast_id)
        if broadcast is None:
            return {"success": False, "error": "Broadcast not found"}
        if broadcast.status == target:
            return {"success": True}
        if broadcast.is_terminal() or target == BroadcastStatus.PENDING:
            return {"success": False, "error": f"Broadcast is already {broadcast.status.value}"}

        changed = await set_broadcast_status(broadcast_id, target, now=utc_now())
        if not changed:
            return {"success": False, "error": "Broadcast is no longer pending"}
        logger.info("broadcast_status_set", broadcast_id=broadcast_id, status=target.value)
        return {"success": True}

    async def cancel_broadcast(self, subject: str | None, broadcast_id: str) -> dict:
        return await self.update_broadcast_status(subject, broadcast_id, BroadcastStatus.CANCELLED.value)

    # -------------------------------------------------------------------------
    # Cycle, config, stats
    # -------------------------------------------------------------------------

    async def run_cycle(self, subject: str | None, task: str = "all", limit: int | None = None) -> dict:
        """Run the cycle on demand (manual trigger)."""
        if not self._allowed(subject, ACTION_MANAGE):
            return FORBIDDEN

        return await run_cycle(
            task=task,
            limit=limit,
            trigger=TRIGGER_MANUAL,
            settings=self.settings,
            transport=self.transport,
        )

    async def get_config(self, subject: str | None) -> dict:
        if not self._allowed(subject, ACTION_READ):
            return FORBIDDEN

        config = await load_router_config()
        return {"success": True, "config": config.to_document(), "version": config.version}

    async def update_config(self, subject: str | None, patch: dict[str, Any]) -> dict:
        if not self._allowed(subject, ACTION_MANAGE):
            return FORBIDDEN

        result = await save_router_config(patch)
        if result["success"]:
            logger.info("router_config_updated", subject=subject, version=result["version"])
        return result

    async def get_stats(self, subject: str | None) -> dict:
        """Queue counts per status plus the kill-switch summary."""
        if not self._allowed(subject, ACTION_READ):
            return FORBIDDEN

        stats = await get_queue_stats()
        config = await load_router_config()
        return {"success": True, "stats": stats, "config_summary": config.summary()}
