"""
Tool: Delivery Processor
Purpose: Dispatch due, pending queue items through the push transport

Usage:
    from notify_router.delivery.processor import process_batch, process_item_by_id

    result = await process_batch(limit=100)
    # {"processed": 3, "sent": 2, "failed": 1, "skipped": 0, "paused": False, ...}

    result = await process_item_by_id("nq_0123456789abcdef", force=True)

Per item, in order:
    1. global / category kill switches        -> skipped
    2. cancelled broadcast                    -> skipped (recurrence stripped)
    3. blocked connect sender                 -> skipped
    4. missing type/title/body/recipient      -> failed (missing_fields)
    5. dedupe key sent within its window      -> skipped (deduped)
    6. connect cooldown                       -> skipped (rate_limited)
    7. no delivery token                      -> failed (no_token)
    8. transport send                         -> sent (+ next occurrence) / failed

Every item is claimed before it is examined and every transition is
conditional on that claim, so overlapping batches send each item once.
Delivery is at-least-once: a failed item is never resubmitted here.
"""

import uuid
from datetime import datetime

from notify_router.config import (
    EngineSettings,
    RouterConfig,
    clamp,
    load_router_config,
    load_settings,
)
from notify_router.delivery.policies import (
    check_connect_rate_limit,
    connect_cooldown_ms,
    disabled_scope,
    is_blocked_sender,
    is_deduped,
)
from notify_router.delivery.transport import PushTransport, get_transport
from notify_router.logging_config import get_logger, log_context
from notify_router.models import (
    BroadcastStatus,
    CampaignKind,
    DeliveryResult,
    ErrorCode,
    QueueItem,
    QueueStatus,
    SkipReason,
    utc_now,
)
from notify_router.queue.broadcasts import get_broadcast_status
from notify_router.queue.store import (
    claim_item,
    complete_sent,
    get_item,
    release_claim,
    select_due,
    transition,
)
from notify_router.recipients import evict_token, get_recipient
from notify_router.scheduling import build_next_occurrence, plan_next_occurrence

logger = get_logger(__name__)

TRIGGER_AUTO = "auto"
TRIGGER_MANUAL = "manual"

# Outcomes that never reached a transition of this caller's own
OUTCOME_CONTENDED = "contended"
OUTCOME_LOST = "lost"


def new_claim_id() -> str:
    return f"claim_{uuid.uuid4().hex[:12]}"


def _empty_counts(paused: bool = False) -> dict:
    return {
        "processed": 0,
        "sent": 0,
        "failed": 0,
        "skipped": 0,
        "contended": 0,
        "paused": paused,
    }


def pause_reason(config: RouterConfig, trigger: str = TRIGGER_AUTO) -> str | None:
    """Why processing must not run for this trigger, or None."""
    if not config.processing_enabled:
        return "processing_disabled"
    if trigger == TRIGGER_AUTO and not config.auto_cron_enabled:
        return "auto_cron_disabled"
    return None


async def _finish(
    item: QueueItem,
    claim_id: str,
    status: QueueStatus,
    now: datetime,
    strip_recurrence: bool = False,
    **fields,
) -> str:
    changed = await transition(
        item.id,
        status,
        claim_id=claim_id,
        strip_recurrence=strip_recurrence,
        now=now,
        **fields,
    )
    if not changed:
        logger.warning("queue_item_claim_lost", queue_id=item.id, target_status=status.value)
        return OUTCOME_LOST
    return status.value


async def _skip(item: QueueItem, claim_id: str, reason: SkipReason, now: datetime, **fields) -> str:
    strip = reason == SkipReason.BROADCAST_CANCELLED
    outcome = await _finish(
        item, claim_id, QueueStatus.SKIPPED, now,
        strip_recurrence=strip, skipped_reason=reason.value, **fields,
    )
    if outcome != OUTCOME_LOST:
        logger.info("queue_item_skipped", queue_id=item.id, reason=reason.value)
    return outcome


async def _fail(
    item: QueueItem,
    claim_id: str,
    now: datetime,
    error: str,
    error_code: str | None,
    retry_after_ms: int | None = None,
) -> str:
    outcome = await _finish(
        item, claim_id, QueueStatus.FAILED, now,
        error=error, error_code=error_code, retry_after_ms=retry_after_ms,
    )
    if outcome != OUTCOME_LOST:
        logger.warning(
            "queue_item_failed",
            queue_id=item.id,
            recipient_id=item.recipient_id,
            error_code=error_code,
            error=error,
        )
    return outcome


async def _send(
    item: QueueItem,
    token: str,
    transport: PushTransport,
) -> DeliveryResult:
    try:
        return await transport.send(token, item.title, item.body, item.to_push_data())
    except Exception as e:
        # A transport is expected to report problems as results
        logger.warning("transport_raised", queue_id=item.id, transport=transport.name, error=str(e))
        return DeliveryResult(
            success=False,
            error=f"Transport error: {str(e)}",
            error_code=ErrorCode.TRANSPORT_ERROR.value,
        )


async def _process_claimed(
    item: QueueItem,
    claim_id: str,
    config: RouterConfig,
    transport: PushTransport,
    now: datetime,
    bypass_checks: bool = False,
) -> str:
    scope = disabled_scope(item, config)
    if scope == SkipReason.GLOBAL_DISABLED or (scope and not bypass_checks):
        return await _skip(item, claim_id, scope, now)

    if item.campaign_kind == CampaignKind.BROADCAST and item.campaign_id:
        status = await get_broadcast_status(item.campaign_id)
        if status == BroadcastStatus.CANCELLED:
            return await _skip(item, claim_id, SkipReason.BROADCAST_CANCELLED, now)

    if not bypass_checks and is_blocked_sender(item, config):
        return await _skip(item, claim_id, SkipReason.BLOCKED_SENDER, now)

    missing = item.missing_fields()
    if missing:
        return await _fail(
            item, claim_id, now,
            error="Missing required fields (type/title/body/recipient_id)",
            error_code=ErrorCode.MISSING_FIELDS.value,
        )

    if not bypass_checks and await is_deduped(item):
        return await _skip(item, claim_id, SkipReason.DEDUPED, now)

    if not bypass_checks:
        cooldown = connect_cooldown_ms(item, config)
        if cooldown > 0:
            retry_after = await check_connect_rate_limit(
                item.sender_id, item.recipient_id, item.type, cooldown, now
            )
            if retry_after is not None:
                return await _skip(
                    item, claim_id, SkipReason.RATE_LIMITED, now, retry_after_ms=retry_after
                )

    recipient = await get_recipient(item.recipient_id)
    if recipient is None or not recipient.has_token():
        return await _fail(
            item, claim_id, now,
            error="Recipient has no delivery token",
            error_code=ErrorCode.NO_TOKEN.value,
        )

    result = await _send(item, recipient.delivery_token, transport)

    if not result.success:
        if result.should_unsubscribe:
            await evict_token(item.recipient_id, recipient.delivery_token)
        return await _fail(
            item, claim_id, now,
            error=result.error or "Push send failed",
            error_code=result.error_code
            or (ErrorCode.INVALID_TOKEN.value if result.should_unsubscribe else ErrorCode.TRANSPORT_ERROR.value),
            retry_after_ms=result.retry_after_ms,
        )

    next_item = None
    plan = plan_next_occurrence(item, now)
    if plan is not None:
        next_item = build_next_occurrence(item, plan, now)

    recorded = await complete_sent(item, claim_id, now, result.delivery_id, next_item)
    if not recorded:
        # Sent, but the row moved on (removed or lease expired) meanwhile
        logger.warning("queue_item_sent_without_claim", queue_id=item.id)
        return OUTCOME_LOST

    logger.info(
        "queue_item_sent",
        queue_id=item.id,
        recipient_id=item.recipient_id,
        delivery_id=result.delivery_id,
        next_occurrence=next_item.id if next_item else None,
    )
    return QueueStatus.SENT.value


async def process_item(
    item: QueueItem,
    config: RouterConfig,
    transport: PushTransport,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
    bypass_checks: bool = False,
    claim_id: str | None = None,
) -> str:
    """
    Claim and process one selected item.

    Returns:
        'sent', 'failed', 'skipped', 'contended' (another caller holds or
        already finished the item) or 'lost' (claim lost before the final
        transition)
    """
    settings = settings or load_settings()
    now = now or utc_now()
    claim_id = claim_id or new_claim_id()

    claimed = await claim_item(item.id, claim_id, now, settings.process.claim_timeout_seconds)
    if not claimed:
        return OUTCOME_CONTENDED

    with log_context(queue_id=item.id, claim_id=claim_id, campaign_id=item.campaign_id):
        try:
            return await _process_claimed(item, claim_id, config, transport, now, bypass_checks)
        except BaseException:
            await release_claim(item.id, claim_id)
            raise


def _count(counts: dict, outcome: str) -> None:
    if outcome == OUTCOME_CONTENDED:
        counts["contended"] += 1
        return
    counts["processed"] += 1
    if outcome in counts:
        counts[outcome] += 1


async def process_batch(
    limit: int | None = None,
    trigger: str = TRIGGER_AUTO,
    config: RouterConfig | None = None,
    transport: PushTransport | None = None,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Process due pending items in ascending scheduled order.

    Args:
        limit: Max items (clamped to 1..process.max_limit)
        trigger: 'auto' (periodic) or 'manual'; auto runs also honour
            autoCronEnabled
        config: RouterConfig (loaded when omitted)
        transport: PushTransport (built from settings when omitted)
        settings: EngineSettings (loaded when omitted)
        now: Reference instant

    Returns:
        {"processed", "sent", "failed", "skipped", "contended", "paused"}
        plus "reason" when paused
    """
    config = config or await load_router_config()
    settings = settings or load_settings()
    now = now or utc_now()

    reason = pause_reason(config, trigger)
    if reason:
        logger.info("processing_paused", reason=reason, trigger=trigger)
        return {**_empty_counts(paused=True), "reason": reason}

    limit = clamp(int(limit or settings.process.default_limit), 1, settings.process.max_limit)
    due = await select_due(now, limit, settings.process.claim_timeout_seconds)

    counts = _empty_counts()
    if not due:
        return counts

    owns_transport = transport is None
    transport = transport or get_transport(settings)
    try:
        for item in due:
            outcome = await process_item(item, config, transport, settings, now)
            _count(counts, outcome)
    finally:
        if owns_transport:
            await transport.close()

    logger.info("queue_batch_processed", trigger=trigger, **counts)
    return counts


async def process_item_by_id(
    queue_id: str,
    force: bool = True,
    bypass_checks: bool = False,
    config: RouterConfig | None = None,
    transport: PushTransport | None = None,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Manually send one named item.

    Args:
        queue_id: Item to send
        force: Send even if the item is not yet due
        bypass_checks: Also bypass category, dedupe, blocked-sender and
            cooldown checks (never the global or processing switches)

    Returns:
        {"success": bool, "paused": bool, "processed", "sent", "failed",
         "skipped", "outcome", "message"}
    """
    config = config or await load_router_config()
    settings = settings or load_settings()
    now = now or utc_now()

    def result(success: bool, message: str | None = None, outcome: str | None = None, paused=False):
        counts = _empty_counts(paused=paused)
        if outcome:
            _count(counts, outcome)
        counts.pop("contended")
        return {"success": success, **counts, "outcome": outcome, "message": message}

    if not config.global_enabled:
        return result(False, "Notifications are paused (globalEnabled)", paused=True)
    if not config.processing_enabled:
        return result(False, "Notifications are paused (processingEnabled)", paused=True)

    item = await get_item(queue_id)
    if item is None:
        return result(False, "Queue item not found")

    if item.status != QueueStatus.PENDING:
        return result(False, f"Queue item is not pending (status={item.status.value})")

    if not force and item.scheduled_at > now:
        return result(False, "Queue item is scheduled in the future (use force=true)")

    owns_transport = transport is None
    transport = transport or get_transport(settings)
    try:
        outcome = await process_item(item, config, transport, settings, now, bypass_checks)
    finally:
        if owns_transport:
            await transport.close()

    if outcome == OUTCOME_CONTENDED:
        return result(False, "Queue item is being processed by another run")

    logger.info("queue_item_manual_send", queue_id=queue_id, outcome=outcome, force=force)
    return result(outcome != OUTCOME_LOST, outcome=outcome, message=outcome)
