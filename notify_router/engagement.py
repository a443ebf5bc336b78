"""
Tool: Engagement Scheduler
Purpose: Create intro and recurring reminder schedules for new recipients

Usage:
    from notify_router.engagement import ensure_engagement_schedules

    result = await ensure_engagement_schedules(limit=200)
    # {"scanned": 12, "scheduled": 3, "items_created": 27, "disabled": False}

Once per recipient:
    first-time  a welcome message shortly after the run, plus one intro per
                feature at the feature's next local time. Dedupe window of
                ten years makes each intro a send-once.
    recurring   one reminder per feature at its local time following the
                feature's recurrence rule. Dedupe window of two minutes only
                absorbs overlapping runs.

Flags on the recipient row record that each set was created.
"""

from datetime import datetime, timedelta

from notify_router.config import (
    ENGAGEMENT_FEATURES,
    EngineSettings,
    RouterConfig,
    load_router_config,
    load_settings,
)
from notify_router.logging_config import get_logger
from notify_router.models import (
    QueueItem,
    Recipient,
    Recurrence,
    Schedule,
    ScheduleMode,
    utc_now,
)
from notify_router.queue.store import insert_items
from notify_router.recipients import mark_engagement_scheduled, recent_recipients_with_token
from notify_router.scheduling import recurrence_fields, resolve_schedule

logger = get_logger(__name__)

ENGAGEMENT_CATEGORY = "engagement"

# Notification type sent for each feature (drives client navigation)
FEATURE_TYPES = {
    "water": "water_general",
    "daily_checkin": "wellsphere_general",
    "mood": "mindscape_mood",
    "meal_tracking": "nutrition_general",
    "journal": "mindscape_journal",
    "gratitude": "mindscape_gratitude",
}

WELCOME_ID = "welcome_intro"
WELCOME_TYPE = "app_home"
WELCOME_TITLE = "Welcome!"
WELCOME_BODY = "Let's build healthy habits together. We'll introduce you to some amazing features!"


def _intro_items(
    recipient: Recipient,
    config: RouterConfig,
    settings: EngineSettings,
    now: datetime,
) -> list[QueueItem]:
    engagement = config.engagement
    offset = recipient.offset_minutes
    window = settings.dedupe.intro_window_ms

    def item(intro_id: str, type: str, title: str, body: str, at: datetime, **extra) -> QueueItem:
        return QueueItem(
            id=QueueItem.generate_id(),
            recipient_id=recipient.id,
            scheduled_at=at,
            category=ENGAGEMENT_CATEGORY,
            type=type,
            title=title,
            body=body,
            tz_offset_minutes=offset,
            dedupe_key=f"intro:{recipient.id}:{intro_id}",
            dedupe_window_ms=window,
            created_at=now,
            updated_at=now,
            **extra,
        )

    items = [
        item(
            WELCOME_ID,
            WELCOME_TYPE,
            WELCOME_TITLE,
            WELCOME_BODY,
            now + timedelta(seconds=settings.engagement.welcome_delay_seconds),
        )
    ]

    for feature in ENGAGEMENT_FEATURES:
        template = engagement.templates.intro.get(feature)
        local = engagement.schedule.get(feature)
        if template is None or local is None:
            continue
        schedule = Schedule(mode=ScheduleMode.AT_USER_LOCAL, hour=local.hour, minute=local.minute)
        items.append(
            item(
                f"{feature}_intro",
                FEATURE_TYPES[feature],
                template.title,
                template.body,
                resolve_schedule(schedule, now, offset),
                hour=local.hour,
                minute=local.minute,
            )
        )
    return items


def _recurring_items(
    recipient: Recipient,
    config: RouterConfig,
    settings: EngineSettings,
    now: datetime,
) -> list[QueueItem]:
    engagement = config.engagement
    offset = recipient.offset_minutes
    items = []

    for feature in ENGAGEMENT_FEATURES:
        template = engagement.templates.recurring.get(feature)
        local = engagement.schedule.get(feature)
        rule = engagement.recurring_rules.get(feature)
        if template is None or local is None or rule is None:
            continue

        schedule = Schedule(mode=ScheduleMode.AT_USER_LOCAL, hour=local.hour, minute=local.minute)
        recurrence = Recurrence(
            mode=rule.repeat,
            interval_days=rule.interval_days,
            days_of_week=list(rule.days_of_week),
            occurrences=rule.occurrences,
        )
        items.append(
            QueueItem(
                id=QueueItem.generate_id(),
                recipient_id=recipient.id,
                scheduled_at=resolve_schedule(schedule, now, offset, recurrence),
                category=ENGAGEMENT_CATEGORY,
                type=FEATURE_TYPES[feature],
                title=template.title,
                body=template.body,
                tz_offset_minutes=offset,
                hour=local.hour,
                minute=local.minute,
                dedupe_key=f"recurring:{recipient.id}:{feature}_advertisement",
                dedupe_window_ms=settings.dedupe.default_window_ms,
                created_at=now,
                updated_at=now,
                **recurrence_fields(recurrence),
            )
        )
    return items


async def ensure_engagement_schedules(
    limit: int | None = None,
    config: RouterConfig | None = None,
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Create missing engagement schedules for recent recipients with a token.

    Args:
        limit: Recipients to scan (capped by engagement.scan_limit)
        config: RouterConfig (loaded when omitted)
        settings: EngineSettings (loaded when omitted)
        now: Reference instant

    Returns:
        {"scanned": int, "scheduled": int, "items_created": int, "disabled": bool}
    """
    config = config or await load_router_config()
    settings = settings or load_settings()
    now = now or utc_now()

    engagement = config.engagement
    if not config.global_enabled or not engagement.enabled:
        return {"scanned": 0, "scheduled": 0, "items_created": 0, "disabled": True}

    scan_limit = min(int(limit or settings.engagement.scan_limit), settings.engagement.scan_limit)
    recipients = await recent_recipients_with_token(max(1, scan_limit), engagement_pending_only=True)

    scheduled = 0
    created = 0
    for recipient in recipients:
        if not recipient.engagement_first_time_scheduled and engagement.first_time_enabled:
            result = await insert_items(
                _intro_items(recipient, config, settings, now),
                write_batch_size=settings.store.write_batch_size,
            )
            await mark_engagement_scheduled(recipient.id, first_time=True)
            created += result["created"]
            scheduled += 1

        if not recipient.engagement_recurring_scheduled and engagement.recurring_enabled:
            result = await insert_items(
                _recurring_items(recipient, config, settings, now),
                write_batch_size=settings.store.write_batch_size,
            )
            await mark_engagement_scheduled(recipient.id, recurring=True)
            created += result["created"]
            scheduled += 1

    if scheduled:
        logger.info(
            "engagement_schedules_created",
            scanned=len(recipients),
            scheduled=scheduled,
            items_created=created,
        )
    return {
        "scanned": len(recipients),
        "scheduled": scheduled,
        "items_created": created,
        "disabled": False,
    }
