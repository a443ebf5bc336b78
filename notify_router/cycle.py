"""
Tool: Notification Cycle
Purpose: One externally triggered run of scheduling, fan-out and delivery

Usage:
    from notify_router.cycle import run_cycle

    await run_cycle(task="all", limit=100, trigger="auto")

Tasks:
    schedule    engagement schedules for recent recipients
    broadcasts  one expansion pass over pending broadcasts
    process     one delivery batch
    all         the three above, in that order

The periodic ("auto") trigger is a no-op while autoCronEnabled is false, so
an external scheduler can keep calling it unconditionally.
"""

from datetime import datetime

from notify_router.broadcast.expander import expand_broadcasts
from notify_router.config import (
    EngineSettings,
    RouterConfig,
    clamp,
    load_router_config,
    load_settings,
)
from notify_router.delivery.processor import TRIGGER_AUTO, TRIGGER_MANUAL, process_batch
from notify_router.delivery.transport import PushTransport
from notify_router.engagement import ensure_engagement_schedules
from notify_router.logging_config import get_logger, log_context
from notify_router.models import utc_now

logger = get_logger(__name__)

TASKS = ("all", "schedule", "broadcasts", "process")
TRIGGERS = (TRIGGER_AUTO, TRIGGER_MANUAL)


async def run_cycle(
    task: str = "all",
    limit: int | None = None,
    trigger: str = TRIGGER_AUTO,
    config: RouterConfig | None = None,
    settings: EngineSettings | None = None,
    transport: PushTransport | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Run the requested part of the cycle.

    Args:
        task: 'all', 'schedule', 'broadcasts' or 'process'
        limit: Work bound (clamped to 1..process.max_limit); also caps the
            engagement scan and the broadcast page size
        trigger: 'auto' or 'manual'
        config: RouterConfig (loaded once and shared by every step)
        settings: EngineSettings
        transport: PushTransport for the process step
        now: Reference instant

    Returns:
        {"success": True, "task": str, "schedule"?: dict, "broadcasts"?: dict,
         "process"?: dict} or {"success": True, "skipped": True, "reason": str}
    """
    task = (task or "all").lower()
    if task not in TASKS:
        return {"success": False, "error": f"Invalid task: {task}"}
    if trigger not in TRIGGERS:
        return {"success": False, "error": f"Invalid trigger: {trigger}"}

    config = config or await load_router_config()
    settings = settings or load_settings()
    now = now or utc_now()
    limit = clamp(int(limit or settings.process.default_limit), 1, settings.process.max_limit)

    if trigger == TRIGGER_AUTO and not config.auto_cron_enabled:
        logger.info("cycle_skipped", task=task, reason="auto_cron_disabled")
        return {
            "success": True,
            "task": task,
            "skipped": True,
            "reason": "Automation disabled in notification config (autoCronEnabled=false)",
        }

    with log_context(task=task, trigger=trigger):
        results = await _run_tasks(task, limit, trigger, config, settings, transport, now)

    logger.info("cycle_completed", task=task, trigger=trigger)
    return results


async def _run_tasks(
    task: str,
    limit: int,
    trigger: str,
    config: RouterConfig,
    settings: EngineSettings,
    transport: PushTransport | None,
    now: datetime,
) -> dict:
    results: dict = {"success": True, "task": task}

    if task in ("all", "schedule"):
        results["schedule"] = await ensure_engagement_schedules(
            limit=min(limit, settings.engagement.scan_limit),
            config=config,
            settings=settings,
            now=now,
        )

    if task in ("all", "broadcasts"):
        results["broadcasts"] = await expand_broadcasts(
            page_size=min(limit, settings.broadcast.default_batch_size),
            config=config,
            settings=settings,
            now=now,
        )

    if task in ("all", "process"):
        results["process"] = await process_batch(
            limit=limit,
            trigger=trigger,
            config=config,
            transport=transport,
            settings=settings,
            now=now,
        )

    return results
