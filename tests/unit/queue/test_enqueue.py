"""Tests for notify_router/queue/enqueue.py"""

from datetime import datetime, timezone

import pytest

from notify_router.config import RouterConfig
from notify_router.models import (
    QueueStatus,
    Recurrence,
    RepeatMode,
    Schedule,
    ScheduleMode,
)
from notify_router.queue import get_item
from notify_router.queue.enqueue import (
    enqueue_for_recipients,
    validate_content,
    validate_schedule,
)


UTC = timezone.utc


class TestValidation:
    def test_content_requires_all_three_fields(self):
        assert validate_content("t", "b", "x") is None
        assert validate_content("t", "  ", "x") == "title, body, and type are required"
        assert validate_content("", "b", "x") is not None

    def test_schedule_rules(self):
        assert validate_schedule(None) == "schedule is required"
        assert validate_schedule(Schedule(mode=ScheduleMode.NOW)) is None
        assert validate_schedule(Schedule(mode=ScheduleMode.AT_UTC, at_utc="soon")) == "Invalid schedule.atUtc"
        assert validate_schedule(Schedule(mode=ScheduleMode.AT_USER_LOCAL, hour=9)) is not None


class TestEnqueueForRecipients:
    """Tests for direct enqueue."""

    @pytest.mark.asyncio
    async def test_creates_one_item_per_known_recipient(self, add_recipient, config, settings, now):
        await add_recipient("u1")
        await add_recipient("u2")

        result = await enqueue_for_recipients(
            ["u1", "u2", "ghost", "u1"],
            title="Hello",
            body="World",
            type="admin_message",
            schedule=Schedule(mode=ScheduleMode.NOW),
            config=config,
            settings=settings,
            now=now,
        )

        assert result["success"] is True
        assert result["created"] == 2
        items = [await get_item(qid) for qid in result["queue_ids"]]
        assert sorted(i.recipient_id for i in items) == ["u1", "u2"]
        for item in items:
            assert item.status == QueueStatus.PENDING
            assert item.scheduled_at == now
            assert item.dedupe_key == f"admin:{item.id}"
            assert item.category == "admin"

    @pytest.mark.asyncio
    async def test_local_time_uses_recipient_offset(self, add_recipient, config, settings, now):
        await add_recipient("u1", tz_offset_minutes=60)

        result = await enqueue_for_recipients(
            ["u1"],
            title="Morning",
            body="Time to stretch",
            type="reminder",
            schedule=Schedule(mode=ScheduleMode.AT_USER_LOCAL, hour=9, minute=0),
            recurrence=Recurrence(mode=RepeatMode.DAILY, occurrences=3),
            config=config,
            settings=settings,
            now=now,
        )

        item = await get_item(result["queue_ids"][0])
        # 13:00 local already passed 09:00, so tomorrow 09:00 local
        assert item.scheduled_at == datetime(2026, 3, 5, 8, 0, tzinfo=UTC)
        assert (item.hour, item.minute) == (9, 0)
        assert item.tz_offset_minutes == 60
        assert item.repeat == RepeatMode.DAILY
        assert item.remaining_occurrences == 3

    @pytest.mark.asyncio
    async def test_globally_disabled_writes_nothing(self, add_recipient, settings, now):
        await add_recipient("u1")

        result = await enqueue_for_recipients(
            ["u1"],
            title="Hello",
            body="World",
            type="admin_message",
            schedule=Schedule(),
            config=RouterConfig(global_enabled=False),
            settings=settings,
            now=now,
        )

        assert result == {"success": False, "error": "Notifications are globally disabled"}

    @pytest.mark.asyncio
    async def test_no_users_selected(self, db, config, settings, now):
        result = await enqueue_for_recipients(
            ["", "  "],
            title="Hello",
            body="World",
            type="admin_message",
            schedule=Schedule(),
            config=config,
            settings=settings,
            now=now,
        )

        assert result == {"success": False, "error": "No users selected"}

    @pytest.mark.asyncio
    async def test_invalid_schedule_rejected(self, add_recipient, config, settings, now):
        await add_recipient("u1")

        result = await enqueue_for_recipients(
            ["u1"],
            title="Hello",
            body="World",
            type="admin_message",
            schedule=Schedule(mode=ScheduleMode.AT_UTC, at_utc="tomorrow"),
            config=config,
            settings=settings,
            now=now,
        )

        assert result["success"] is False
        assert result["error"] == "Invalid schedule.atUtc"
