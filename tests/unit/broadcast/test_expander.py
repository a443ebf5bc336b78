"""Tests for notify_router/broadcast/expander.py

Broadcast expansion turns one broadcast into per-recipient queue items a page
at a time. Key behaviors:
- Pages follow signup order newest first with a persisted cursor
- A short page completes the broadcast
- Re-running a page merges instead of duplicating
- Future at_utc broadcasts wait; invalid ones fail
- A cancel landing mid-page leaves no pending items behind
"""

from datetime import datetime, timedelta, timezone

import pytest

import notify_router
from notify_router.broadcast.cancel import cancel_broadcast
from notify_router.broadcast.expander import (
    expand_broadcast,
    expand_broadcasts,
    page_size_for,
)
from notify_router.config import RouterConfig
from notify_router.models import (
    Broadcast,
    BroadcastStatus,
    QueueStatus,
    Recurrence,
    RepeatMode,
    Schedule,
    ScheduleMode,
)
from notify_router.queue import (
    create_broadcast,
    get_broadcast,
    get_queue_stats,
    list_items,
)


UTC = timezone.utc


def make_broadcast(now: datetime, **overrides) -> Broadcast:
    fields = {
        "id": Broadcast.generate_id(),
        "type": "announcement",
        "title": "New feature",
        "body": "Check it out",
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return Broadcast(**fields)


@pytest.fixture
def three_recipients(add_recipient, now):
    """u1 signed up first, u3 last."""

    async def _create():
        for i, rid in enumerate(["u1", "u2", "u3"]):
            await add_recipient(rid, signed_up_at=now - timedelta(days=10 - i))

    return _create


class TestPageSize:
    def test_uses_broadcast_batch_size_within_bounds(self, settings, now):
        assert page_size_for(make_broadcast(now, batch_size=2), settings) == 2
        assert page_size_for(make_broadcast(now, batch_size=10_000), settings) == 500

    def test_falls_back_to_requested_then_default(self, settings, now):
        assert page_size_for(make_broadcast(now), settings, requested=25) == 25
        assert page_size_for(make_broadcast(now), settings) == 300


class TestExpandBroadcast:
    """Tests for one expansion page."""

    @pytest.mark.asyncio
    async def test_pages_newest_signup_first_and_completes(self, three_recipients, settings, now):
        await three_recipients()
        broadcast = await create_broadcast(make_broadcast(now, batch_size=2))

        first = await expand_broadcast(broadcast, settings=settings, now=now)
        after_first = await get_broadcast(broadcast.id)
        second = await expand_broadcast(after_first, settings=settings, now=now)
        final = await get_broadcast(broadcast.id)

        assert first["outcome"] == "expanded"
        assert first["items_created"] == 2
        assert after_first.cursor_last_doc_id == "u2"
        assert after_first.status == BroadcastStatus.PENDING
        assert second["outcome"] == "completed"
        assert second["items_created"] == 1
        assert final.status == BroadcastStatus.COMPLETED
        assert final.total_enqueued == 3
        assert final.completed_at == now

    @pytest.mark.asyncio
    async def test_items_carry_campaign_and_dedupe_key(self, add_recipient, settings, now):
        await add_recipient("u1", tz_offset_minutes=-300)
        broadcast = await create_broadcast(
            make_broadcast(
                now,
                schedule=Schedule(mode=ScheduleMode.AT_USER_LOCAL, hour=8, minute=0),
                recurrence=Recurrence(mode=RepeatMode.DAILY),
            )
        )

        await expand_broadcast(broadcast, settings=settings, now=now)
        item = (await list_items(status="pending"))["items"][0]

        assert item.campaign_id == broadcast.id
        assert item.dedupe_key == f"broadcast:{broadcast.id}:u1"
        assert item.repeat == RepeatMode.DAILY
        assert (item.hour, item.minute) == (8, 0)
        # 07:00 local at UTC-5, so 08:00 local is 13:00 UTC today
        assert item.scheduled_at == datetime(2026, 3, 4, 13, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_rerun_of_same_page_merges(self, three_recipients, settings, now):
        await three_recipients()
        broadcast = await create_broadcast(make_broadcast(now, batch_size=2))
        await expand_broadcast(broadcast, settings=settings, now=now)

        # Simulate a crash before the cursor write
        conn = notify_router.get_connection()
        with conn:
            conn.execute(
                "UPDATE notification_broadcasts SET cursor_last_doc_id = NULL WHERE id = ?",
                (broadcast.id,),
            )
        conn.close()

        again = await expand_broadcast(await get_broadcast(broadcast.id), settings=settings, now=now)
        stats = await get_queue_stats()

        assert again["items_created"] == 0
        assert stats["total"] == 2

    @pytest.mark.asyncio
    async def test_stale_pass_never_moves_cursor_back(self, three_recipients, settings, now):
        await three_recipients()
        snapshot = await create_broadcast(make_broadcast(now, batch_size=1))
        await expand_broadcast(snapshot, settings=settings, now=now)
        await expand_broadcast(await get_broadcast(snapshot.id), settings=settings, now=now)

        # A slow pass still holding the broadcast as it was before the first page
        stale = await expand_broadcast(snapshot, settings=settings, now=now)
        stored = await get_broadcast(snapshot.id)

        assert stale["outcome"] == "stale"
        assert stale["items_created"] == 0
        assert stored.cursor_last_doc_id == "u2"
        assert stored.total_enqueued == 2
        assert stored.status == BroadcastStatus.PENDING
        assert (await get_queue_stats())["total"] == 2

    @pytest.mark.asyncio
    async def test_future_at_utc_is_not_due(self, three_recipients, settings, now):
        await three_recipients()
        later = (now + timedelta(hours=1)).isoformat()
        broadcast = await create_broadcast(
            make_broadcast(now, schedule=Schedule(mode=ScheduleMode.AT_UTC, at_utc=later))
        )

        result = await expand_broadcast(broadcast, settings=settings, now=now)

        assert result["outcome"] == "not_due"
        assert (await get_queue_stats())["total"] == 0
        assert (await get_broadcast(broadcast.id)).status == BroadcastStatus.PENDING

    @pytest.mark.asyncio
    async def test_invalid_at_utc_fails(self, three_recipients, settings, now):
        await three_recipients()
        broadcast = await create_broadcast(
            make_broadcast(now, schedule=Schedule(mode=ScheduleMode.AT_UTC, at_utc="whenever"))
        )

        result = await expand_broadcast(broadcast, settings=settings, now=now)
        stored = await get_broadcast(broadcast.id)

        assert result["outcome"] == "failed"
        assert stored.status == BroadcastStatus.FAILED
        assert stored.error == "Invalid schedule.atUtc"

    @pytest.mark.asyncio
    async def test_missing_content_fails(self, three_recipients, settings, now):
        await three_recipients()
        broadcast = await create_broadcast(make_broadcast(now, body=""))

        result = await expand_broadcast(broadcast, settings=settings, now=now)

        assert result["outcome"] == "failed"
        assert (await get_broadcast(broadcast.id)).error == "Missing title/body/type"

    @pytest.mark.asyncio
    async def test_no_recipients_completes(self, db, settings, now):
        broadcast = await create_broadcast(make_broadcast(now))

        result = await expand_broadcast(broadcast, settings=settings, now=now)

        assert result["outcome"] == "completed"
        assert (await get_broadcast(broadcast.id)).status == BroadcastStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_during_page_write_leaves_nothing_pending(self, three_recipients, settings, now):
        await three_recipients()
        stale = await create_broadcast(make_broadcast(now, batch_size=2))
        await cancel_broadcast(stale.id, settings=settings, now=now)

        # The pass still holds the pending snapshot it read before the cancel
        result = await expand_broadcast(stale, settings=settings, now=now)
        stats = await get_queue_stats()

        assert result["outcome"] == "cancelled"
        assert stats["pending"] == 0
        assert stats["skipped"] == 2
        assert (await get_broadcast(stale.id)).cursor_last_doc_id is None

    @pytest.mark.asyncio
    async def test_terminal_broadcast_is_inactive(self, db, settings, now):
        broadcast = make_broadcast(now, status=BroadcastStatus.COMPLETED)

        result = await expand_broadcast(broadcast, settings=settings, now=now)

        assert result["outcome"] == "inactive"


class TestExpandBroadcasts:
    @pytest.mark.asyncio
    async def test_processes_pending_broadcasts(self, three_recipients, config, settings, now):
        await three_recipients()
        await create_broadcast(make_broadcast(now))
        await create_broadcast(make_broadcast(now + timedelta(seconds=1)))

        result = await expand_broadcasts(config=config, settings=settings, now=now)

        assert result["processed_broadcasts"] == 2
        assert result["items_created"] == 6
        assert all(b["outcome"] == "completed" for b in result["broadcasts"])

    @pytest.mark.asyncio
    async def test_global_disabled_skips(self, three_recipients, settings, now):
        await three_recipients()
        await create_broadcast(make_broadcast(now))

        result = await expand_broadcasts(
            config=RouterConfig(global_enabled=False), settings=settings, now=now
        )

        assert result["skipped"] is True
        assert result["reason"] == "global_disabled"
        assert (await get_queue_stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_statuses_after_pass(self, three_recipients, config, settings, now):
        await three_recipients()
        broadcast = await create_broadcast(make_broadcast(now, batch_size=1))

        await expand_broadcasts(config=config, settings=settings, now=now)
        items = (await list_items(status="all"))["items"]

        assert [i.recipient_id for i in items] == ["u3"]
        assert items[0].status == QueueStatus.PENDING
        assert (await get_broadcast(broadcast.id)).cursor_last_doc_id == "u3"
