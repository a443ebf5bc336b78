"""Tests for notify_router/queue/store.py

The queue store is the only owner of queue item rows. Key behaviors:
- Batched inserts merge on (dedupe key, occurrence) instead of duplicating
- Conditional transitions only move pending rows
- Claims are exclusive until their lease expires
- Campaign purge touches pending rows only
- Cursor pagination in scheduled order
"""

from datetime import datetime, timedelta

import pytest

from notify_router.models import (
    CampaignKind,
    QueueItem,
    QueueStatus,
    RepeatMode,
)
from notify_router.queue import store


def make_item(now: datetime, **overrides) -> QueueItem:
    fields = {
        "id": QueueItem.generate_id(),
        "recipient_id": "u1",
        "scheduled_at": now,
        "type": "admin_message",
        "title": "Hello",
        "body": "World",
    }
    fields.update(overrides)
    return QueueItem(**fields)


class TestInsertItems:
    """Tests for batched, merging inserts."""

    @pytest.mark.asyncio
    async def test_inserts_and_reads_back(self, db, now):
        item = make_item(now, data={"screen": "home"}, repeat=RepeatMode.WEEKDAYS, days_of_week=[1, 3])

        result = await store.insert_items([item])
        loaded = await store.get_item(item.id)

        assert result == {"created": 1, "merged": 0}
        assert loaded.data == {"screen": "home"}
        assert loaded.days_of_week == [1, 3]
        assert loaded.repeat == RepeatMode.WEEKDAYS
        assert loaded.scheduled_at == now
        assert loaded.status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_same_dedupe_key_merges(self, db, now):
        first = make_item(now, dedupe_key="broadcast:bc_1:u1", title="Old")
        again = make_item(now, dedupe_key="broadcast:bc_1:u1", title="New")

        await store.insert_items([first])
        result = await store.insert_items([again])
        page = await store.list_items(status="all", limit=10)

        assert result == {"created": 0, "merged": 1}
        assert len(page["items"]) == 1
        assert page["items"][0].id == first.id
        assert page["items"][0].title == "New"

    @pytest.mark.asyncio
    async def test_merge_never_touches_finished_rows(self, db, now):
        first = make_item(now, dedupe_key="k1", title="Old")
        await store.insert_items([first])
        await store.transition(first.id, QueueStatus.SENT, now=now)

        await store.insert_items([make_item(now, dedupe_key="k1", title="New")])
        loaded = await store.get_item(first.id)

        assert loaded.status == QueueStatus.SENT
        assert loaded.title == "Old"

    @pytest.mark.asyncio
    async def test_next_occurrence_shares_dedupe_key(self, db, now):
        first = make_item(now, dedupe_key="k1")
        second = make_item(now + timedelta(days=1), dedupe_key="k1", occurrence=1)

        result = await store.insert_items([first, second])

        assert result["created"] == 2

    @pytest.mark.asyncio
    async def test_writes_in_bounded_batches(self, db, now):
        items = [make_item(now, recipient_id=f"u{i}", dedupe_key=f"k{i}") for i in range(7)]

        result = await store.insert_items(items, write_batch_size=3)
        stats = await store.get_queue_stats()

        assert result["created"] == 7
        assert stats["pending"] == 7


class TestListItems:
    """Tests for filtered, cursor-paginated listing."""

    @pytest.mark.asyncio
    async def test_paginates_in_scheduled_order(self, db, now):
        items = [make_item(now + timedelta(minutes=i)) for i in range(5)]
        await store.insert_items(list(reversed(items)))

        first = await store.list_items(status="pending", limit=2)
        second = await store.list_items(status="pending", limit=2, cursor=first["next_cursor"])
        third = await store.list_items(status="pending", limit=2, cursor=second["next_cursor"])

        ids = [i.id for i in first["items"] + second["items"] + third["items"]]
        assert ids == [i.id for i in items]
        assert third["next_cursor"] is None

    @pytest.mark.asyncio
    async def test_filters_by_status(self, db, now):
        a, b = make_item(now), make_item(now)
        await store.insert_items([a, b])
        await store.transition(b.id, QueueStatus.FAILED, now=now, error="boom")

        failed = await store.list_items(status="failed")
        everything = await store.list_items(status="all")

        assert [i.id for i in failed["items"]] == [b.id]
        assert failed["items"][0].error == "boom"
        assert len(everything["items"]) == 2

    @pytest.mark.asyncio
    async def test_rejects_unknown_status(self, db):
        with pytest.raises(ValueError):
            await store.list_items(status="archived")

    @pytest.mark.asyncio
    async def test_limit_is_capped(self, db, now):
        await store.insert_items([make_item(now) for _ in range(3)])

        page = await store.list_items(status="all", limit=10_000)

        assert len(page["items"]) == 3


class TestSelectAndClaim:
    """Tests for due selection and exclusive claims."""

    @pytest.mark.asyncio
    async def test_selects_due_pending_oldest_first(self, db, now):
        late = make_item(now - timedelta(minutes=1))
        early = make_item(now - timedelta(hours=1))
        future = make_item(now + timedelta(minutes=1))
        await store.insert_items([late, early, future])

        due = await store.select_due(now, limit=10)

        assert [i.id for i in due] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, db, now):
        item = make_item(now)
        await store.insert_items([item])

        first = await store.claim_item(item.id, "claim_a", now)
        second = await store.claim_item(item.id, "claim_b", now)

        assert first is True
        assert second is False
        assert await store.select_due(now, limit=10) == []

    @pytest.mark.asyncio
    async def test_expired_claim_can_be_taken_over(self, db, now):
        item = make_item(now - timedelta(hours=1))
        await store.insert_items([item])
        await store.claim_item(item.id, "claim_a", now - timedelta(minutes=10), claim_timeout_seconds=300)

        due = await store.select_due(now, limit=10, claim_timeout_seconds=300)
        taken = await store.claim_item(item.id, "claim_b", now, claim_timeout_seconds=300)

        assert [i.id for i in due] == [item.id]
        assert taken is True

    @pytest.mark.asyncio
    async def test_transition_requires_own_claim(self, db, now):
        item = make_item(now)
        await store.insert_items([item])
        await store.claim_item(item.id, "claim_a", now)

        wrong = await store.transition(item.id, QueueStatus.SENT, claim_id="claim_b", now=now)
        right = await store.transition(item.id, QueueStatus.SENT, claim_id="claim_a", now=now)
        again = await store.transition(item.id, QueueStatus.FAILED, claim_id="claim_a", now=now)

        assert (wrong, right, again) == (False, True, False)
        assert (await store.get_item(item.id)).status == QueueStatus.SENT

    @pytest.mark.asyncio
    async def test_transition_rejects_unknown_columns(self, db, now):
        item = make_item(now)
        await store.insert_items([item])

        with pytest.raises(ValueError):
            await store.transition(item.id, QueueStatus.SKIPPED, recipient_id="u2")


class TestCompleteSent:
    """Tests for the send bookkeeping transaction."""

    @pytest.mark.asyncio
    async def test_records_send_dedupe_and_next_occurrence(self, db, now):
        item = make_item(now, dedupe_key="k1", repeat=RepeatMode.DAILY)
        nxt = make_item(now + timedelta(days=1), dedupe_key="k1", occurrence=1, repeat=RepeatMode.DAILY)
        await store.insert_items([item])
        await store.claim_item(item.id, "c1", now)

        recorded = await store.complete_sent(item, "c1", now, "delivery-1", nxt)

        sent = await store.get_item(item.id)
        dedupe = await store.last_dedupe_send("k1")
        assert recorded is True
        assert sent.status == QueueStatus.SENT
        assert sent.sent_at == now
        assert sent.delivery_id == "delivery-1"
        assert dedupe["queue_id"] == item.id
        assert (await store.get_item(nxt.id)).status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_nothing_written_without_the_claim(self, db, now):
        item = make_item(now, dedupe_key="k1")
        nxt = make_item(now + timedelta(days=1), dedupe_key="k1", occurrence=1)
        await store.insert_items([item])
        await store.claim_item(item.id, "c1", now)
        await store.remove_item(item.id, now=now)

        recorded = await store.complete_sent(item, "c1", now, "delivery-1", nxt)

        assert recorded is False
        assert await store.get_item(nxt.id) is None
        assert await store.last_dedupe_send("k1") is None


class TestRemovalAndPurge:
    """Tests for manual removal and campaign purge."""

    @pytest.mark.asyncio
    async def test_remove_strips_recurrence(self, db, now):
        item = make_item(
            now,
            repeat=RepeatMode.EVERY_N_DAYS,
            interval_days=2,
            remaining_occurrences=5,
            end_at=now + timedelta(days=30),
        )
        await store.insert_items([item])

        result = await store.remove_item(item.id, now=now)
        loaded = await store.get_item(item.id)

        assert result == {"success": True}
        assert loaded.status == QueueStatus.SKIPPED
        assert loaded.skipped_reason == "manual_removed"
        assert loaded.removed_at == now
        assert loaded.repeat is None
        assert loaded.interval_days is None
        assert loaded.remaining_occurrences is None
        assert loaded.end_at is None

    @pytest.mark.asyncio
    async def test_remove_with_custom_reason(self, db, now):
        item = make_item(now)
        await store.insert_items([item])

        await store.remove_item(item.id, reason="duplicate_campaign", now=now)

        assert (await store.get_item(item.id)).skipped_reason == "duplicate_campaign"

    @pytest.mark.asyncio
    async def test_remove_missing_and_finished(self, db, now):
        item = make_item(now)
        await store.insert_items([item])
        await store.transition(item.id, QueueStatus.SENT, now=now)

        missing = await store.remove_item("nq_missing")
        finished = await store.remove_item(item.id)

        assert missing["success"] is False
        assert finished["success"] is False
        assert "not pending" in finished["error"]

    @pytest.mark.asyncio
    async def test_purge_touches_only_pending_items_of_the_campaign(self, db, now):
        campaign = {"campaign_kind": CampaignKind.BROADCAST, "campaign_id": "bc_1"}
        pending = [make_item(now, repeat=RepeatMode.DAILY, **campaign) for _ in range(5)]
        sent = make_item(now, **campaign)
        other = make_item(now, campaign_kind=CampaignKind.BROADCAST, campaign_id="bc_2")
        await store.insert_items(pending + [sent, other])
        await store.transition(sent.id, QueueStatus.SENT, now=now)

        count = await store.skip_campaign_items("bc_1", "broadcast_cancelled", chunk_size=2, now=now)

        assert count == 5
        for item in pending:
            loaded = await store.get_item(item.id)
            assert loaded.status == QueueStatus.SKIPPED
            assert loaded.skipped_reason == "broadcast_cancelled"
            assert loaded.repeat is None
        assert (await store.get_item(sent.id)).status == QueueStatus.SENT
        assert (await store.get_item(other.id)).status == QueueStatus.PENDING


class TestQueueStats:
    @pytest.mark.asyncio
    async def test_counts_per_status(self, db, now):
        items = [make_item(now) for _ in range(4)]
        await store.insert_items(items)
        await store.transition(items[0].id, QueueStatus.SENT, now=now)
        await store.transition(items[1].id, QueueStatus.SKIPPED, now=now)

        stats = await store.get_queue_stats()

        assert stats == {"pending": 2, "sent": 1, "failed": 0, "skipped": 1, "total": 4}
