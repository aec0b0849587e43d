"""
Tests for groupwarden/moderation/activity.py
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import GROUP_ID, USER_ID
from groupwarden.moderation.activity import ActivityTracker, date_tag
from groupwarden.moderation.controller import MessageAction
from groupwarden.moderation.models import ActivityCounter, InboundMessage
from groupwarden.moderation.state import ModerationState


def _noon(days_ago: int = 0) -> float:
    moment = datetime.now().replace(hour=12, minute=0, second=0, microsecond=0) - timedelta(days=days_ago)
    return moment.timestamp()


class TestActivityCounters:

    def test_counts_total_and_today(self):
        tracker = ActivityTracker(ModerationState())
        tracker.record(GROUP_ID, USER_ID, _noon())
        counter = tracker.record(GROUP_ID, USER_ID, _noon() + 60)
        assert counter.total == 2
        assert counter.today == 2
        assert counter.last_message_at == _noon() + 60
        assert counter.today_date_tag == date_tag(_noon())

    def test_day_rollover_resets_today(self):
        tracker = ActivityTracker(ModerationState())
        tracker.record(GROUP_ID, USER_ID, _noon(days_ago=1))
        tracker.record(GROUP_ID, USER_ID, _noon(days_ago=1) + 10)
        counter = tracker.record(GROUP_ID, USER_ID, _noon())
        assert counter.total == 3
        assert counter.today == 1

    def test_group_stats_sorted_and_stale_today_hidden(self):
        tracker = ActivityTracker(ModerationState(), clock=_noon)
        tracker.record(GROUP_ID, 1, _noon(days_ago=1))
        tracker.record(GROUP_ID, 1, _noon(days_ago=1))
        tracker.record(GROUP_ID, 2, _noon())
        tracker.record(GROUP_ID + 1, 3, _noon())

        stats = tracker.group_stats(GROUP_ID)
        assert [user_id for user_id, _ in stats] == [1, 2]
        assert stats[0][1].today == 0
        assert tracker.get(GROUP_ID, 1).today == 2

    def test_load_keeps_live_counters(self):
        tracker = ActivityTracker(ModerationState())
        tracker.record(GROUP_ID, USER_ID, _noon())
        loaded = tracker.load({
            (GROUP_ID, USER_ID): ActivityCounter(total=100),
            (GROUP_ID, USER_ID + 1): ActivityCounter(total=7),
        })
        assert loaded == 1
        assert tracker.get(GROUP_ID, USER_ID).total == 1
        assert tracker.get(GROUP_ID, USER_ID + 1).total == 7


@pytest.mark.asyncio
async def test_flushes_are_coalesced():
    persist = AsyncMock(side_effect=lambda counters: len(counters))
    tracker = ActivityTracker(ModerationState(), persist=persist, flush_interval=0.05)

    for _ in range(5):
        tracker.record(GROUP_ID, USER_ID)
    tracker.record(GROUP_ID, USER_ID + 1)
    assert persist.await_count == 0

    await asyncio.sleep(0.2)
    persist.assert_awaited_once()
    snapshot = persist.await_args.args[0]
    assert set(snapshot) == {(GROUP_ID, USER_ID), (GROUP_ID, USER_ID + 1)}
    assert snapshot[(GROUP_ID, USER_ID)].total == 5
    assert tracker.pending == 0


@pytest.mark.asyncio
async def test_failed_flush_requeues_counters():
    persist = AsyncMock(side_effect=RuntimeError("redis down"))
    tracker = ActivityTracker(ModerationState(), persist=persist, flush_interval=60)
    tracker.record(GROUP_ID, USER_ID)

    assert await tracker.flush() == 0
    assert tracker.pending == 1

    persist.side_effect = None
    persist.return_value = 1
    assert await tracker.shutdown() == 1
    assert tracker.pending == 0


@pytest.mark.asyncio
async def test_flush_without_persist_is_noop():
    tracker = ActivityTracker(ModerationState())
    tracker.record(GROUP_ID, USER_ID)
    assert await tracker.flush() == 0


@pytest.mark.asyncio
async def test_disabled_group_still_counts(engine, make_rule):
    make_rule({"enabled": False})
    verdict = await engine.handle_message(InboundMessage(GROUP_ID, USER_ID, "hi"))
    assert verdict.action == MessageAction.DISABLED
    assert engine.activity.get(GROUP_ID, USER_ID).total == 1

    verdict = await engine.handle_message(InboundMessage(GROUP_ID + 9, USER_ID, "hi"))
    assert verdict.action == MessageAction.DISABLED
    assert engine.activity.get(GROUP_ID + 9, USER_ID).total == 1
