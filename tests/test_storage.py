"""
Tests for groupwarden/moderation/storage.py

Redis is replaced with a MagicMock client.
"""

import asyncio
import json
from dataclasses import asdict
from unittest.mock import MagicMock, patch

import pytest
import redis

from conftest import GROUP_ID, USER_ID
from groupwarden.moderation import storage
from groupwarden.moderation.controller import MessageAction, ModerationEngine
from groupwarden.moderation.models import (
    ActivityCounter,
    AppealRecord,
    GroupRule,
    InboundMessage,
    PenaltyAction,
    PunishmentRecord,
)


@pytest.fixture
def client():
    mock = MagicMock()
    pipe = MagicMock()
    mock.pipeline.return_value.__enter__.return_value = pipe
    mock.pipe = pipe
    with patch.object(storage, "redis_client", mock):
        yield mock


# =============================================================================
# Group rules
# =============================================================================

class TestRules:

    def test_missing_rule_is_none(self, client):
        client.get.return_value = None
        assert storage.load_rule(GROUP_ID) is None

    def test_broken_json_is_none(self, client):
        client.get.return_value = "{not json"
        assert storage.load_rule(GROUP_ID) is None
        client.get.return_value = "[1]"
        assert storage.load_rule(GROUP_ID) is None

    def test_redis_error_is_none(self, client):
        client.get.side_effect = redis.ConnectionError("down")
        assert storage.load_rule(GROUP_ID) is None

    def test_stored_rule_with_overflow_loads(self, client):
        client.get.return_value = '{"spam": {"enabled": true, "max_messages": 1e400}, "keyword_announce": 5}'
        rule = storage.load_rule(GROUP_ID)
        assert rule.spam.enabled is True
        assert rule.spam.max_messages == 6
        assert rule.keyword_announce == []

    def test_round_trip_through_json(self, client):
        rule = GroupRule.from_dict({
            "forbidden": {"enabled": True, "words": ["spam"], "action": "kick"},
            "keywordAnnounce": [{"enabled": True, "keywords": ["price"], "message": "m"}],
        }, group_id=GROUP_ID)
        storage.save_rule(rule)

        key, raw = client.set.call_args.args
        assert key == f"group_rule:{GROUP_ID}"
        client.get.return_value = raw
        loaded = storage.load_rule(GROUP_ID)
        assert loaded.forbidden.action == PenaltyAction.KICK
        assert loaded.keyword_announce[0].keywords == ["price"]

    def test_save_error_is_raised(self, client):
        client.set.side_effect = redis.ConnectionError("down")
        with pytest.raises(redis.ConnectionError):
            storage.save_rule(GroupRule(group_id=GROUP_ID))

    def test_import_rejects_invalid(self, client):
        with pytest.raises(ValueError):
            storage.import_rule(GROUP_ID, "[1, 2]")
        with pytest.raises(ValueError):
            storage.import_rule(GROUP_ID, "{oops")
        with pytest.raises(ValueError):
            storage.import_rule(GROUP_ID, json.dumps({"spam": {"window_seconds": 0}}))
        client.set.assert_not_called()

    def test_import_saves_valid(self, client):
        rule = storage.import_rule(GROUP_ID, json.dumps({"spam": {"enabled": True, "max_messages": 3}}))
        assert rule.spam.max_messages == 3
        client.set.assert_called_once()

    def test_import_tolerates_odd_values(self, client):
        rule = storage.import_rule(GROUP_ID, '{"spam": {"max_messages": 1e400}, "schedule_announce": 5}')
        assert rule.spam.max_messages == 6
        assert rule.schedule_announce == []
        client.set.assert_called_once()

    def test_export_drops_group_id(self, client):
        client.get.return_value = json.dumps({"forbidden": {"enabled": True}})
        data = json.loads(storage.export_rule(GROUP_ID))
        assert "group_id" not in data
        assert data["forbidden"]["enabled"] is True
        assert data["penalty"]["levels"][0]["action"] == "warn"

    def test_export_missing_rule(self, client):
        client.get.return_value = None
        assert storage.export_rule(GROUP_ID) is None

    def test_delete_rule(self, client):
        client.delete.return_value = 1
        assert storage.delete_rule(GROUP_ID) is True
        client.delete.assert_called_once_with(f"group_rule:{GROUP_ID}")

    def test_list_group_ids(self, client):
        client.scan_iter.return_value = iter(["group_rule:-100", "group_rule:5", "group_rule:abc"])
        assert storage.list_group_ids() == [-100, 5]


@pytest.mark.asyncio
async def test_static_resolver_returns_copies():
    resolver = storage.StaticRuleResolver({GROUP_ID: GroupRule(group_id=GROUP_ID)})
    first = await resolver.get_rule(GROUP_ID)
    first.blacklist.append("1")
    second = await resolver.get_rule(GROUP_ID)
    assert second.blacklist == []
    assert await resolver.get_rule(GROUP_ID + 1) is None


@pytest.mark.asyncio
async def test_unconfigured_group_is_not_moderated(client, adapter, sink):
    client.get.return_value = None
    engine = ModerationEngine(adapter, storage.RedisRuleResolver(), sink)

    verdict = await engine.handle_message(InboundMessage(GROUP_ID, USER_ID, "fuck"))
    assert verdict.action == MessageAction.DISABLED
    assert adapter.calls == []


# =============================================================================
# Rule change notifications
# =============================================================================

@pytest.fixture
def stored(client):
    """Rule keys kept in a dict behind the mocked client."""
    data = {}
    client.set.side_effect = data.__setitem__
    client.get.side_effect = data.get
    client.delete.side_effect = lambda key: 1 if data.pop(key, None) is not None else 0
    return data


@pytest.fixture
def changes():
    seen = []
    storage.add_rule_listener(seen.append)
    yield seen
    storage.remove_rule_listener(seen.append)


def test_save_import_delete_notify(stored, changes):
    storage.save_rule(GroupRule(group_id=GROUP_ID))
    storage.import_rule(GROUP_ID + 1, "{}")
    assert storage.delete_rule(GROUP_ID) is True
    assert storage.delete_rule(GROUP_ID) is False
    assert changes == [GROUP_ID, GROUP_ID + 1, GROUP_ID]


def test_invalid_import_does_not_notify(stored, changes):
    with pytest.raises(ValueError):
        storage.import_rule(GROUP_ID, json.dumps({"spam": {"window_seconds": 0}}))
    assert changes == []


def test_failing_listener_does_not_break_save(stored, changes):
    def broken(group_id):
        raise RuntimeError("boom")

    storage.add_rule_listener(broken)
    try:
        storage.save_rule(GroupRule(group_id=GROUP_ID))
    finally:
        storage.remove_rule_listener(broken)
    assert changes == [GROUP_ID]
    assert f"group_rule:{GROUP_ID}" in stored


async def _wait_for_timers(engine, expected):
    for _ in range(200):
        if engine.schedules.active_count(GROUP_ID) == expected:
            return True
        await asyncio.sleep(0.01)
    return False


@pytest.mark.asyncio
async def test_rule_edits_rearm_schedules(stored, adapter, sink):
    engine = ModerationEngine(adapter, storage.RedisRuleResolver(), sink)
    listener = engine.rule_change_listener(asyncio.get_running_loop())
    storage.add_rule_listener(listener)
    schedule = {"enabled": True, "interval_minutes": 1, "message": "daily"}
    try:
        storage.import_rule(GROUP_ID, json.dumps({"schedule_announce": [schedule]}))
        assert await _wait_for_timers(engine, 1)

        storage.import_rule(GROUP_ID, json.dumps({"schedule_announce": []}))
        assert await _wait_for_timers(engine, 0)

        storage.import_rule(GROUP_ID, json.dumps({"schedule_announce": [schedule, schedule]}))
        assert await _wait_for_timers(engine, 2)

        storage.delete_rule(GROUP_ID)
        assert await _wait_for_timers(engine, 0)
    finally:
        storage.remove_rule_listener(listener)
        engine.schedules.cancel_all()


# =============================================================================
# Punishments, appeals, activity
# =============================================================================

class TestRecords:

    def test_punishment_is_pushed_and_trimmed(self, client):
        record = PunishmentRecord.create(GROUP_ID, USER_ID, "spam", "mute", 600, 2, timestamp=100.0)
        storage.save_punishment(record)

        key, raw = client.pipe.lpush.call_args.args
        assert key == f"punishments:{GROUP_ID}"
        assert json.loads(raw)["mute_seconds"] == 600
        client.pipe.ltrim.assert_called_once_with(key, 0, storage.MAX_RECORD_ENTRIES - 1)
        client.pipe.execute.assert_called_once()

    def test_load_punishments_filters_by_user(self, client):
        records = [
            PunishmentRecord.create(GROUP_ID, uid, "r", "warn", timestamp=float(i))
            for i, uid in enumerate([1, 2, 1, 1])
        ]
        client.lrange.return_value = [json.dumps(asdict(record)) for record in records] + ["garbage"]

        loaded = storage.load_punishments(GROUP_ID, limit=2, user_id=1)
        assert [record.timestamp for record in loaded] == [0.0, 2.0]
        assert client.lrange.call_args.args == (f"punishments:{GROUP_ID}", 0, 9)

    def test_load_punishments_redis_error(self, client):
        client.lrange.side_effect = redis.ConnectionError("down")
        assert storage.load_punishments(GROUP_ID) == []

    def test_appeal_round_trip(self, client):
        record = AppealRecord.create(GROUP_ID, USER_ID, "please unmute", timestamp=1.0)
        storage.save_appeal(record)
        _, raw = client.pipe.lpush.call_args.args

        client.lrange.return_value = [raw]
        loaded = storage.load_appeals(GROUP_ID)
        assert loaded[0].text == "please unmute"
        assert loaded[0].status == "pending"

    def test_activity_hash(self, client):
        counters = {(GROUP_ID, USER_ID): ActivityCounter(total=3, today=1, last_message_at=5.0, today_date_tag="d")}
        assert storage.save_activity(counters) == 1
        client.pipe.hset.assert_called_once()
        key, field, raw = client.pipe.hset.call_args.args
        assert (key, field) == (f"activity:{GROUP_ID}", str(USER_ID))

        client.hgetall.return_value = {field: raw, "x": "broken"}
        assert storage.load_activity(GROUP_ID) == {USER_ID: counters[(GROUP_ID, USER_ID)]}

    def test_activity_write_error_is_raised(self, client):
        client.pipeline.return_value.__enter__.return_value.execute.side_effect = redis.ConnectionError("down")
        with pytest.raises(redis.RedisError):
            storage.save_activity({(GROUP_ID, USER_ID): ActivityCounter(total=1)})


@pytest.mark.asyncio
async def test_record_sink_writes_through_executor(client):
    sink = storage.RedisRecordSink()
    await sink.record_punishment(PunishmentRecord.create(GROUP_ID, USER_ID, "r", "kick"))
    client.pipe.lpush.assert_called_once()
