"""
groupwarden - Test Fixtures
===========================

Shared fixtures: a recording capability adapter, an in-memory record sink,
a controllable clock and a ready-to-use moderation engine.
"""

import os
import random
from typing import Dict, List, Optional

import pytest

os.environ.setdefault("DATA_HASH_SALT", "test-salt")

from groupwarden.moderation.capabilities import CapabilityAdapter, MemberRole
from groupwarden.moderation.controller import ModerationEngine
from groupwarden.moderation.models import GroupRule
from groupwarden.moderation.storage import StaticRuleResolver


GROUP_ID = -100123
USER_ID = 42


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeAdapter(CapabilityAdapter):
    """Adapter that records every call.

    `failures` maps a method name to the exception it should raise.
    """

    def __init__(self, roles: Optional[Dict[int, MemberRole]] = None):
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.roles = dict(roles or {})
        self.is_connected = True

    @property
    def connected(self) -> bool:
        return self.is_connected

    def _call(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        if name in self.failures:
            raise self.failures[name]

    def named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    def posts(self, group_id: Optional[int] = None) -> List[str]:
        return [
            call[2] for call in self.named("post_message")
            if group_id is None or call[1] == group_id
        ]

    async def mute(self, group_id, user_id, duration_seconds):
        self._call("mute", group_id, user_id, duration_seconds)

    async def kick(self, group_id, user_id, reject_future_requests=False):
        self._call("kick", group_id, user_id, reject_future_requests)

    async def delete_message(self, group_id, message_id):
        self._call("delete_message", group_id, message_id)

    async def get_member_role(self, group_id, user_id):
        self._call("get_member_role", group_id, user_id)
        return self.roles.get(user_id, MemberRole.MEMBER)

    async def post_message(self, group_id, text):
        self._call("post_message", group_id, text)

    async def post_image(self, group_id, url):
        self._call("post_image", group_id, url)

    async def send_private_message(self, user_id, text):
        self._call("send_private_message", user_id, text)

    async def approve_join_request(self, group_id, user_id):
        self._call("approve_join_request", group_id, user_id)


class FakeSink:
    """In-memory punishment/appeal journal."""

    def __init__(self):
        self.punishments = []
        self.appeals = []
        self.fail_writes = False

    async def record_punishment(self, record):
        if self.fail_writes:
            raise RuntimeError("sink unavailable")
        self.punishments.append(record)

    async def record_appeal(self, record):
        if self.fail_writes:
            raise RuntimeError("sink unavailable")
        self.appeals.append(record)

    async def load_punishments(self, group_id, limit=10, user_id=None):
        records = [
            record for record in reversed(self.punishments)
            if record.group_id == group_id and (user_id is None or record.user_id == user_id)
        ]
        return records[:limit]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def rules():
    return StaticRuleResolver()


@pytest.fixture
def make_rule(rules):
    """Build a rule from a dict (same shape as the stored JSON) and register it."""

    def _make(data: Optional[dict] = None, group_id: int = GROUP_ID) -> GroupRule:
        rule = GroupRule.from_dict(data or {}, group_id=group_id)
        rules.set_rule(rule)
        return rule

    return _make


@pytest.fixture
def engine(adapter, rules, sink, clock):
    return ModerationEngine(adapter, rules, sink, clock=clock, rng=random.Random(0))
