"""
Tests for groupwarden/moderation/escalation.py

Offense counting with decay, level resolution and the end-to-end
warn -> mute -> kick ladder through the engine.
"""

import pytest

from conftest import GROUP_ID, USER_ID
from groupwarden.moderation.controller import MessageAction
from groupwarden.moderation.escalation import EscalationLedger, resolve_level
from groupwarden.moderation.models import InboundMessage, PenaltyAction, PenaltyConfig, PenaltyLevel
from groupwarden.moderation.state import ModerationState


LADDER = [
    PenaltyLevel(1, PenaltyAction.WARN),
    PenaltyLevel(2, PenaltyAction.MUTE, 600),
    PenaltyLevel(3, PenaltyAction.KICK),
]


# =============================================================================
# resolve_level()
# =============================================================================

class TestResolveLevel:

    def test_picks_greatest_threshold_not_above_count(self):
        assert resolve_level(1, LADDER).action == PenaltyAction.WARN
        assert resolve_level(2, LADDER).action == PenaltyAction.MUTE
        assert resolve_level(3, LADDER).action == PenaltyAction.KICK
        assert resolve_level(10, LADDER).action == PenaltyAction.KICK

    def test_below_every_threshold(self):
        levels = [PenaltyLevel(3, PenaltyAction.KICK)]
        assert resolve_level(1, levels) is None
        assert resolve_level(2, levels) is None

    def test_gaps_and_unsorted_table(self):
        levels = [PenaltyLevel(5, PenaltyAction.KICK), PenaltyLevel(2, PenaltyAction.MUTE, 60)]
        assert resolve_level(1, levels) is None
        assert resolve_level(4, levels).action == PenaltyAction.MUTE
        assert resolve_level(5, levels).action == PenaltyAction.KICK

    def test_equal_thresholds_first_entry_wins(self):
        levels = [PenaltyLevel(2, PenaltyAction.WARN), PenaltyLevel(2, PenaltyAction.KICK)]
        assert resolve_level(2, levels).action == PenaltyAction.WARN

    def test_pure(self):
        levels = list(LADDER)
        first = resolve_level(2, levels)
        second = resolve_level(2, levels)
        assert first == second
        assert levels == LADDER

    def test_empty_table(self):
        assert resolve_level(3, []) is None


# =============================================================================
# EscalationLedger
# =============================================================================

class TestEscalationLedger:

    def test_counts_within_window(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        assert ledger.record_offense(GROUP_ID, USER_ID, 3600) == 1
        clock.advance(100)
        assert ledger.record_offense(GROUP_ID, USER_ID, 3600) == 2
        assert ledger.get_count(GROUP_ID, USER_ID) == 2

    def test_decay_resets_to_one(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        ledger.record_offense(GROUP_ID, USER_ID, 3600)
        ledger.record_offense(GROUP_ID, USER_ID, 3600)
        clock.advance(3601)
        assert ledger.record_offense(GROUP_ID, USER_ID, 3600) == 1

    def test_window_boundary_still_counts(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        ledger.record_offense(GROUP_ID, USER_ID, 3600)
        clock.advance(3600)
        assert ledger.record_offense(GROUP_ID, USER_ID, 3600) == 2

    def test_counters_are_per_group(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        ledger.record_offense(GROUP_ID, USER_ID, 3600)
        assert ledger.record_offense(GROUP_ID + 1, USER_ID, 3600) == 1
        assert ledger.history(GROUP_ID) == [(USER_ID, 1)]

    def test_decide_uses_table(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        penalty = PenaltyConfig(levels=list(LADDER))
        decisions = [
            ledger.decide(GROUP_ID, USER_ID, penalty, PenaltyAction.MUTE, 300)
            for _ in range(3)
        ]
        assert [d.action for d in decisions] == [PenaltyAction.WARN, PenaltyAction.MUTE, PenaltyAction.KICK]
        assert decisions[1].mute_seconds == 600
        assert all(d.from_table for d in decisions)

    def test_decide_falls_back_to_detector_default(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        penalty = PenaltyConfig(levels=[PenaltyLevel(3, PenaltyAction.KICK)])
        decision = ledger.decide(GROUP_ID, USER_ID, penalty, PenaltyAction.MUTE, 300)
        assert decision.action == PenaltyAction.MUTE
        assert decision.mute_seconds == 300
        assert decision.offense_count == 1
        assert not decision.from_table

    def test_decide_mute_without_duration_uses_default(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        penalty = PenaltyConfig(levels=[PenaltyLevel(1, PenaltyAction.MUTE, 0)])
        decision = ledger.decide(GROUP_ID, USER_ID, penalty, PenaltyAction.WARN, 120)
        assert decision.action == PenaltyAction.MUTE
        assert decision.mute_seconds == 120

    def test_disabled_escalation_keeps_no_ledger(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        penalty = PenaltyConfig(enabled=False, levels=list(LADDER))
        for _ in range(3):
            decision = ledger.decide(GROUP_ID, USER_ID, penalty, PenaltyAction.MUTE, 300)
            assert decision.action == PenaltyAction.MUTE
            assert decision.offense_count == 1
        assert ledger.get_count(GROUP_ID, USER_ID) == 0

    def test_reset(self, clock):
        ledger = EscalationLedger(ModerationState(), clock)
        ledger.record_offense(GROUP_ID, USER_ID, 3600)
        assert ledger.reset(GROUP_ID, USER_ID) is True
        assert ledger.reset(GROUP_ID, USER_ID) is False
        assert ledger.get_count(GROUP_ID, USER_ID) == 0


# =============================================================================
# Ladder through the engine
# =============================================================================

@pytest.mark.asyncio
async def test_forbidden_word_escalates_warn_mute_kick(engine, adapter, sink, clock, make_rule):
    make_rule({
        "forbidden": {"enabled": True, "words": ["spam"]},
        "penalty": {
            "enabled": True,
            "window_seconds": 3600,
            "levels": [
                {"threshold": 1, "action": "warn"},
                {"threshold": 2, "action": "mute", "mute_seconds": 600},
                {"threshold": 3, "action": "kick"},
            ],
        },
    })

    actions = []
    for message_id in (1, 2, 3):
        verdict = await engine.handle_message(
            InboundMessage(GROUP_ID, USER_ID, "buy SPAM now", message_id=message_id)
        )
        assert verdict.action == MessageAction.PENALTY
        actions.append((verdict.penalty.action, verdict.penalty.offense_count))
        clock.advance(10)

    assert actions == [(PenaltyAction.WARN, 1), (PenaltyAction.MUTE, 2), (PenaltyAction.KICK, 3)]
    assert adapter.named("mute") == [("mute", GROUP_ID, USER_ID, 600)]
    assert adapter.named("kick") == [("kick", GROUP_ID, USER_ID, False)]
    assert [call[2] for call in adapter.named("delete_message")] == [1, 2, 3]
    assert [record.action for record in sink.punishments] == ["warn", "mute", "kick"]
    assert sink.punishments[1].mute_seconds == 600
    assert sink.punishments[0].reason == "запрещённое слово: spam"
