# Copyright (c) 2025 sprowii
"""Эскалация наказаний.

Счётчик нарушений на пару (group_id, user_id) с затуханием:
если с последнего нарушения прошло больше window_seconds, счёт
начинается заново с 1, иначе увеличивается на 1.

Ступень выбирается по таблице penalty.levels: запись с наибольшим
порогом, не превышающим текущий счёт. Пороги могут идти с пропусками.
"""
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from groupwarden.moderation.models import (
    OffenseRecord,
    PenaltyAction,
    PenaltyConfig,
    PenaltyLevel,
)
from groupwarden.moderation.state import ModerationState


def resolve_level(count: int, levels: Sequence[PenaltyLevel]) -> Optional[PenaltyLevel]:
    """Ступень для счёта count или None, если ни один порог не достигнут.

    Чистая функция: сортировка по убыванию порога устойчива, поэтому
    при равных порогах побеждает запись, стоящая раньше в настройках.
    """
    for level in sorted(levels, key=lambda item: item.threshold, reverse=True):
        if level.threshold <= count:
            return level
    return None


@dataclass
class PenaltyDecision:
    """Решение о наказании."""
    action: PenaltyAction
    mute_seconds: int
    offense_count: int
    level: Optional[PenaltyLevel] = None

    @property
    def from_table(self) -> bool:
        return self.level is not None


class EscalationLedger:
    """Журнал нарушений поверх ModerationState."""

    def __init__(self, state: ModerationState, clock: Callable[[], float] = time.time):
        self.state = state
        self._clock = clock

    def record_offense(
        self,
        group_id: int,
        user_id: int,
        window_seconds: float,
        now: Optional[float] = None,
    ) -> int:
        """Зарегистрировать нарушение и вернуть новый счёт.

        Чтение и запись записи выполняются без await.
        """
        if now is None:
            now = self._clock()

        key = (group_id, user_id)
        record = self.state.offenses.get(key)
        if record is None or now - record.last_offense_at > window_seconds:
            count = 1
        else:
            count = record.count + 1

        self.state.offenses[key] = OffenseRecord(count=count, last_offense_at=now)
        return count

    def decide(
        self,
        group_id: int,
        user_id: int,
        penalty: PenaltyConfig,
        default_action: PenaltyAction,
        default_mute_seconds: int,
        now: Optional[float] = None,
    ) -> PenaltyDecision:
        """Определить наказание за очередное нарушение.

        При выключенной эскалации журнал не ведётся: применяется
        действие детектора по умолчанию со счётом 1.
        """
        if not penalty.enabled:
            return PenaltyDecision(default_action, default_mute_seconds, offense_count=1)

        count = self.record_offense(group_id, user_id, penalty.window_seconds, now)
        level = resolve_level(count, penalty.levels)
        if level is None:
            return PenaltyDecision(default_action, default_mute_seconds, offense_count=count)

        mute_seconds = level.mute_seconds
        if level.action == PenaltyAction.MUTE and mute_seconds <= 0:
            mute_seconds = default_mute_seconds
        return PenaltyDecision(level.action, mute_seconds, offense_count=count, level=level)

    def get_count(self, group_id: int, user_id: int) -> int:
        record = self.state.offenses.get((group_id, user_id))
        return record.count if record else 0

    def reset(self, group_id: int, user_id: int) -> bool:
        return self.state.offenses.pop((group_id, user_id), None) is not None

    def history(self, group_id: int) -> List[tuple]:
        """Текущие счётчики группы: [(user_id, count), ...]."""
        return [
            (user_id, record.count)
            for (g_id, user_id), record in self.state.offenses.items()
            if g_id == group_id
        ]
