# Copyright (c) 2025 sprowii
"""Оперативное состояние модерации в памяти процесса.

Все словари принадлежат экземпляру ModerationState, который создаёт
и владеет движок. Это кэш недавнего поведения, а не источник истины:
история наказаний хранится в Redis.

Ключи:
- offenses[(group_id, user_id)] - счётчик нарушений
- flood_windows[(group_id, user_id)] - метки времени последних сообщений
- challenges[(group_id, user_id)] - ожидающие проверки
- cooldowns[(group_id, rule_index)] / [(group_id,)] - время последнего срабатывания
- activity[(group_id, user_id)] - счётчики активности
"""
from typing import Dict, List, Optional, Tuple

from groupwarden.moderation.models import ActivityCounter, OffenseRecord, PendingChallenge

UserKey = Tuple[int, int]
CooldownKey = Tuple


class CooldownGate:
    """Примитив кулдауна: одно время последнего срабатывания на ключ."""

    def __init__(self):
        self._last_fired: Dict[CooldownKey, float] = {}

    def ready(self, key: CooldownKey, now: float, cooldown_seconds: float) -> bool:
        last = self._last_fired.get(key)
        return last is None or now - last >= cooldown_seconds

    def try_acquire(self, key: CooldownKey, now: float, cooldown_seconds: float) -> bool:
        """Проверить кулдаун и сразу отметить срабатывание.

        Проверка и запись выполняются без точек переключения, поэтому
        два быстрых события не могут сработать оба.
        """
        if not self.ready(key, now, cooldown_seconds):
            return False
        self._last_fired[key] = now
        return True

    def last_fired(self, key: CooldownKey) -> Optional[float]:
        return self._last_fired.get(key)

    def restore(self, key: CooldownKey, last_fired: Optional[float]) -> None:
        """Вернуть предыдущее значение (действие после try_acquire не удалось)."""
        if last_fired is None:
            self._last_fired.pop(key, None)
        else:
            self._last_fired[key] = last_fired

    def prune(self, now: float, max_age: float) -> int:
        keys = [key for key, ts in self._last_fired.items() if now - ts > max_age]
        for key in keys:
            del self._last_fired[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._last_fired)


class ModerationState:
    """Хранилище оперативного состояния одного движка."""

    def __init__(self):
        self.offenses: Dict[UserKey, OffenseRecord] = {}
        self.flood_windows: Dict[UserKey, List[float]] = {}
        self.challenges: Dict[UserKey, PendingChallenge] = {}
        self.cooldowns = CooldownGate()
        self.activity: Dict[UserKey, ActivityCounter] = {}

    def cleanup(self, now: float, offense_max_age: float = 86400, flood_max_age: float = 3600) -> int:
        """Удалить устаревшие записи нарушений, окна флуда и кулдауны.

        Ожидающие проверки и счётчики активности не трогаются:
        проверки удаляет их таймер, активность нужна для отчётов.

        Returns:
            Количество удалённых записей
        """
        removed = 0

        stale_offenses = [
            key for key, record in self.offenses.items()
            if now - record.last_offense_at > offense_max_age
        ]
        for key in stale_offenses:
            del self.offenses[key]
        removed += len(stale_offenses)

        stale_windows = [
            key for key, stamps in self.flood_windows.items()
            if not stamps or now - stamps[-1] > flood_max_age
        ]
        for key in stale_windows:
            del self.flood_windows[key]
        removed += len(stale_windows)

        removed += self.cooldowns.prune(now, offense_max_age)
        return removed
