# Copyright (c) 2025 sprowii
"""Антифлуд для модерации групп.

Скользящее окно меток времени на пару (group_id, user_id).
Окно хранится в ModerationState, чистится лениво при каждом обращении
и полностью сбрасывается после срабатывания.
"""
import time
from dataclasses import dataclass
from typing import Optional

from groupwarden.logging_config import log
from groupwarden.moderation.models import SpamConfig
from groupwarden.moderation.state import ModerationState
from groupwarden.security.data_protection import pseudonymize_id


@dataclass
class FloodCheckResult:
    """Результат проверки на флуд."""
    is_flood: bool
    message_count: int

    @property
    def reason(self) -> str:
        return f"флуд: {self.message_count} сообщений"


class FloodDetector:
    """Детектор флуда (только время, без анализа содержимого)."""

    def __init__(self, state: ModerationState):
        self.state = state

    def record_message(
        self,
        group_id: int,
        user_id: int,
        settings: SpamConfig,
        timestamp: Optional[float] = None,
    ) -> FloodCheckResult:
        """Записать сообщение и проверить окно.

        Нарушение, когда в окне window_seconds больше max_messages сообщений.
        Чтение, обрезка и запись окна идут без await.
        """
        if timestamp is None:
            timestamp = time.time()

        key = (group_id, user_id)
        window = [
            ts for ts in self.state.flood_windows.get(key, [])
            if timestamp - ts < settings.window_seconds
        ]
        window.append(timestamp)

        if len(window) > settings.max_messages:
            # Сбрасываем окно, чтобы следующие сообщения не срабатывали повторно
            self.state.flood_windows[key] = []
            log.debug(f"Флуд от {pseudonymize_id(user_id)}: {len(window)} сообщений за {settings.window_seconds} с")
            return FloodCheckResult(is_flood=True, message_count=len(window))

        self.state.flood_windows[key] = window
        return FloodCheckResult(is_flood=False, message_count=len(window))

    def window_size(self, group_id: int, user_id: int) -> int:
        return len(self.state.flood_windows.get((group_id, user_id), []))

    def clear(self, group_id: int, user_id: int) -> None:
        self.state.flood_windows.pop((group_id, user_id), None)
