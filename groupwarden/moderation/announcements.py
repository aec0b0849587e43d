# Copyright (c) 2025 sprowii
"""Автоматические объявления.

- Объявления по ключевым словам: каждое правило со своим кулдауном,
  одно сообщение может запустить несколько правил.
- Объявления по расписанию: периодические задачи asyncio на группу.
  Замена расписания группы = отмена всех её задач и запуск новых.
- Упоминание всех (@all) с кулдауном на группу.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from groupwarden.logging_config import log
from groupwarden.moderation.capabilities import CapabilityAdapter, CapabilityError, UnsupportedCapability
from groupwarden.moderation.models import GroupRule, ScheduleAnnounce
from groupwarden.moderation.state import ModerationState
from groupwarden.security.data_protection import pseudonymize_chat_id


def first_keyword(text: str, keywords: List[str]) -> Optional[str]:
    for keyword in keywords:
        if keyword and keyword in text:
            return keyword
    return None


@dataclass
class BroadcastResult:
    sent: bool
    reason: str = ""
    retry_after: float = 0.0
    unsupported: bool = False


class AnnouncementDispatcher:
    """Объявления по ключевым словам и упоминание всех участников."""

    def __init__(
        self,
        state: ModerationState,
        adapter: CapabilityAdapter,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.adapter = adapter
        self._clock = clock

    async def scan_keywords(self, rule: GroupRule, text: str) -> List[int]:
        """Проверить сообщение по правилам объявлений.

        Returns:
            Индексы сработавших правил
        """
        if not text or not rule.keyword_announce:
            return []

        now = self._clock()
        to_send = []
        # Все кулдауны отмечаются до первой отправки
        for idx, announce in enumerate(rule.keyword_announce):
            if not announce.enabled or not announce.message:
                continue
            if first_keyword(text, announce.keywords) is None:
                continue
            if not self.state.cooldowns.try_acquire((rule.group_id, idx), now, announce.cooldown_seconds):
                continue
            to_send.append((idx, announce.message))

        fired = []
        for idx, message in to_send:
            try:
                await self.adapter.post_message(rule.group_id, message)
                fired.append(idx)
            except CapabilityError as exc:
                log.warning(f"Объявление #{idx} не отправлено в {pseudonymize_chat_id(rule.group_id)}: {exc}")
        return fired

    async def broadcast_everyone(self, rule: GroupRule, text: str) -> BroadcastResult:
        """Отправить объявление с упоминанием всех участников."""
        settings = rule.at_all
        if not settings.enabled:
            return BroadcastResult(sent=False, reason="упоминание всех выключено")

        key = (rule.group_id,)
        now = self._clock()
        previous = self.state.cooldowns.last_fired(key)
        if not self.state.cooldowns.try_acquire(key, now, settings.cooldown_seconds):
            retry_after = settings.cooldown_seconds - (now - (previous or now))
            return BroadcastResult(sent=False, reason="кулдаун", retry_after=max(0.0, retry_after))

        try:
            await self.adapter.post_message(rule.group_id, f"{self.adapter.EVERYONE_MENTION} {text}".strip())
        except UnsupportedCapability as exc:
            self.state.cooldowns.restore(key, previous)
            return BroadcastResult(sent=False, reason=str(exc), unsupported=True)
        except CapabilityError as exc:
            self.state.cooldowns.restore(key, previous)
            log.warning(f"Не удалось отправить @all в {pseudonymize_chat_id(rule.group_id)}: {exc}")
            return BroadcastResult(sent=False, reason=str(exc))

        log.info(f"@all отправлено в {pseudonymize_chat_id(rule.group_id)}")
        return BroadcastResult(sent=True)


class ScheduleRegistry:
    """Периодические объявления по группам.

    session_provider возвращает текущий адаптер платформы
    (или None, если подключения нет) и вызывается на каждом тике.
    """

    def __init__(self, session_provider: Callable[[], Optional[CapabilityAdapter]]):
        self.session_provider = session_provider
        self._tasks: Dict[int, List[asyncio.Task]] = {}

    def replace(self, group_id: int, schedules: List[ScheduleAnnounce]) -> int:
        """Отменить все задачи группы и запустить задачи по новым правилам.

        Returns:
            Количество запущенных задач
        """
        self.cancel_group(group_id)

        tasks = []
        for idx, schedule in enumerate(schedules):
            if not schedule.enabled or not schedule.message:
                continue
            interval = max(1.0, schedule.interval_minutes) * 60
            tasks.append(asyncio.create_task(self._run(group_id, idx, interval, schedule.message)))

        if tasks:
            self._tasks[group_id] = tasks
            log.info(f"Расписание объявлений {pseudonymize_chat_id(group_id)}: {len(tasks)} задач")
        return len(tasks)

    def cancel_group(self, group_id: int) -> int:
        tasks = self._tasks.pop(group_id, [])
        for task in tasks:
            task.cancel()
        return len(tasks)

    def cancel_all(self) -> int:
        count = 0
        for group_id in list(self._tasks):
            count += self.cancel_group(group_id)
        return count

    def active_count(self, group_id: Optional[int] = None) -> int:
        if group_id is not None:
            return sum(1 for task in self._tasks.get(group_id, []) if not task.done())
        return sum(1 for tasks in self._tasks.values() for task in tasks if not task.done())

    async def tick(self, group_id: int, message: str) -> bool:
        """Одна отправка по расписанию. Без подключения - пропуск до следующего тика."""
        adapter = self.session_provider()
        if adapter is None or not adapter.connected:
            log.warning(f"Нет подключения к платформе, объявление для {pseudonymize_chat_id(group_id)} пропущено")
            return False
        try:
            await adapter.post_message(group_id, message)
            return True
        except CapabilityError as exc:
            log.warning(f"Объявление по расписанию не отправлено в {pseudonymize_chat_id(group_id)}: {exc}")
            return False

    async def _run(self, group_id: int, idx: int, interval: float, message: str) -> None:
        while True:
            await asyncio.sleep(interval)
            log.debug(f"Тик расписания #{idx} для {pseudonymize_chat_id(group_id)}")
            await self.tick(group_id, message)
