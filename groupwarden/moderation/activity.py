# Copyright (c) 2025 sprowii
"""Счётчики активности участников.

Обновляются для каждого сообщения, в том числе в группах
с выключенной модерацией. В Redis сбрасываются пачкой: не чаще
одного раза за flush_interval, сколько бы сообщений ни пришло.
"""
import asyncio
import copy
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from groupwarden import config
from groupwarden.logging_config import log
from groupwarden.moderation.models import ActivityCounter
from groupwarden.moderation.state import ModerationState, UserKey

Persist = Callable[[Dict[tuple, ActivityCounter]], Awaitable[int]]


def date_tag(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d")


class ActivityTracker:
    def __init__(
        self,
        state: ModerationState,
        persist: Optional[Persist] = None,
        flush_interval: float = config.ACTIVITY_FLUSH_INTERVAL_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.persist = persist
        self.flush_interval = flush_interval
        self._clock = clock
        self._dirty: Set[UserKey] = set()
        self._flush_task: Optional[asyncio.Task] = None

    def record(self, group_id: int, user_id: int, now: Optional[float] = None) -> ActivityCounter:
        """Учесть сообщение. При смене дня счётчик today обнуляется."""
        if now is None:
            now = self._clock()

        key = (group_id, user_id)
        counter = self.state.activity.get(key)
        if counter is None:
            counter = ActivityCounter()
            self.state.activity[key] = counter

        tag = date_tag(now)
        if counter.today_date_tag != tag:
            counter.today = 0
            counter.today_date_tag = tag
        counter.total += 1
        counter.today += 1
        counter.last_message_at = now

        self._dirty.add(key)
        self._schedule_flush()
        return counter

    def get(self, group_id: int, user_id: int) -> Optional[ActivityCounter]:
        return self.state.activity.get((group_id, user_id))

    def group_stats(self, group_id: int, limit: int = 20) -> List[Tuple[int, ActivityCounter]]:
        """Самые активные участники группы: [(user_id, counter), ...].

        Счётчик today у участника, не писавшего сегодня, отдаётся как 0.
        """
        today = date_tag(self._clock())
        result = []
        for (g_id, user_id), counter in self.state.activity.items():
            if g_id != group_id:
                continue
            view = copy.copy(counter)
            if view.today_date_tag != today:
                view.today = 0
            result.append((user_id, view))
        result.sort(key=lambda item: item[1].total, reverse=True)
        return result[:limit]

    def load(self, counters: Dict[tuple, ActivityCounter]) -> int:
        """Подгрузить сохранённые счётчики (при старте). Живые значения не перезаписываются."""
        loaded = 0
        for key, counter in counters.items():
            if key not in self.state.activity:
                self.state.activity[key] = counter
                loaded += 1
        return loaded

    @property
    def pending(self) -> int:
        return len(self._dirty)

    async def flush(self) -> int:
        """Записать изменённые счётчики. При ошибке они остаются в очереди.

        Returns:
            Количество записанных счётчиков
        """
        if not self._dirty or self.persist is None:
            return 0

        keys = list(self._dirty)
        self._dirty.clear()
        snapshot = {
            key: copy.copy(self.state.activity[key])
            for key in keys if key in self.state.activity
        }
        try:
            return await self.persist(snapshot)
        except Exception as exc:
            self._dirty.update(keys)
            log.error(f"Не удалось сохранить активность ({len(keys)} счётчиков): {exc}")
            return 0

    async def shutdown(self) -> int:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None
        return await self.flush()

    def _schedule_flush(self) -> None:
        if self.persist is None:
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Вне event loop сброс выполнит shutdown() или периодическая задача
            return
        self._flush_task = loop.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self.flush_interval)
        await self.flush()
        if self._dirty:
            # Изменения, пришедшие во время записи
            self._flush_task = asyncio.get_running_loop().create_task(self._delayed_flush())
