# Copyright (c) 2025 sprowii
"""Проверка новых участников вопросом.

Состояния: NONE -> PENDING -> {PASSED, FAILED, EXPIRED}.
Конечные состояния означают удаление записи из ModerationState.

- PASSED: первое текстовое сообщение совпало с одним из ответов
- FAILED: первое сообщение не совпало; запись удаляется, без кика и мута
- EXPIRED: истёк таймаут; запись удаляется, кик если kick_on_failure.
  Сообщение после дедлайна, пришедшее раньше таймера, тоже завершает
  проверку как EXPIRED, но без кика

Таймер проверяет запись перед действием: если проверка уже
завершена или заменена новой, срабатывание ничего не делает.
"""
import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from groupwarden import config
from groupwarden.logging_config import log
from groupwarden.moderation.capabilities import CapabilityAdapter, CapabilityError, UnsupportedCapability
from groupwarden.moderation.logger import PunishmentLogger
from groupwarden.moderation.models import (
    GroupRule,
    PenaltyAction,
    PendingChallenge,
    PunishmentRecord,
    normalize_answer,
)
from groupwarden.moderation.state import ModerationState
from groupwarden.security.data_protection import pseudonymize_chat_id, pseudonymize_id

TIMEOUT_REASON = "проверка при входе не пройдена (таймаут)"


class ChallengeState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class ChallengeResolution:
    """Чем закончилась проверка."""
    state: ChallengeState
    kicked: bool = False


class JoinChallengeManager:
    """Менеджер проверок новых участников.

    Ответственность:
    - Выдача вопроса и запуск таймера
    - Перехват первого сообщения участника с активной проверкой
    - Кик по таймауту
    """

    def __init__(
        self,
        state: ModerationState,
        adapter: CapabilityAdapter,
        punishment_logger: Optional[PunishmentLogger] = None,
        clock: Callable[[], float] = time.time,
        grace_seconds: float = config.CHALLENGE_GRACE_SEC,
        rng: Optional[random.Random] = None,
    ):
        self.state = state
        self.adapter = adapter
        self.punishment_logger = punishment_logger
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._rng = rng or random.Random()
        # Задачи таймаута: {(group_id, user_id): asyncio.Task}
        self._timers: Dict[Tuple[int, int], asyncio.Task] = {}

    def get_state(self, group_id: int, user_id: int) -> ChallengeState:
        if (group_id, user_id) in self.state.challenges:
            return ChallengeState.PENDING
        return ChallengeState.NONE

    def get_challenge(self, group_id: int, user_id: int) -> Optional[PendingChallenge]:
        return self.state.challenges.get((group_id, user_id))

    async def issue(self, rule: GroupRule, user_id: int, user_display: Optional[str] = None) -> Optional[PendingChallenge]:
        """Выдать вопрос новому участнику.

        Returns:
            Созданная проверка или None, если проверка выключена
            или пул вопросов пуст
        """
        settings = rule.join_verify
        if not settings.enabled:
            return None

        pool = [question for question in settings.question_pool if question.q and question.a]
        if not pool:
            log.debug(f"Пустой пул вопросов в группе {pseudonymize_chat_id(rule.group_id)}, проверка не выдаётся")
            return None

        question = self._rng.choice(pool)
        answers = frozenset(normalize_answer(answer) for answer in question.a if normalize_answer(answer))
        key = (rule.group_id, user_id)
        challenge = PendingChallenge(
            question=question.q,
            acceptable_answers=answers,
            expires_at=self._clock() + settings.timeout_seconds,
            kick_on_failure=settings.kick_on_fail,
        )
        # Запись и таймер ставятся до первого await
        self.state.challenges[key] = challenge
        self._arm_timer(key, challenge, settings.timeout_seconds + self.grace_seconds)

        log.info(f"Проверка выдана {pseudonymize_id(user_id)} в группе {pseudonymize_chat_id(rule.group_id)}")
        await self._post(
            rule.group_id,
            f"👋 {user_display or user_id}, ответьте на вопрос в течение "
            f"{int(settings.timeout_seconds)} с:\n{question.q}",
        )
        return challenge

    async def resolve(
        self,
        group_id: int,
        user_id: int,
        text: str,
        user_display: Optional[str] = None,
    ) -> Optional[ChallengeResolution]:
        """Обработать сообщение участника с активной проверкой.

        Returns:
            None если проверки нет (сообщение идёт дальше по конвейеру),
            иначе результат; сообщение в этом случае поглощается
        """
        key = (group_id, user_id)
        challenge = self.state.challenges.get(key)
        if challenge is None:
            return None

        del self.state.challenges[key]
        self._cancel_timer(key)
        display = user_display or user_id

        if challenge.is_expired(self._clock()):
            # Ответ после дедлайна, но до таймера: без кика
            log.info(f"Ответ после таймаута: {pseudonymize_id(user_id)} в группе {pseudonymize_chat_id(group_id)}")
            await self._post(group_id, f"⏱ {display}, время на проверку истекло.")
            return ChallengeResolution(ChallengeState.EXPIRED)

        if challenge.matches(text):
            log.info(f"Проверка пройдена: {pseudonymize_id(user_id)} в группе {pseudonymize_chat_id(group_id)}")
            await self._post(group_id, f"✅ {display}, проверка пройдена. Добро пожаловать!")
            return ChallengeResolution(ChallengeState.PASSED)

        log.info(f"Неверный ответ: {pseudonymize_id(user_id)} в группе {pseudonymize_chat_id(group_id)}")
        await self._post(group_id, f"❌ {display}, неверный ответ. Проверка завершена.")
        return ChallengeResolution(ChallengeState.FAILED)

    async def expire(
        self,
        group_id: int,
        user_id: int,
        expected: Optional[PendingChallenge] = None,
    ) -> ChallengeResolution:
        """Завершить проверку по таймауту.

        Ничего не делает, если записи нет, она заменена другой
        или её время ещё не истекло.
        """
        key = (group_id, user_id)
        challenge = self.state.challenges.get(key)
        if challenge is None or (expected is not None and challenge is not expected):
            return ChallengeResolution(ChallengeState.NONE)
        if not challenge.is_expired(self._clock()):
            return ChallengeResolution(ChallengeState.PENDING)

        del self.state.challenges[key]
        current = asyncio.current_task()
        timer = self._timers.get(key)
        if timer is not None and timer is not current:
            self._cancel_timer(key)

        log.info(f"Таймаут проверки: {pseudonymize_id(user_id)} в группе {pseudonymize_chat_id(group_id)}")
        kicked = False
        if challenge.kick_on_failure:
            kicked = await self._kick(group_id, user_id)
            await self._post(group_id, f"⏱ {user_id}: время на проверку истекло, участник исключён.")
        else:
            await self._post(group_id, f"⏱ {user_id}: время на проверку истекло.")
        return ChallengeResolution(ChallengeState.EXPIRED, kicked=kicked)

    async def expire_overdue(self) -> int:
        """Завершить все просроченные проверки, чьи таймеры не сработали.

        Returns:
            Количество завершённых проверок
        """
        now = self._clock()
        overdue = [
            (key, challenge) for key, challenge in self.state.challenges.items()
            if challenge.is_expired(now)
        ]
        count = 0
        for (group_id, user_id), challenge in overdue:
            resolution = await self.expire(group_id, user_id, expected=challenge)
            if resolution.state == ChallengeState.EXPIRED:
                count += 1
        return count

    def discard(self, group_id: int, user_id: int) -> bool:
        """Удалить проверку без последствий (участник вышел)."""
        key = (group_id, user_id)
        self._cancel_timer(key)
        return self.state.challenges.pop(key, None) is not None

    def shutdown(self) -> int:
        """Отменить все таймеры. Записи остаются в состоянии."""
        count = len(self._timers)
        for task in list(self._timers.values()):
            task.cancel()
        self._timers.clear()
        return count

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _arm_timer(self, key: Tuple[int, int], challenge: PendingChallenge, delay: float) -> None:
        self._cancel_timer(key)
        self._timers[key] = asyncio.create_task(self._expire_after(key, challenge, delay))

    def _cancel_timer(self, key: Tuple[int, int]) -> None:
        task = self._timers.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire_after(self, key: Tuple[int, int], challenge: PendingChallenge, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            resolution = await self.expire(key[0], key[1], expected=challenge)
            while resolution.state == ChallengeState.PENDING:
                # Таймер проснулся раньше expires_at
                await asyncio.sleep(max(0.01, challenge.expires_at - self._clock()))
                resolution = await self.expire(key[0], key[1], expected=challenge)
        except asyncio.CancelledError:
            # Проверка завершена раньше таймера
            raise
        except Exception as exc:
            log.error(f"Ошибка обработки таймаута проверки: {exc}")
        finally:
            if self._timers.get(key) is asyncio.current_task():
                self._timers.pop(key, None)

    async def _kick(self, group_id: int, user_id: int) -> bool:
        kicked = False
        try:
            await self.adapter.kick(group_id, user_id, False)
            kicked = True
        except UnsupportedCapability:
            log.debug("kick не поддерживается адаптером, пропускаем")
        except CapabilityError as exc:
            log.warning(f"Не удалось исключить {pseudonymize_id(user_id)} после таймаута: {exc}")

        if self.punishment_logger is not None:
            record = PunishmentRecord.create(
                group_id=group_id,
                user_id=user_id,
                reason=TIMEOUT_REASON,
                action=PenaltyAction.KICK.value,
                timestamp=self._clock(),
            )
            await self.punishment_logger.log_punishment(record)
        return kicked

    async def _post(self, group_id: int, text: str) -> None:
        try:
            await self.adapter.post_message(group_id, text)
        except CapabilityError as exc:
            log.debug(f"Сообщение проверки не отправлено: {exc}")
