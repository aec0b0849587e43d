# Copyright (c) 2025 sprowii
"""Применение наказаний.

Порядок для каждого нарушения фиксирован:
1. удаление сообщения-нарушителя (если включено, ошибка не прерывает цепочку)
2. само действие: warn (только уведомление), mute, kick
3. запись в журнал наказаний

Ошибка адаптера при действии логируется, не повторяется
и не мешает записи в журнал.
"""
import time
from dataclasses import dataclass
from typing import Callable, Optional

from groupwarden.logging_config import log
from groupwarden.moderation.capabilities import CapabilityAdapter, CapabilityError, UnsupportedCapability
from groupwarden.moderation.escalation import EscalationLedger, PenaltyDecision
from groupwarden.moderation.logger import PunishmentLogger
from groupwarden.moderation.models import MAX_MUTE_SECONDS, GroupRule, PenaltyAction, PunishmentRecord
from groupwarden.security.data_protection import pseudonymize_chat_id, pseudonymize_id
from groupwarden.utils.text import format_duration


@dataclass
class PenaltyOutcome:
    """Результат применения наказания."""
    decision: PenaltyDecision
    applied: bool = False
    recalled: bool = False
    recorded: bool = False
    unsupported: bool = False
    error: Optional[str] = None
    record: Optional[PunishmentRecord] = None

    @property
    def action(self) -> PenaltyAction:
        return self.decision.action

    @property
    def mute_seconds(self) -> int:
        return self.decision.mute_seconds

    @property
    def offense_count(self) -> int:
        return self.decision.offense_count


def clamp_mute_seconds(seconds: int) -> int:
    return max(1, min(int(seconds), MAX_MUTE_SECONDS))


def build_notice(action: PenaltyAction, user: str, reason: str, mute_seconds: int, offense_count: int) -> str:
    if action == PenaltyAction.WARN:
        return f"⚠️ {user}, предупреждение: {reason} (нарушение #{offense_count})"
    if action == PenaltyAction.MUTE:
        return f"🔇 {user} замучен на {format_duration(mute_seconds)}: {reason}"
    return f"👢 {user} исключён из группы: {reason}"


class PenaltyExecutor:
    def __init__(
        self,
        adapter: CapabilityAdapter,
        ledger: EscalationLedger,
        punishment_logger: PunishmentLogger,
        clock: Callable[[], float] = time.time,
    ):
        self.adapter = adapter
        self.ledger = ledger
        self.punishment_logger = punishment_logger
        self._clock = clock

    async def apply(
        self,
        rule: GroupRule,
        user_id: int,
        reason: str,
        default_action: PenaltyAction,
        default_mute_seconds: int,
        message_id: Optional[int] = None,
        user_display: Optional[str] = None,
    ) -> PenaltyOutcome:
        """Зарегистрировать нарушение и применить наказание.

        Args:
            rule: Правила группы
            user_id: ID нарушителя
            reason: Причина (попадает в уведомление и журнал)
            default_action: Действие детектора, если таблица не дала ступени
            default_mute_seconds: Длительность мута детектора по умолчанию
            message_id: Сообщение-нарушитель для удаления (None для ручного вызова)
            user_display: Как называть пользователя в уведомлении
        """
        group_id = rule.group_id
        now = self._clock()
        # Решение принимается до первого await
        decision = self.ledger.decide(
            group_id, user_id, rule.penalty, default_action, default_mute_seconds, now=now
        )
        outcome = PenaltyOutcome(decision=decision)

        if message_id is not None and rule.auto_recall:
            outcome.recalled = await self.recall(group_id, message_id)

        await self._enforce(rule, user_id, reason, decision, outcome, user_display or str(user_id))

        mute_seconds = clamp_mute_seconds(decision.mute_seconds) if decision.action == PenaltyAction.MUTE else 0
        outcome.record = PunishmentRecord.create(
            group_id=group_id,
            user_id=user_id,
            reason=reason,
            action=decision.action.value,
            mute_seconds=mute_seconds,
            offense_count=decision.offense_count,
            timestamp=now,
        )
        outcome.recorded = await self.punishment_logger.log_punishment(outcome.record)
        return outcome

    async def recall(self, group_id: int, message_id: int) -> bool:
        try:
            await self.adapter.delete_message(group_id, message_id)
            return True
        except UnsupportedCapability:
            log.debug("delete_message не поддерживается адаптером, пропускаем")
        except CapabilityError as exc:
            log.warning(f"Не удалось удалить сообщение в группе {pseudonymize_chat_id(group_id)}: {exc}")
        return False

    async def _enforce(
        self,
        rule: GroupRule,
        user_id: int,
        reason: str,
        decision: PenaltyDecision,
        outcome: PenaltyOutcome,
        user_display: str,
    ) -> None:
        group_id = rule.group_id
        action = decision.action
        mute_seconds = clamp_mute_seconds(decision.mute_seconds)
        notice = build_notice(action, user_display, reason, mute_seconds, decision.offense_count)

        try:
            if action == PenaltyAction.WARN:
                # Предупреждение и есть уведомление
                await self.adapter.post_message(group_id, notice)
                outcome.applied = True
                return
            if action == PenaltyAction.MUTE:
                await self.adapter.mute(group_id, user_id, mute_seconds)
            else:
                await self.adapter.kick(group_id, user_id, False)
            outcome.applied = True
        except UnsupportedCapability as exc:
            outcome.unsupported = True
            outcome.error = str(exc)
            log.debug(f"{action.value} не поддерживается адаптером: {exc}")
            return
        except CapabilityError as exc:
            outcome.error = str(exc)
            log.warning(
                f"Не удалось применить {action.value} к {pseudonymize_id(user_id)} "
                f"в группе {pseudonymize_chat_id(group_id)}: {exc}"
            )
            return

        try:
            await self.adapter.post_message(group_id, notice)
        except CapabilityError as exc:
            log.debug(f"Уведомление о наказании не отправлено: {exc}")
