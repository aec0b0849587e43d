# Copyright (c) 2025 sprowii
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from groupwarden import config
from groupwarden.logging_config import log
from groupwarden.moderation.activity import ActivityTracker, Persist
from groupwarden.moderation.announcements import AnnouncementDispatcher, BroadcastResult, ScheduleRegistry
from groupwarden.moderation.capabilities import CapabilityAdapter, CapabilityError, UnsupportedCapability
from groupwarden.moderation.captcha import ChallengeResolution, JoinChallengeManager
from groupwarden.moderation.content_filter import (
    ForbiddenContentDetector,
    ImageClassifier,
    ProfanityClassifier,
)
from groupwarden.moderation.escalation import EscalationLedger
from groupwarden.moderation.logger import PunishmentLogger
from groupwarden.moderation.models import (
    AppealRecord,
    GroupRule,
    InboundMessage,
    MemberEvent,
    PenaltyAction,
    PunishmentRecord,
    in_list,
)
from groupwarden.moderation.penalties import PenaltyExecutor, PenaltyOutcome
from groupwarden.moderation.permissions import RoleResolver, is_exempt
from groupwarden.moderation.spam import FloodDetector
from groupwarden.moderation.state import ModerationState
from groupwarden.moderation.welcome import WelcomeManager
from groupwarden.security.data_protection import pseudonymize_chat_id, pseudonymize_id

BLACKLIST_REASON = "участник в чёрном списке"
IMAGE_REASON = "недопустимое изображение"
FILE_REJECTED_NOTICE = "В этой группе запрещено отправлять файлы такого типа."


class MessageAction(str, Enum):
    """Чем закончилась обработка сообщения."""
    NONE = "none"
    CHALLENGE = "challenge"
    DISABLED = "disabled"
    EXEMPT = "exempt"
    BLACKLIST = "blacklist"
    PENALTY = "penalty"
    FILE_REJECTED = "file_rejected"


@dataclass
class MessageVerdict:
    """Результат обработки входящего сообщения."""
    action: MessageAction
    reason: str = ""
    challenge: Optional[ChallengeResolution] = None
    penalty: Optional[PenaltyOutcome] = None
    announcements: List[int] = field(default_factory=list)


class ModerationEngine:
    """Движок модерации групп.

    Объединяет все компоненты и предоставляет единую точку входа
    для событий платформы и ручных команд. Всё оперативное состояние
    принадлежит экземпляру (ModerationState).

    Args:
        adapter: Адаптер возможностей платформы
        resolver: Источник правил (async get_rule(group_id))
        sink: Журнал (async record_punishment / record_appeal / load_punishments)
    """

    def __init__(
        self,
        adapter: CapabilityAdapter,
        resolver,
        sink,
        state: Optional[ModerationState] = None,
        clock: Callable[[], float] = time.time,
        profanity_classifier: Optional[ProfanityClassifier] = None,
        image_classifier: Optional[ImageClassifier] = None,
        activity_persist: Optional[Persist] = None,
        session_provider: Optional[Callable[[], Optional[CapabilityAdapter]]] = None,
        grace_seconds: float = config.CHALLENGE_GRACE_SEC,
        rng=None,
    ):
        self.adapter = adapter
        self.resolver = resolver
        self.sink = sink
        self.state = state or ModerationState()
        self._clock = clock

        self.roles = RoleResolver(adapter, clock=clock)
        self.ledger = EscalationLedger(self.state, clock)
        self.punishment_logger = PunishmentLogger(sink)
        self.penalties = PenaltyExecutor(adapter, self.ledger, self.punishment_logger, clock)
        self.forbidden = ForbiddenContentDetector(profanity_classifier)
        self.image_classifier = image_classifier
        self.flood = FloodDetector(self.state)
        self.challenges = JoinChallengeManager(
            self.state, adapter, self.punishment_logger, clock=clock, grace_seconds=grace_seconds, rng=rng
        )
        self.welcome = WelcomeManager(adapter)
        self.announcements = AnnouncementDispatcher(self.state, adapter, clock)
        self.schedules = ScheduleRegistry(session_provider or (lambda: self.adapter))
        self.activity = ActivityTracker(self.state, persist=activity_persist, clock=clock)

    # ========================================================================
    # RULES
    # ========================================================================

    async def get_rule(self, group_id: int) -> Optional[GroupRule]:
        """Актуальные правила группы (читаются заново на каждое событие)."""
        try:
            return await self.resolver.get_rule(group_id)
        except Exception as exc:
            log.error(f"Не удалось получить правила группы {pseudonymize_chat_id(group_id)}: {exc}")
            return None

    async def reload_group(self, group_id: int) -> int:
        """Перечитать правила группы: перезапустить расписание и сбросить кэш ролей.

        Returns:
            Количество запущенных задач расписания
        """
        rule = await self.get_rule(group_id)
        self.roles.invalidate(group_id=group_id)
        schedules = rule.schedule_announce if rule is not None and rule.enabled else []
        return self.schedules.replace(group_id, schedules)

    def rule_change_listener(self, loop: asyncio.AbstractEventLoop) -> Callable[[int], None]:
        """Колбэк для хранилища правил: перезапуск группы в цикле событий движка.

        Хранилище вызывает его из любого потока (веб-сервер, executor).
        """

        def _on_rule_changed(group_id: int) -> None:
            asyncio.run_coroutine_threadsafe(self.reload_group(group_id), loop)

        return _on_rule_changed

    async def start(self, group_ids: List[int]) -> int:
        armed = 0
        for group_id in group_ids:
            armed += await self.reload_group(group_id)
        log.info(f"ModerationEngine started: {len(group_ids)} групп, {armed} задач расписания")
        return armed

    async def shutdown(self) -> None:
        self.schedules.cancel_all()
        self.challenges.shutdown()
        await self.activity.shutdown()
        log.info("ModerationEngine stopped")

    async def cleanup(self) -> int:
        """Периодическая чистка устаревшего состояния и просроченных проверок."""
        removed = self.state.cleanup(self._clock())
        removed += self.roles.cleanup_expired()
        removed += await self.challenges.expire_overdue()
        return removed

    # ========================================================================
    # MESSAGE PIPELINE
    # ========================================================================

    async def handle_message(self, message: InboundMessage) -> MessageVerdict:
        """Обработать входящее сообщение группы.

        Порядок: активность -> проверка новичка -> включена ли модерация ->
        исключения (белый список, менеджеры, админы) -> чёрный список ->
        запрещённые слова -> флуд -> строгая проверка graylist ->
        файлы и изображения -> объявления по ключевым словам.
        """
        group_id, user_id = message.group_id, message.user_id
        now = message.timestamp if message.timestamp is not None else self._clock()
        display = message.user_name or str(user_id)

        # Активность считается всегда, даже в группах без модерации
        self.activity.record(group_id, user_id, now)

        text = self.adapter.extract_text(message.content)
        if text:
            resolution = await self.challenges.resolve(group_id, user_id, text, display)
            if resolution is not None:
                return MessageVerdict(MessageAction.CHALLENGE, reason=resolution.state.value, challenge=resolution)

        rule = await self.get_rule(group_id)
        if rule is None or not rule.enabled:
            return MessageVerdict(MessageAction.DISABLED)

        if await is_exempt(rule, user_id, self.roles, message.sender_role):
            return MessageVerdict(MessageAction.EXEMPT)

        if in_list(rule.blacklist, user_id):
            await self._kick_blacklisted(rule, user_id, message.message_id)
            return MessageVerdict(MessageAction.BLACKLIST, reason=BLACKLIST_REASON)

        outcome = await self._check_content(rule, message, text, now, display)
        if outcome is not None:
            return MessageVerdict(MessageAction.PENALTY, reason=outcome.record.reason if outcome.record else "", penalty=outcome)

        verdict = await self._check_media(rule, message, display)
        if verdict is not None:
            return verdict

        fired = await self.announcements.scan_keywords(rule, text)
        return MessageVerdict(MessageAction.NONE, announcements=fired)

    async def _check_content(
        self,
        rule: GroupRule,
        message: InboundMessage,
        text: str,
        now: float,
        display: str,
    ) -> Optional[PenaltyOutcome]:
        user_id = message.user_id

        result = await self.forbidden.check(text, rule)
        if result.is_filtered:
            log.debug(f"Запрещённое слово от {pseudonymize_id(user_id)}")
            return await self._punish(
                rule, message, result.reason, rule.forbidden.action, rule.forbidden.mute_seconds, display
            )

        if rule.spam.enabled:
            flood = self.flood.record_message(rule.group_id, user_id, rule.spam, now)
            if flood.is_flood:
                return await self._punish(
                    rule, message, flood.reason, PenaltyAction.MUTE, rule.spam.mute_seconds, display
                )

        # Участник под наблюдением: исходное содержимое, даже при выключенном фильтре
        if in_list(rule.graylist, user_id):
            strict = await self.forbidden.check(message.content, rule, strict=True)
            if strict.is_filtered:
                return await self._punish(
                    rule, message, strict.reason, rule.forbidden.action, rule.forbidden.mute_seconds, display
                )
        return None

    async def _check_media(self, rule: GroupRule, message: InboundMessage, display: str) -> Optional[MessageVerdict]:
        file_manage = rule.file_manage
        if file_manage.enabled and file_manage.allow_extensions:
            for attachment in message.attachments:
                if attachment.kind != "file":
                    continue
                if attachment.extension and attachment.extension in file_manage.allow_extensions:
                    continue
                await self._post(rule.group_id, FILE_REJECTED_NOTICE)
                if rule.auto_recall and message.message_id is not None:
                    await self.penalties.recall(rule.group_id, message.message_id)
                return MessageVerdict(MessageAction.FILE_REJECTED, reason=attachment.name)

        if self.image_classifier is not None:
            for attachment in message.attachments:
                if attachment.kind != "image" or not attachment.url:
                    continue
                result = await self.image_classifier.classify(attachment.url)
                if result.is_hit:
                    outcome = await self._punish(
                        rule, message, IMAGE_REASON, rule.forbidden.action, rule.forbidden.mute_seconds, display
                    )
                    return MessageVerdict(MessageAction.PENALTY, reason=IMAGE_REASON, penalty=outcome)
        return None

    async def _punish(
        self,
        rule: GroupRule,
        message: InboundMessage,
        reason: str,
        default_action: PenaltyAction,
        default_mute_seconds: int,
        display: str,
    ) -> PenaltyOutcome:
        outcome = await self.penalties.apply(
            rule,
            message.user_id,
            reason,
            default_action,
            default_mute_seconds,
            message_id=message.message_id,
            user_display=display,
        )
        log.info(
            f"Наказание {outcome.action.value} (#{outcome.offense_count}) для {pseudonymize_id(message.user_id)} "
            f"в группе {pseudonymize_chat_id(rule.group_id)}: {reason}"
        )
        return outcome

    async def _kick_blacklisted(self, rule: GroupRule, user_id: int, message_id: Optional[int] = None) -> bool:
        if message_id is not None and rule.auto_recall:
            await self.penalties.recall(rule.group_id, message_id)

        kicked = False
        try:
            await self.adapter.kick(rule.group_id, user_id, True)
            kicked = True
        except UnsupportedCapability:
            log.debug("kick не поддерживается адаптером, пропускаем")
        except CapabilityError as exc:
            log.warning(f"Не удалось исключить {pseudonymize_id(user_id)} из чёрного списка: {exc}")

        record = PunishmentRecord.create(
            group_id=rule.group_id,
            user_id=user_id,
            reason=BLACKLIST_REASON,
            action=PenaltyAction.KICK.value,
            timestamp=self._clock(),
        )
        await self.punishment_logger.log_punishment(record)
        return kicked

    # ========================================================================
    # MEMBERSHIP
    # ========================================================================

    async def handle_member_added(self, event: MemberEvent) -> Optional[str]:
        """Новый участник: чёрный список, уведомление, проверка, памятка.

        Returns:
            "blacklist", "joined" или None (группа без модерации)
        """
        rule = await self.get_rule(event.group_id)
        if rule is None or not rule.enabled:
            return None

        if in_list(rule.blacklist, event.user_id):
            await self._kick_blacklisted(rule, event.user_id)
            return "blacklist"

        user = event.user_name or str(event.user_id)
        group = event.group_name or str(event.group_id)
        await self.welcome.send_join_notice(rule, user, group)
        await self.challenges.issue(rule, event.user_id, user)
        await self.welcome.send_welcome_guide(rule, user, group)
        return "joined"

    async def handle_join_request(self, event: MemberEvent) -> bool:
        """Заявка на вступление: одобряется, если включено auto_approve.

        Returns:
            True если заявка одобрена
        """
        rule = await self.get_rule(event.group_id)
        if rule is None or not rule.enabled or not rule.auto_approve:
            return False
        if in_list(rule.blacklist, event.user_id):
            log.info(f"Заявка {pseudonymize_id(event.user_id)} из чёрного списка не одобрена")
            return False

        try:
            await self.adapter.approve_join_request(event.group_id, event.user_id)
        except UnsupportedCapability:
            log.debug("approve_join_request не поддерживается адаптером, пропускаем")
            return False
        except CapabilityError as exc:
            log.error(f"Не удалось одобрить заявку {pseudonymize_id(event.user_id)}: {exc}")
            return False

        log.info(f"Заявка {pseudonymize_id(event.user_id)} в группу {pseudonymize_chat_id(event.group_id)} одобрена")
        return True

    async def handle_member_removed(self, event: MemberEvent) -> None:
        self.challenges.discard(event.group_id, event.user_id)
        self.roles.invalidate(event.group_id, event.user_id)

        rule = await self.get_rule(event.group_id)
        if rule is None or not rule.enabled:
            return
        await self.welcome.send_leave_notice(
            rule, event.user_name or str(event.user_id), event.group_name or str(event.group_id)
        )

    # ========================================================================
    # MANUAL ENTRY POINTS
    # ========================================================================

    async def apply_penalty(self, group_id: int, user_id: int, reason: str) -> PenaltyOutcome:
        """Наказание по команде: без детекторов, но через журнал эскалации."""
        rule = await self.get_rule(group_id) or GroupRule(group_id=group_id)
        return await self.penalties.apply(
            rule, user_id, reason, rule.forbidden.action, rule.forbidden.mute_seconds
        )

    async def broadcast_everyone(self, group_id: int, text: str) -> BroadcastResult:
        rule = await self.get_rule(group_id)
        if rule is None:
            return BroadcastResult(sent=False, reason="группа не настроена")
        return await self.announcements.broadcast_everyone(rule, text)

    async def submit_appeal(self, group_id: int, user_id: int, text: str) -> Optional[AppealRecord]:
        """Принять апелляцию и уведомить менеджеров группы.

        Returns:
            Сохранённая апелляция или None, если апелляции выключены
            или запись не удалась
        """
        rule = await self.get_rule(group_id)
        if rule is None or not rule.appeal.enabled or not text.strip():
            return None

        record = AppealRecord.create(group_id, user_id, text.strip(), timestamp=self._clock())
        try:
            await self.sink.record_appeal(record)
        except Exception as exc:
            log.error(f"Не удалось сохранить апелляцию: {exc}")
            return None

        log.info(f"Апелляция от {pseudonymize_id(user_id)} в группе {pseudonymize_chat_id(group_id)}")
        if rule.appeal.notify_managers:
            notice = f"📨 Апелляция от {user_id} в группе {group_id}:\n{record.text}"
            for manager in rule.managers:
                if not manager.lstrip("-").isdigit():
                    continue
                try:
                    await self.adapter.send_private_message(int(manager), notice)
                except CapabilityError as exc:
                    log.debug(f"Менеджер не уведомлён об апелляции: {exc}")
        return record

    async def get_records(self, group_id: int, limit: int = 10, user_id: Optional[int] = None) -> List[PunishmentRecord]:
        try:
            return await self.sink.load_punishments(group_id, limit, user_id)
        except Exception as exc:
            log.error(f"Не удалось загрузить журнал группы {pseudonymize_chat_id(group_id)}: {exc}")
            return []

    async def _post(self, group_id: int, text: str) -> None:
        try:
            await self.adapter.post_message(group_id, text)
        except CapabilityError as exc:
            log.debug(f"Сообщение не отправлено: {exc}")


# Глобальный экземпляр движка (создаётся при инициализации бота)
_engine: Optional[ModerationEngine] = None


def get_moderation_engine() -> Optional[ModerationEngine]:
    return _engine


def init_moderation_engine(adapter: CapabilityAdapter, resolver, sink, **kwargs) -> ModerationEngine:
    """Инициализировать глобальный движок модерации.

    Вызывается при старте бота.
    """
    global _engine
    _engine = ModerationEngine(adapter, resolver, sink, **kwargs)
    log.info("ModerationEngine initialized")
    return _engine
