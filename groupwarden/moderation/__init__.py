# Copyright (c) 2025 sprowii
"""Модуль модерации групп.

Компоненты:
- ModerationEngine: Центральная точка входа для событий и ручных команд
- ForbiddenContentDetector: Запрещённые слова и удалённая проверка
- FloodDetector: Антифлуд
- EscalationLedger: Счётчик нарушений с затуханием
- JoinChallengeManager: Проверка новых участников
- AnnouncementDispatcher / ScheduleRegistry: Автоматические объявления
- ActivityTracker: Счётчики активности
- WelcomeManager: Приветствия и уведомления о выходе
"""

from groupwarden.moderation.controller import (
    MessageAction,
    MessageVerdict,
    ModerationEngine,
    get_moderation_engine,
    init_moderation_engine,
)
from groupwarden.moderation.models import (
    AppealRecord,
    GroupRule,
    InboundMessage,
    MemberEvent,
    PenaltyAction,
    PenaltyLevel,
    PunishmentRecord,
)
from groupwarden.moderation.capabilities import (
    CapabilityAdapter,
    CapabilityError,
    MemberRole,
    TelegramCapabilityAdapter,
    UnsupportedCapability,
)
from groupwarden.moderation.escalation import EscalationLedger, resolve_level
from groupwarden.moderation.penalties import PenaltyOutcome
from groupwarden.moderation.captcha import ChallengeState, JoinChallengeManager
from groupwarden.moderation.announcements import AnnouncementDispatcher, ScheduleRegistry
from groupwarden.moderation.activity import ActivityTracker
from groupwarden.moderation.state import ModerationState

__all__ = [
    "ModerationEngine",
    "MessageAction",
    "MessageVerdict",
    "get_moderation_engine",
    "init_moderation_engine",
    "AppealRecord",
    "GroupRule",
    "InboundMessage",
    "MemberEvent",
    "PenaltyAction",
    "PenaltyLevel",
    "PunishmentRecord",
    "CapabilityAdapter",
    "CapabilityError",
    "MemberRole",
    "TelegramCapabilityAdapter",
    "UnsupportedCapability",
    "EscalationLedger",
    "resolve_level",
    "PenaltyOutcome",
    "ChallengeState",
    "JoinChallengeManager",
    "AnnouncementDispatcher",
    "ScheduleRegistry",
    "ActivityTracker",
    "ModerationState",
]
