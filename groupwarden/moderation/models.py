# Copyright (c) 2025 sprowii
"""Модели данных для системы модерации групп."""
import math
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

# Максимальная длительность мута на большинстве платформ: 29д 23ч 59м 59с
MAX_MUTE_SECONDS = 29 * 86400 + 23 * 3600 + 59 * 60 + 59

DEFAULT_MUTE_SECONDS = 600

DEFAULT_PROFANITY_ENDPOINT = "https://uapis.cn/api/v1/text/profanitycheck"

DEFAULT_FORBIDDEN_WORDS = [
    "傻逼", "傻屄", "沙比", "煞笔", "傻比",
    "操你妈", "草你妈", "艹你妈", "日你妈",
    "妈的", "他妈的", "你妈的", "tmd", "cnm",
    "操你", "草你", "艹你", "日你",
    "去死", "滚蛋", "狗逼", "狗屄", "sb",
    "shabi", "caonima", "nima", "nimade",
    "fuck", "shit", "bitch",
    "nmsl", "wsnd", "rnm", "wcnm", "gnm",
    "贱人", "婊子", "王八蛋", "混蛋", "废物",
]


class PenaltyAction(str, Enum):
    """Действие наказания."""
    WARN = "warn"
    MUTE = "mute"
    KICK = "kick"


# ============================================================================
# COERCION HELPERS
# ============================================================================

def _as_bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _as_number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return default
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return default
    # inf и nan из JSON (1e400, NaN) считаются неверным значением
    return number if math.isfinite(number) else default


def _as_int(value: Any, default: int) -> int:
    return int(_as_number(value, default))


def _as_dict_list(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _as_str(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _as_str_list(value: Any, default: Optional[List[str]] = None) -> List[str]:
    if not isinstance(value, list):
        return list(default or [])
    return [str(item) for item in value if item is not None and str(item) != ""]


def _as_action(value: Any, default: PenaltyAction) -> PenaltyAction:
    try:
        return PenaltyAction(value)
    except ValueError:
        return default


def _section(data: Dict[str, Any], *names: str) -> Dict[str, Any]:
    for name in names:
        value = data.get(name)
        if isinstance(value, dict):
            return value
    return {}


def in_list(items: List[str], user_id: Any) -> bool:
    """Проверить, есть ли ID в списке (сравнение строками)."""
    return str(user_id) in {str(item) for item in items}


# ============================================================================
# GROUP RULE
# ============================================================================

@dataclass
class ProfanityApiConfig:
    enabled: bool = False
    endpoint: str = DEFAULT_PROFANITY_ENDPOINT
    timeout_sec: float = 5.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfanityApiConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            endpoint=_as_str(data.get("endpoint"), DEFAULT_PROFANITY_ENDPOINT),
            timeout_sec=_as_number(data.get("timeout_sec"), 5.0),
        )


@dataclass
class ForbiddenConfig:
    enabled: bool = False
    words: List[str] = field(default_factory=lambda: list(DEFAULT_FORBIDDEN_WORDS))
    action: PenaltyAction = PenaltyAction.MUTE
    mute_seconds: int = DEFAULT_MUTE_SECONDS
    profanity_api: ProfanityApiConfig = field(default_factory=ProfanityApiConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForbiddenConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            words=_as_str_list(data.get("words"), DEFAULT_FORBIDDEN_WORDS),
            action=_as_action(data.get("action"), PenaltyAction.MUTE),
            mute_seconds=_as_int(data.get("mute_seconds", data.get("muteSeconds")), DEFAULT_MUTE_SECONDS),
            profanity_api=ProfanityApiConfig.from_dict(_section(data, "profanity_api", "profanityApi")),
        )


@dataclass
class SpamConfig:
    enabled: bool = False
    window_seconds: float = 10
    max_messages: int = 6
    mute_seconds: int = DEFAULT_MUTE_SECONDS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpamConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            window_seconds=_as_number(data.get("window_seconds", data.get("windowSeconds")), 10),
            max_messages=_as_int(data.get("max_messages", data.get("maxMessages")), 6),
            mute_seconds=_as_int(data.get("mute_seconds", data.get("muteSeconds")), DEFAULT_MUTE_SECONDS),
        )


@dataclass(frozen=True)
class PenaltyLevel:
    """Ступень эскалации: при threshold нарушениях применяется action."""
    threshold: int
    action: PenaltyAction
    mute_seconds: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PenaltyLevel":
        return cls(
            threshold=_as_int(data.get("threshold", data.get("count")), 1),
            action=_as_action(data.get("action"), PenaltyAction.MUTE),
            mute_seconds=_as_int(data.get("mute_seconds", data.get("muteSeconds")), 0),
        )


def _default_levels() -> List[PenaltyLevel]:
    return [
        PenaltyLevel(1, PenaltyAction.WARN, 0),
        PenaltyLevel(2, PenaltyAction.MUTE, 600),
        PenaltyLevel(3, PenaltyAction.KICK, 0),
    ]


@dataclass
class PenaltyConfig:
    enabled: bool = True
    window_seconds: float = 3600
    levels: List[PenaltyLevel] = field(default_factory=_default_levels)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PenaltyConfig":
        raw_levels = data.get("levels")
        if isinstance(raw_levels, list):
            levels = [PenaltyLevel.from_dict(item) for item in raw_levels if isinstance(item, dict)]
        else:
            levels = _default_levels()
        return cls(
            enabled=_as_bool(data.get("enabled"), True),
            window_seconds=_as_number(data.get("window_seconds", data.get("windowSeconds")), 3600),
            levels=levels,
        )


@dataclass
class Question:
    q: str
    a: List[str]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        answers = data.get("a")
        if not isinstance(answers, list):
            answers = [answers] if answers not in (None, "") else []
        return cls(q=_as_str(data.get("q"), ""), a=[str(item) for item in answers])


def _default_question_pool() -> List[Question]:
    return [Question(q="请回答：1+1=?", a=["2", "二", "贰"])]


@dataclass
class JoinVerifyConfig:
    enabled: bool = False
    question_pool: List[Question] = field(default_factory=_default_question_pool)
    timeout_seconds: float = 120
    kick_on_fail: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinVerifyConfig":
        raw_pool = data.get("question_pool", data.get("questionPool"))
        if isinstance(raw_pool, list):
            pool = [Question.from_dict(item) for item in raw_pool if isinstance(item, dict)]
        else:
            pool = _default_question_pool()
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            question_pool=pool,
            timeout_seconds=_as_number(data.get("timeout_seconds", data.get("timeoutSeconds")), 120),
            kick_on_fail=_as_bool(data.get("kick_on_fail", data.get("kickOnFail")), True),
        )


@dataclass
class NoticeConfig:
    enabled: bool = False
    template: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_template: str) -> "NoticeConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            template=_as_str(data.get("template"), default_template) or default_template,
        )


DEFAULT_JOIN_TEMPLATE = "欢迎 {user} 加入 {group}"
DEFAULT_LEAVE_TEMPLATE = "{user} 已退出 {group}"
DEFAULT_WELCOME_TEXT = "欢迎加入！请先阅读群公告并遵守规则。"


@dataclass
class AtAllConfig:
    enabled: bool = False
    cooldown_seconds: float = 3600

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AtAllConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            cooldown_seconds=_as_number(data.get("cooldown_seconds", data.get("cooldownSeconds")), 3600),
        )


@dataclass
class FileManageConfig:
    enabled: bool = False
    allow_extensions: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileManageConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            allow_extensions=[
                ext.lower().lstrip(".")
                for ext in _as_str_list(data.get("allow_extensions", data.get("allowExtensions")))
            ],
        )


@dataclass
class KeywordAnnounce:
    enabled: bool = False
    keywords: List[str] = field(default_factory=list)
    message: str = ""
    cooldown_seconds: float = 300

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeywordAnnounce":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            keywords=_as_str_list(data.get("keywords")),
            message=_as_str(data.get("message"), ""),
            cooldown_seconds=_as_number(data.get("cooldown_seconds", data.get("cooldownSeconds")), 300),
        )


@dataclass
class ScheduleAnnounce:
    enabled: bool = False
    interval_minutes: float = 60
    message: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleAnnounce":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            interval_minutes=_as_number(data.get("interval_minutes", data.get("intervalMinutes")), 60),
            message=_as_str(data.get("message"), ""),
        )


@dataclass
class WelcomeGuideConfig:
    enabled: bool = False
    text: str = DEFAULT_WELCOME_TEXT
    image: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WelcomeGuideConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), False),
            text=_as_str(data.get("text"), DEFAULT_WELCOME_TEXT),
            image=_as_str(data.get("image"), ""),
        )


@dataclass
class AppealConfig:
    enabled: bool = True
    notify_managers: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppealConfig":
        return cls(
            enabled=_as_bool(data.get("enabled"), True),
            notify_managers=_as_bool(data.get("notify_managers", data.get("notifyManagers")), True),
        )


@dataclass
class GroupRule:
    """Настройки модерации для конкретной группы.

    Снимок правил неизменяем в рамках обработки одного события:
    резолвер отдаёт новый объект на каждый запрос.
    """
    group_id: int
    enabled: bool = True
    # Автоматически одобрять заявки на вступление
    auto_approve: bool = False

    whitelist: List[str] = field(default_factory=list)
    blacklist: List[str] = field(default_factory=list)
    graylist: List[str] = field(default_factory=list)
    managers: List[str] = field(default_factory=list)

    forbidden: ForbiddenConfig = field(default_factory=ForbiddenConfig)
    spam: SpamConfig = field(default_factory=SpamConfig)
    penalty: PenaltyConfig = field(default_factory=PenaltyConfig)
    auto_recall: bool = True

    join_verify: JoinVerifyConfig = field(default_factory=JoinVerifyConfig)
    join_notice: NoticeConfig = field(default_factory=lambda: NoticeConfig(template=DEFAULT_JOIN_TEMPLATE))
    leave_notice: NoticeConfig = field(default_factory=lambda: NoticeConfig(template=DEFAULT_LEAVE_TEMPLATE))
    welcome_guide: WelcomeGuideConfig = field(default_factory=WelcomeGuideConfig)

    at_all: AtAllConfig = field(default_factory=AtAllConfig)
    file_manage: FileManageConfig = field(default_factory=FileManageConfig)
    keyword_announce: List[KeywordAnnounce] = field(default_factory=list)
    schedule_announce: List[ScheduleAnnounce] = field(default_factory=list)

    appeal: AppealConfig = field(default_factory=AppealConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], group_id: Optional[int] = None) -> "GroupRule":
        """Собрать правила из словаря (JSON).

        Неизвестные ключи игнорируются, значения неверного типа заменяются
        значениями по умолчанию.
        """
        if group_id is None:
            group_id = _as_int(data.get("group_id", data.get("groupId")), 0)

        auto_recall = data.get("auto_recall", data.get("autoRecall"))
        if isinstance(auto_recall, dict):
            auto_recall = auto_recall.get("enabled")

        return cls(
            group_id=group_id,
            enabled=_as_bool(data.get("enabled"), True),
            auto_approve=_as_bool(data.get("auto_approve", data.get("autoApprove")), False),
            whitelist=_as_str_list(data.get("whitelist")),
            blacklist=_as_str_list(data.get("blacklist")),
            graylist=_as_str_list(data.get("graylist")),
            managers=_as_str_list(data.get("managers")),
            forbidden=ForbiddenConfig.from_dict(_section(data, "forbidden")),
            spam=SpamConfig.from_dict(_section(data, "spam")),
            penalty=PenaltyConfig.from_dict(_section(data, "penalty")),
            auto_recall=_as_bool(auto_recall, True),
            join_verify=JoinVerifyConfig.from_dict(_section(data, "join_verify", "joinVerify")),
            join_notice=NoticeConfig.from_dict(_section(data, "join_notice", "joinNotice"), DEFAULT_JOIN_TEMPLATE),
            leave_notice=NoticeConfig.from_dict(_section(data, "leave_notice", "leaveNotice"), DEFAULT_LEAVE_TEMPLATE),
            welcome_guide=WelcomeGuideConfig.from_dict(_section(data, "welcome_guide", "welcomeGuide")),
            at_all=AtAllConfig.from_dict(_section(data, "at_all", "atAll")),
            file_manage=FileManageConfig.from_dict(_section(data, "file_manage", "fileManage")),
            keyword_announce=[
                KeywordAnnounce.from_dict(item)
                for item in _as_dict_list(data.get("keyword_announce", data.get("keywordAnnounce")))
            ],
            schedule_announce=[
                ScheduleAnnounce.from_dict(item)
                for item in _as_dict_list(data.get("schedule_announce", data.get("scheduleAnnounce")))
            ],
            appeal=AppealConfig.from_dict(_section(data, "appeal")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> List[str]:
        """Валидация настроек. Возвращает список ошибок."""
        errors = []

        if self.forbidden.mute_seconds < 0:
            errors.append(f"forbidden.mute_seconds не может быть отрицательным, получено: {self.forbidden.mute_seconds}")
        if self.forbidden.profanity_api.enabled and not self.forbidden.profanity_api.endpoint:
            errors.append("forbidden.profanity_api.endpoint обязателен при включённой проверке")

        if self.spam.window_seconds <= 0:
            errors.append(f"spam.window_seconds должен быть больше 0, получено: {self.spam.window_seconds}")
        if self.spam.max_messages < 1:
            errors.append(f"spam.max_messages должен быть от 1, получено: {self.spam.max_messages}")

        if self.penalty.window_seconds <= 0:
            errors.append(f"penalty.window_seconds должен быть больше 0, получено: {self.penalty.window_seconds}")
        for level in self.penalty.levels:
            if level.threshold < 1:
                errors.append(f"penalty.levels: порог должен быть от 1, получено: {level.threshold}")
            if level.mute_seconds < 0 or level.mute_seconds > MAX_MUTE_SECONDS:
                errors.append(f"penalty.levels: mute_seconds вне диапазона 0..{MAX_MUTE_SECONDS}: {level.mute_seconds}")

        if self.join_verify.timeout_seconds <= 0:
            errors.append(f"join_verify.timeout_seconds должен быть больше 0, получено: {self.join_verify.timeout_seconds}")
        for question in self.join_verify.question_pool:
            if not question.q or not question.a:
                errors.append("join_verify.question_pool: у вопроса должны быть текст и хотя бы один ответ")

        if self.at_all.cooldown_seconds < 0:
            errors.append(f"at_all.cooldown_seconds не может быть отрицательным: {self.at_all.cooldown_seconds}")
        for idx, rule in enumerate(self.keyword_announce):
            if rule.cooldown_seconds < 0:
                errors.append(f"keyword_announce[{idx}].cooldown_seconds не может быть отрицательным")
        for idx, rule in enumerate(self.schedule_announce):
            if rule.interval_minutes <= 0:
                errors.append(f"schedule_announce[{idx}].interval_minutes должен быть больше 0")

        return errors


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class PunishmentRecord:
    """Неизменяемая запись о применённом наказании."""
    id: str
    group_id: int
    user_id: int
    reason: str
    action: str
    mute_seconds: int
    offense_count: int
    timestamp: float

    @classmethod
    def create(
        cls,
        group_id: int,
        user_id: int,
        reason: str,
        action: str,
        mute_seconds: int = 0,
        offense_count: int = 1,
        timestamp: Optional[float] = None,
    ) -> "PunishmentRecord":
        return cls(
            id=str(uuid.uuid4()),
            group_id=group_id,
            user_id=user_id,
            reason=reason,
            action=action,
            mute_seconds=mute_seconds,
            offense_count=offense_count,
            timestamp=time.time() if timestamp is None else timestamp,
        )


@dataclass
class AppealRecord:
    id: str
    group_id: int
    user_id: int
    text: str
    timestamp: float
    status: str = "pending"

    @classmethod
    def create(cls, group_id: int, user_id: int, text: str, timestamp: Optional[float] = None) -> "AppealRecord":
        return cls(
            id=str(uuid.uuid4()),
            group_id=group_id,
            user_id=user_id,
            text=text,
            timestamp=time.time() if timestamp is None else timestamp,
        )


# ============================================================================
# EPHEMERAL STATE
# ============================================================================

@dataclass
class OffenseRecord:
    count: int
    last_offense_at: float


@dataclass
class PendingChallenge:
    """Ожидающая проверка нового участника."""
    question: str
    acceptable_answers: FrozenSet[str]
    expires_at: float
    kick_on_failure: bool = True

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def matches(self, answer: str) -> bool:
        return normalize_answer(answer) in self.acceptable_answers


def normalize_answer(answer: str) -> str:
    return str(answer).strip().lower()


@dataclass
class ActivityCounter:
    total: int = 0
    today: int = 0
    last_message_at: float = 0.0
    today_date_tag: str = ""


# ============================================================================
# EVENTS
# ============================================================================

@dataclass
class Attachment:
    """Не-текстовый элемент сообщения: image или file."""
    kind: str
    url: str = ""
    name: str = ""

    @property
    def extension(self) -> str:
        if "." not in self.name:
            return ""
        return self.name.rsplit(".", 1)[-1].lower()


@dataclass
class InboundMessage:
    group_id: int
    user_id: int
    content: str
    message_id: Optional[int] = None
    attachments: List[Attachment] = field(default_factory=list)
    sender_role: Optional[str] = None
    user_name: str = ""
    timestamp: Optional[float] = None


@dataclass
class MemberEvent:
    group_id: int
    user_id: int
    group_name: str = ""
    user_name: str = ""
    timestamp: Optional[float] = None
