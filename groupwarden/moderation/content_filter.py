# Copyright (c) 2025 sprowii
"""Фильтр запрещённого контента.

- Локальная проверка: регистронезависимое вхождение подстроки,
  слова проверяются в порядке из настроек, первое совпадение побеждает.
- Удалённая проверка текста (profanity API) и изображений.
  Любая ошибка сети или неожиданный ответ = "нарушения нет".
"""
import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

import requests

from groupwarden.logging_config import log
from groupwarden.moderation.models import GroupRule, ProfanityApiConfig

# Нетекстовые элементы сообщения: сначала известные теги, затем любые оставшиеся
_MEDIA_TAG_REGEX = re.compile(
    r"<(?:image|img|face|mface|at|audio|video|file)\b[^>]*/?>(?:.*?</(?:image|img|face|mface|at|audio|video|file)>)?",
    re.IGNORECASE | re.DOTALL,
)
_ANY_TAG_REGEX = re.compile(r"<[^>]+>")


def extract_text_content(content: str) -> str:
    """Текстовая часть сообщения без изображений, упоминаний и прочих элементов."""
    if not content:
        return ""
    text = _MEDIA_TAG_REGEX.sub("", content)
    text = _ANY_TAG_REGEX.sub("", text)
    return text.strip()


def find_forbidden_word(text: str, words: Iterable[str]) -> Optional[str]:
    """Первое слово из списка, входящее в текст (без учёта регистра)."""
    if not text:
        return None
    lowered = text.lower()
    for word in words:
        if word and word.lower() in lowered:
            return word
    return None


# ============================================================================
# REMOTE CLASSIFIERS
# ============================================================================

class ClassifierVerdict(str, Enum):
    HIT = "hit"
    MISS = "miss"
    UNAVAILABLE = "unavailable"


@dataclass
class ClassifierResult:
    verdict: ClassifierVerdict
    term: Optional[str] = None
    detail: Optional[str] = None

    @property
    def is_hit(self) -> bool:
        """MISS и UNAVAILABLE одинаково означают отсутствие нарушения."""
        return self.verdict == ClassifierVerdict.HIT


def _post_json(url: str, payload: Dict[str, Any], timeout: float, headers: Optional[Dict[str, str]] = None) -> Any:
    response = requests.post(url, json=payload, headers=headers, timeout=timeout)
    response.raise_for_status()
    return response.json()


class ProfanityClassifier:
    """Удалённая проверка текста на ненормативную лексику.

    Ожидаемый ответ: {"status": "forbidden", "forbidden_words": [...]}
    """

    def classify_sync(self, text: str, api: ProfanityApiConfig) -> ClassifierResult:
        try:
            data = _post_json(api.endpoint, {"text": text}, api.timeout_sec)
        except requests.RequestException as exc:
            log.warning(f"Profanity API недоступен: {exc}")
            return ClassifierResult(ClassifierVerdict.UNAVAILABLE, detail=str(exc))
        except ValueError as exc:
            log.warning(f"Profanity API вернул некорректный JSON: {exc}")
            return ClassifierResult(ClassifierVerdict.UNAVAILABLE, detail=str(exc))

        if not isinstance(data, dict) or data.get("status") != "forbidden":
            return ClassifierResult(ClassifierVerdict.MISS)

        words = data.get("forbidden_words")
        if not isinstance(words, list) or not words:
            return ClassifierResult(ClassifierVerdict.MISS)
        return ClassifierResult(ClassifierVerdict.HIT, term=str(words[0]))

    async def classify(self, text: str, api: ProfanityApiConfig) -> ClassifierResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.classify_sync, text, api)


class ImageClassifier:
    """Удалённая проверка изображений.

    Нарушение: nsfw == true или оценка (score / nsfw_score / prob) не ниже порога.
    """

    def __init__(self, endpoint: str, threshold: float = 0.7, api_key: str = "", timeout: float = 10.0):
        self.endpoint = endpoint
        self.threshold = threshold
        self.api_key = api_key
        self.timeout = timeout

    def classify_sync(self, url: str) -> ClassifierResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        try:
            data = _post_json(self.endpoint, {"url": url}, self.timeout, headers=headers)
        except requests.RequestException as exc:
            log.warning(f"Сервис проверки изображений недоступен: {exc}")
            return ClassifierResult(ClassifierVerdict.UNAVAILABLE, detail=str(exc))
        except ValueError as exc:
            log.warning(f"Сервис проверки изображений вернул некорректный JSON: {exc}")
            return ClassifierResult(ClassifierVerdict.UNAVAILABLE, detail=str(exc))

        if not isinstance(data, dict):
            return ClassifierResult(ClassifierVerdict.MISS)
        if data.get("nsfw") is True:
            return ClassifierResult(ClassifierVerdict.HIT, term="nsfw")

        for field_name in ("score", "nsfw_score", "prob"):
            score = data.get(field_name)
            if isinstance(score, (int, float)) and not isinstance(score, bool):
                if score >= self.threshold:
                    return ClassifierResult(ClassifierVerdict.HIT, term=f"{field_name}={score}")
                break
        return ClassifierResult(ClassifierVerdict.MISS)

    async def classify(self, url: str) -> ClassifierResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.classify_sync, url)


# ============================================================================
# DETECTOR
# ============================================================================

@dataclass
class ForbiddenCheckResult:
    """Результат проверки текста на запрещённые слова."""
    is_filtered: bool
    matched_word: Optional[str] = None
    remote: bool = False

    @property
    def reason(self) -> str:
        return f"запрещённое слово: {self.matched_word}" if self.matched_word else "запрещённое слово"


class ForbiddenContentDetector:
    def __init__(self, classifier: Optional[ProfanityClassifier] = None):
        self.classifier = classifier or ProfanityClassifier()

    async def check(self, text: str, rule: GroupRule, strict: bool = False) -> ForbiddenCheckResult:
        """Проверить текст.

        Args:
            text: Текст сообщения
            rule: Правила группы
            strict: Проверка участника под наблюдением: выполняется
                даже при выключенном фильтре, только по локальному списку
        """
        if not text:
            return ForbiddenCheckResult(is_filtered=False)
        if not strict and not rule.forbidden.enabled:
            return ForbiddenCheckResult(is_filtered=False)

        matched = find_forbidden_word(text, rule.forbidden.words)
        if matched:
            return ForbiddenCheckResult(is_filtered=True, matched_word=matched)
        if strict:
            return ForbiddenCheckResult(is_filtered=False)

        api = rule.forbidden.profanity_api
        if not api.enabled or not api.endpoint:
            return ForbiddenCheckResult(is_filtered=False)

        result = await self.classifier.classify(text, api)
        if result.is_hit:
            return ForbiddenCheckResult(is_filtered=True, matched_word=result.term, remote=True)
        return ForbiddenCheckResult(is_filtered=False)
