# Copyright (c) 2025 sprouee
"""Хранилище правил групп и журналов модерации в Redis.

Ключи:
- group_rule:{group_id} - правила группы (JSON)
- punishments:{group_id} - журнал наказаний (LIST, новые в начале)
- appeals:{group_id} - апелляции (LIST, текст зашифрован)
- activity:{group_id} - счётчики активности (HASH user_id -> JSON)
"""
import asyncio
import copy
import json
from dataclasses import asdict
from typing import Callable, Dict, List, Optional

import redis

from groupwarden.config import (
    ACTIVITY_KEY_PREFIX,
    APPEALS_KEY_PREFIX,
    GROUP_RULE_KEY_PREFIX,
    PUNISHMENTS_KEY_PREFIX,
    REDIS_URL,
)
from groupwarden.logging_config import log
from groupwarden.moderation.models import ActivityCounter, AppealRecord, GroupRule, PunishmentRecord
from groupwarden.security.data_protection import decrypt_text, encrypt_text, pseudonymize_chat_id

redis_client = redis.Redis.from_url(REDIS_URL, decode_responses=True)

# Максимальное количество записей в журнале группы
MAX_RECORD_ENTRIES = 1000


def _rule_key(group_id: int) -> str:
    return f"{GROUP_RULE_KEY_PREFIX}{group_id}"


def _punishments_key(group_id: int) -> str:
    return f"{PUNISHMENTS_KEY_PREFIX}{group_id}"


def _appeals_key(group_id: int) -> str:
    return f"{APPEALS_KEY_PREFIX}{group_id}"


def _activity_key(group_id: int) -> str:
    return f"{ACTIVITY_KEY_PREFIX}{group_id}"


# ============================================================================
# GROUP RULES
# ============================================================================

# Подписчики на изменение правил: callback(group_id)
_rule_listeners: List[Callable[[int], None]] = []


def add_rule_listener(callback: Callable[[int], None]) -> None:
    """Подписаться на сохранение, импорт и удаление правил группы."""
    if callback not in _rule_listeners:
        _rule_listeners.append(callback)


def remove_rule_listener(callback: Callable[[int], None]) -> None:
    if callback in _rule_listeners:
        _rule_listeners.remove(callback)


def _notify_rule_changed(group_id: int) -> None:
    for callback in list(_rule_listeners):
        try:
            callback(group_id)
        except Exception as exc:
            log.error(f"Ошибка обработчика изменения правил {pseudonymize_chat_id(group_id)}: {exc}")


def save_rule(rule: GroupRule) -> None:
    """Сохранить правила группы в Redis."""
    try:
        redis_client.set(_rule_key(rule.group_id), json.dumps(rule.to_dict(), ensure_ascii=False))
    except redis.RedisError as exc:
        log.error(f"Не удалось сохранить правила группы {pseudonymize_chat_id(rule.group_id)}: {exc}")
        raise
    _notify_rule_changed(rule.group_id)


def load_rule(group_id: int) -> Optional[GroupRule]:
    """Загрузить правила группы.

    Если правил нет, они повреждены или Redis недоступен, возвращает None:
    такая группа не модерируется.
    """
    try:
        raw_value = redis_client.get(_rule_key(group_id))
    except redis.RedisError as exc:
        log.error(f"Ошибка загрузки правил группы {pseudonymize_chat_id(group_id)}: {exc}")
        return None

    if not raw_value:
        return None

    try:
        data = json.loads(raw_value)
    except json.JSONDecodeError as exc:
        log.warning(f"Некорректный JSON правил группы {pseudonymize_chat_id(group_id)}: {exc}")
        return None
    if not isinstance(data, dict):
        log.warning(f"Правила группы {pseudonymize_chat_id(group_id)} не являются JSON объектом")
        return None

    rule = GroupRule.from_dict(data, group_id=group_id)
    errors = rule.validate()
    if errors:
        log.warning(f"Правила группы {pseudonymize_chat_id(group_id)} с ошибками: {'; '.join(errors)}")
    return rule


async def load_rule_async(group_id: int) -> Optional[GroupRule]:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, load_rule, group_id)


def delete_rule(group_id: int) -> bool:
    try:
        deleted = redis_client.delete(_rule_key(group_id)) > 0
    except redis.RedisError as exc:
        log.error(f"Не удалось удалить правила группы {pseudonymize_chat_id(group_id)}: {exc}")
        return False
    if deleted:
        _notify_rule_changed(group_id)
    return deleted


def list_group_ids() -> List[int]:
    """ID всех групп, для которых сохранены правила."""
    group_ids = []
    try:
        for key in redis_client.scan_iter(match=f"{GROUP_RULE_KEY_PREFIX}*"):
            raw_id = key[len(GROUP_RULE_KEY_PREFIX):]
            if raw_id.lstrip("-").isdigit():
                group_ids.append(int(raw_id))
    except redis.RedisError as exc:
        log.error(f"Ошибка получения списка групп: {exc}")
    return sorted(group_ids)


def export_rule(group_id: int) -> Optional[str]:
    """Экспортировать правила в JSON строку (без group_id).

    None, если правил для группы нет.
    """
    rule = load_rule(group_id)
    if rule is None:
        return None
    data = rule.to_dict()
    del data["group_id"]
    return json.dumps(data, ensure_ascii=False, indent=2)


def import_rule(group_id: int, json_str: str) -> GroupRule:
    """Импортировать правила из JSON строки.

    Raises ValueError если JSON некорректен или правила не проходят валидацию.
    """
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Некорректный JSON: {exc}")
    if not isinstance(data, dict):
        raise ValueError("Правила должны быть JSON объектом")

    rule = GroupRule.from_dict(data, group_id=group_id)
    errors = rule.validate()
    if errors:
        raise ValueError(f"Ошибки валидации: {'; '.join(errors)}")

    save_rule(rule)
    return rule


class RedisRuleResolver:
    """Источник правил: каждое событие читает актуальные правила из Redis."""

    async def get_rule(self, group_id: int) -> Optional[GroupRule]:
        return await load_rule_async(group_id)


class StaticRuleResolver:
    """Правила в памяти. Каждый вызов отдаёт копию, чтобы правки
    не меняли правила посреди обработки события."""

    def __init__(self, rules: Optional[Dict[int, GroupRule]] = None):
        self.rules: Dict[int, GroupRule] = dict(rules or {})

    def set_rule(self, rule: GroupRule) -> None:
        self.rules[rule.group_id] = rule

    async def get_rule(self, group_id: int) -> Optional[GroupRule]:
        rule = self.rules.get(group_id)
        return copy.deepcopy(rule) if rule is not None else None


# ============================================================================
# PUNISHMENTS & APPEALS
# ============================================================================

def save_punishment(record: PunishmentRecord) -> None:
    """Добавить запись о наказании в журнал группы."""
    key = _punishments_key(record.group_id)
    try:
        with redis_client.pipeline() as pipe:
            pipe.lpush(key, json.dumps(asdict(record), ensure_ascii=False))
            # Ограничиваем размер журнала
            pipe.ltrim(key, 0, MAX_RECORD_ENTRIES - 1)
            pipe.execute()
    except redis.RedisError as exc:
        log.error(f"Не удалось сохранить запись о наказании: {exc}")
        raise


def load_punishments(group_id: int, limit: int = 10, user_id: Optional[int] = None) -> List[PunishmentRecord]:
    """Последние записи о наказаниях (новые первыми).

    Args:
        group_id: ID группы
        limit: Максимальное количество записей
        user_id: Если указан, фильтровать по пользователю
    """
    key = _punishments_key(group_id)
    fetch_limit = limit * 5 if user_id is not None else limit
    try:
        raw_values = redis_client.lrange(key, 0, fetch_limit - 1)
    except redis.RedisError as exc:
        log.error(f"Ошибка загрузки журнала группы {pseudonymize_chat_id(group_id)}: {exc}")
        return []

    records = []
    for raw in raw_values:
        try:
            record = PunishmentRecord(**json.loads(raw))
        except (json.JSONDecodeError, TypeError) as exc:
            log.warning(f"Некорректная запись о наказании: {exc}")
            continue
        if user_id is not None and record.user_id != user_id:
            continue
        records.append(record)
        if len(records) >= limit:
            break
    return records


def save_appeal(record: AppealRecord) -> None:
    key = _appeals_key(record.group_id)
    data = asdict(record)
    data["text"] = encrypt_text(record.text)
    try:
        with redis_client.pipeline() as pipe:
            pipe.lpush(key, json.dumps(data, ensure_ascii=False))
            pipe.ltrim(key, 0, MAX_RECORD_ENTRIES - 1)
            pipe.execute()
    except redis.RedisError as exc:
        log.error(f"Не удалось сохранить апелляцию: {exc}")
        raise


def load_appeals(group_id: int, limit: int = 10) -> List[AppealRecord]:
    try:
        raw_values = redis_client.lrange(_appeals_key(group_id), 0, limit - 1)
    except redis.RedisError as exc:
        log.error(f"Ошибка загрузки апелляций: {exc}")
        return []

    appeals = []
    for raw in raw_values:
        try:
            data = json.loads(raw)
            data["text"] = decrypt_text(data.get("text", "")) or ""
            appeals.append(AppealRecord(**data))
        except (json.JSONDecodeError, TypeError) as exc:
            log.warning(f"Некорректная запись апелляции: {exc}")
    return appeals


class RedisRecordSink:
    """Журнал наказаний и апелляций в Redis.

    Каждая запись пишется сразу и отдельно; ошибка записи
    пробрасывается вызывающему коду.
    """

    async def record_punishment(self, record: PunishmentRecord) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, save_punishment, record)

    async def record_appeal(self, record: AppealRecord) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, save_appeal, record)

    async def load_punishments(
        self,
        group_id: int,
        limit: int = 10,
        user_id: Optional[int] = None,
    ) -> List[PunishmentRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, load_punishments, group_id, limit, user_id)


# ============================================================================
# ACTIVITY
# ============================================================================

def save_activity(counters: Dict[tuple, ActivityCounter]) -> int:
    """Записать счётчики активности одним pipeline.

    Args:
        counters: {(group_id, user_id): ActivityCounter}

    Returns:
        Количество записанных счётчиков
    """
    if not counters:
        return 0
    try:
        with redis_client.pipeline() as pipe:
            for (group_id, user_id), counter in counters.items():
                pipe.hset(_activity_key(group_id), str(user_id), json.dumps(asdict(counter)))
            pipe.execute()
    except redis.RedisError as exc:
        log.error(f"Не удалось сохранить счётчики активности: {exc}")
        raise
    return len(counters)


async def save_activity_async(counters: Dict[tuple, ActivityCounter]) -> int:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, save_activity, counters)


def load_activity(group_id: int) -> Dict[int, ActivityCounter]:
    """Счётчики активности группы: {user_id: ActivityCounter}."""
    try:
        raw_map = redis_client.hgetall(_activity_key(group_id))
    except redis.RedisError as exc:
        log.error(f"Ошибка загрузки активности группы {pseudonymize_chat_id(group_id)}: {exc}")
        return {}

    result = {}
    for raw_user_id, raw in raw_map.items():
        try:
            result[int(raw_user_id)] = ActivityCounter(**json.loads(raw))
        except (ValueError, TypeError) as exc:
            log.warning(f"Некорректный счётчик активности: {exc}")
    return result


def load_all_activity() -> Dict[tuple, ActivityCounter]:
    """Все сохранённые счётчики: {(group_id, user_id): ActivityCounter}."""
    result = {}
    try:
        keys = list(redis_client.scan_iter(match=f"{ACTIVITY_KEY_PREFIX}*"))
    except redis.RedisError as exc:
        log.error(f"Ошибка получения ключей активности: {exc}")
        return result

    for key in keys:
        raw_id = key[len(ACTIVITY_KEY_PREFIX):]
        if not raw_id.lstrip("-").isdigit():
            continue
        group_id = int(raw_id)
        for user_id, counter in load_activity(group_id).items():
            result[(group_id, user_id)] = counter
    return result


async def load_all_activity_async() -> Dict[tuple, ActivityCounter]:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, load_all_activity)
