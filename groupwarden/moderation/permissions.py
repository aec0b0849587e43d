# Copyright (c) 2025 sprowii
"""Проверка ролей участников с кэшированием.

Кэширование роли на 5 минут, чтобы не дёргать API платформы
на каждое сообщение.
"""
import secrets
import time
from typing import Callable, Dict, Optional, Tuple

from groupwarden import config
from groupwarden.logging_config import log
from groupwarden.moderation.capabilities import (
    CapabilityAdapter,
    CapabilityError,
    MemberRole,
    UnsupportedCapability,
)
from groupwarden.moderation.models import GroupRule, in_list
from groupwarden.security.data_protection import pseudonymize_id

# Время жизни кэша в секундах (5 минут)
ROLE_CACHE_TTL = 300

_PRIVILEGED_ROLES = (MemberRole.OWNER, MemberRole.ADMIN)


class RoleResolver:
    """Кэширующая обёртка над get_member_role адаптера.

    Кэш: {(group_id, user_id): (role, timestamp)}
    """

    def __init__(
        self,
        adapter: CapabilityAdapter,
        ttl: float = ROLE_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.adapter = adapter
        self.ttl = ttl
        self._clock = clock
        self._cache: Dict[Tuple[int, int], Tuple[MemberRole, float]] = {}

    def get_cached(self, group_id: int, user_id: int) -> Optional[MemberRole]:
        """Роль из кэша или None, если кэш отсутствует или истёк."""
        key = (group_id, user_id)
        cached = self._cache.get(key)
        if cached is None:
            return None

        role, timestamp = cached
        if self._clock() - timestamp >= self.ttl:
            del self._cache[key]
            return None
        return role

    async def get_role(self, group_id: int, user_id: int) -> MemberRole:
        """Получить роль участника.

        Ошибки адаптера не пробрасываются: возвращается UNKNOWN,
        и результат не кэшируется.
        """
        cached = self.get_cached(group_id, user_id)
        if cached is not None:
            return cached

        try:
            role = await self.adapter.get_member_role(group_id, user_id)
        except UnsupportedCapability:
            log.debug("get_member_role не поддерживается адаптером, роль неизвестна")
            return MemberRole.UNKNOWN
        except CapabilityError as exc:
            log.warning(f"Ошибка проверки роли {pseudonymize_id(user_id)}: {exc}")
            return MemberRole.UNKNOWN

        self._cache[(group_id, user_id)] = (role, self._clock())
        return role

    def invalidate(self, group_id: Optional[int] = None, user_id: Optional[int] = None) -> int:
        """Очистить кэш (весь, для чата или для пользователя).

        Returns:
            Количество удалённых записей
        """
        if group_id is None and user_id is None:
            count = len(self._cache)
            self._cache = {}
            return count

        keys_to_remove = [
            key for key in self._cache
            if (group_id is None or key[0] == group_id) and (user_id is None or key[1] == user_id)
        ]
        for key in keys_to_remove:
            del self._cache[key]
        return len(keys_to_remove)

    def cleanup_expired(self) -> int:
        now = self._clock()
        keys_to_remove = [
            key for key, (_, timestamp) in self._cache.items()
            if now - timestamp >= self.ttl
        ]
        for key in keys_to_remove:
            del self._cache[key]
        return len(keys_to_remove)


def is_bot_admin(user_id: int) -> bool:
    """Глобальный админ бота (ADMIN_ID)."""
    return bool(config.ADMIN_ID) and secrets.compare_digest(str(user_id), str(config.ADMIN_ID))


def is_manager(rule: GroupRule, user_id: int) -> bool:
    return in_list(rule.managers, user_id) or is_bot_admin(user_id)


async def is_exempt(
    rule: GroupRule,
    user_id: int,
    resolver: RoleResolver,
    sender_role: Optional[str] = None,
) -> bool:
    """Освобождён ли участник от проверок.

    Белый список, менеджеры группы, владелец и админы чата.
    Роль из события (sender_role) используется без запроса к API.
    """
    if in_list(rule.whitelist, user_id) or is_manager(rule, user_id):
        return True

    if sender_role:
        try:
            return MemberRole(sender_role) in _PRIVILEGED_ROLES
        except ValueError:
            pass

    role = await resolver.get_role(rule.group_id, user_id)
    return role in _PRIVILEGED_ROLES
