# Copyright (c) 2025 sprowii
"""Приветствия и уведомления о входе/выходе участников.

Плейсхолдеры шаблонов: {user}, {group} (буквальная замена).
Ошибки отправки логируются и не пробрасываются.
"""
from groupwarden.logging_config import log
from groupwarden.moderation.capabilities import CapabilityAdapter, CapabilityError, UnsupportedCapability
from groupwarden.moderation.models import GroupRule
from groupwarden.security.data_protection import pseudonymize_chat_id
from groupwarden.utils.text import format_template


class WelcomeManager:
    """Менеджер приветственных сообщений."""

    def __init__(self, adapter: CapabilityAdapter):
        self.adapter = adapter

    async def send_join_notice(self, rule: GroupRule, user: str, group: str) -> bool:
        if not rule.join_notice.enabled:
            return False
        text = format_template(rule.join_notice.template, user, group)
        return await self._send_text(rule.group_id, text)

    async def send_leave_notice(self, rule: GroupRule, user: str, group: str) -> bool:
        if not rule.leave_notice.enabled:
            return False
        text = format_template(rule.leave_notice.template, user, group)
        return await self._send_text(rule.group_id, text)

    async def send_welcome_guide(self, rule: GroupRule, user: str, group: str) -> bool:
        """Отправить памятку новичку: сначала картинка (если задана), затем текст."""
        guide = rule.welcome_guide
        if not guide.enabled:
            return False

        if guide.image:
            try:
                await self.adapter.post_image(rule.group_id, guide.image)
            except UnsupportedCapability:
                log.debug("post_image не поддерживается адаптером, отправляем только текст")
            except CapabilityError as exc:
                log.warning(f"Не удалось отправить картинку приветствия в {pseudonymize_chat_id(rule.group_id)}: {exc}")

        if not guide.text:
            return True
        return await self._send_text(rule.group_id, format_template(guide.text, user, group))

    async def _send_text(self, group_id: int, text: str) -> bool:
        if not text:
            return False
        try:
            await self.adapter.post_message(group_id, text)
            return True
        except CapabilityError as exc:
            log.warning(f"Не удалось отправить сообщение в {pseudonymize_chat_id(group_id)}: {exc}")
            return False
