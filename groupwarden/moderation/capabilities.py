# Copyright (c) 2025 sprowii
"""Адаптер возможностей чат-платформы.

Движок модерации не вызывает API платформы напрямую: все действия
(мут, кик, удаление сообщения, отправка объявлений) и запросы
(роль участника, список участников) идут через CapabilityAdapter.

Базовый класс ничего не умеет: каждый метод бросает UnsupportedCapability.
Конкретный адаптер переопределяет то, что поддерживает платформа.
"""
import time
from enum import Enum
from typing import List

from telegram import Bot, ChatMember, ChatPermissions
from telegram.error import TelegramError

from groupwarden.moderation.content_filter import extract_text_content
from groupwarden.moderation.models import MAX_MUTE_SECONDS


class MemberRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    UNKNOWN = "unknown"


class CapabilityError(Exception):
    """Ошибка выполнения действия на платформе."""


class UnsupportedCapability(CapabilityError):
    """Платформа (или активный адаптер) не поддерживает действие."""

    def __init__(self, capability: str):
        super().__init__(f"Действие не поддерживается: {capability}")
        self.capability = capability


class CapabilityAdapter:
    """Абстрактный набор возможностей платформы."""

    # Упоминание всех участников в тексте объявления
    EVERYONE_MENTION = "@all"

    @property
    def connected(self) -> bool:
        return False

    def extract_text(self, content: str) -> str:
        """Текстовая часть сообщения.

        По умолчанию содержимое считается разметкой элементов
        (<image/>, <at/> и т.п.), которая вырезается.
        """
        return extract_text_content(content)

    async def mute(self, group_id: int, user_id: int, duration_seconds: int) -> None:
        raise UnsupportedCapability("mute")

    async def kick(self, group_id: int, user_id: int, reject_future_requests: bool = False) -> None:
        raise UnsupportedCapability("kick")

    async def delete_message(self, group_id: int, message_id: int) -> None:
        raise UnsupportedCapability("delete_message")

    async def get_member_role(self, group_id: int, user_id: int) -> MemberRole:
        raise UnsupportedCapability("get_member_role")

    async def post_message(self, group_id: int, text: str) -> None:
        raise UnsupportedCapability("post_message")

    async def post_image(self, group_id: int, url: str) -> None:
        raise UnsupportedCapability("post_image")

    async def send_private_message(self, user_id: int, text: str) -> None:
        raise UnsupportedCapability("send_private_message")

    async def get_member_list(self, group_id: int) -> List[int]:
        raise UnsupportedCapability("get_member_list")

    async def approve_join_request(self, group_id: int, user_id: int) -> None:
        raise UnsupportedCapability("approve_join_request")


_TELEGRAM_ROLES = {
    ChatMember.OWNER: MemberRole.OWNER,
    ChatMember.ADMINISTRATOR: MemberRole.ADMIN,
    ChatMember.MEMBER: MemberRole.MEMBER,
    ChatMember.RESTRICTED: MemberRole.MEMBER,
}


class TelegramCapabilityAdapter(CapabilityAdapter):
    """Адаптер поверх python-telegram-bot.

    TelegramError оборачивается в CapabilityError, чтобы движок
    не зависел от исключений конкретной библиотеки.
    """

    def __init__(self, bot: Bot):
        self.bot = bot

    @property
    def connected(self) -> bool:
        return self.bot is not None

    def extract_text(self, content: str) -> str:
        # Текст Telegram не содержит разметки элементов
        return (content or "").strip()

    async def mute(self, group_id: int, user_id: int, duration_seconds: int) -> None:
        duration = max(1, min(int(duration_seconds), MAX_MUTE_SECONDS))
        try:
            await self.bot.restrict_chat_member(
                chat_id=group_id,
                user_id=user_id,
                permissions=ChatPermissions.no_permissions(),
                until_date=int(time.time()) + duration,
            )
        except TelegramError as exc:
            raise CapabilityError(f"mute: {exc}") from exc

    async def kick(self, group_id: int, user_id: int, reject_future_requests: bool = False) -> None:
        try:
            await self.bot.ban_chat_member(chat_id=group_id, user_id=user_id)
            if not reject_future_requests:
                # Кик без бана: сразу снимаем бан
                await self.bot.unban_chat_member(chat_id=group_id, user_id=user_id, only_if_banned=True)
        except TelegramError as exc:
            raise CapabilityError(f"kick: {exc}") from exc

    async def delete_message(self, group_id: int, message_id: int) -> None:
        try:
            await self.bot.delete_message(chat_id=group_id, message_id=message_id)
        except TelegramError as exc:
            raise CapabilityError(f"delete_message: {exc}") from exc

    async def get_member_role(self, group_id: int, user_id: int) -> MemberRole:
        try:
            member = await self.bot.get_chat_member(chat_id=group_id, user_id=user_id)
        except TelegramError as exc:
            raise CapabilityError(f"get_member_role: {exc}") from exc
        return _TELEGRAM_ROLES.get(member.status, MemberRole.UNKNOWN)

    async def post_message(self, group_id: int, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=group_id, text=text)
        except TelegramError as exc:
            raise CapabilityError(f"post_message: {exc}") from exc

    async def post_image(self, group_id: int, url: str) -> None:
        try:
            await self.bot.send_photo(chat_id=group_id, photo=url)
        except TelegramError as exc:
            raise CapabilityError(f"post_image: {exc}") from exc

    async def send_private_message(self, user_id: int, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=user_id, text=text)
        except TelegramError as exc:
            raise CapabilityError(f"send_private_message: {exc}") from exc

    async def approve_join_request(self, group_id: int, user_id: int) -> None:
        try:
            await self.bot.approve_chat_join_request(chat_id=group_id, user_id=user_id)
        except TelegramError as exc:
            raise CapabilityError(f"approve_join_request: {exc}") from exc

    # get_member_list: Bot API не отдаёт список участников группы
