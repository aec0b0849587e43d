# Copyright (c) 2025 sprowii
"""Обработчики событий Telegram: переводят Update в события движка."""
from typing import List

from telegram import Message, Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from groupwarden.logging_config import log
from groupwarden.moderation.controller import get_moderation_engine
from groupwarden.moderation.models import Attachment, InboundMessage, MemberEvent


def _display_name(user) -> str:
    if user.username:
        return f"@{user.username}"
    return user.full_name or str(user.id)


async def _collect_attachments(message: Message, context: ContextTypes.DEFAULT_TYPE, with_images: bool) -> List[Attachment]:
    attachments = []
    if message.document:
        attachments.append(Attachment(kind="file", name=message.document.file_name or ""))
    if message.photo and with_images:
        try:
            photo_file = await context.bot.get_file(message.photo[-1].file_id)
            attachments.append(Attachment(kind="image", url=photo_file.file_path or ""))
        except TelegramError as exc:
            log.warning(f"Не удалось получить ссылку на фото: {exc}")
    return attachments


async def group_message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    user = update.effective_user
    chat = update.effective_chat
    engine = get_moderation_engine()
    if engine is None or message is None or user is None or chat is None:
        return
    if user.is_bot:
        return

    attachments = await _collect_attachments(message, context, engine.image_classifier is not None)
    inbound = InboundMessage(
        group_id=chat.id,
        user_id=user.id,
        content=message.text or message.caption or "",
        message_id=message.message_id,
        attachments=attachments,
        user_name=_display_name(user),
        timestamp=message.date.timestamp() if message.date else None,
    )
    try:
        await engine.handle_message(inbound)
    except Exception as exc:
        log.error(f"Ошибка обработки сообщения: {exc}", exc_info=True)


async def new_members_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    chat = update.effective_chat
    engine = get_moderation_engine()
    if engine is None or message is None or chat is None:
        return

    for member in message.new_chat_members or []:
        if member.is_bot:
            continue
        event = MemberEvent(
            group_id=chat.id,
            user_id=member.id,
            group_name=chat.title or "",
            user_name=_display_name(member),
        )
        try:
            await engine.handle_member_added(event)
        except Exception as exc:
            log.error(f"Ошибка обработки входа участника: {exc}", exc_info=True)


async def left_member_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    chat = update.effective_chat
    engine = get_moderation_engine()
    if engine is None or message is None or chat is None or message.left_chat_member is None:
        return

    member = message.left_chat_member
    if member.is_bot:
        return
    event = MemberEvent(
        group_id=chat.id,
        user_id=member.id,
        group_name=chat.title or "",
        user_name=_display_name(member),
    )
    try:
        await engine.handle_member_removed(event)
    except Exception as exc:
        log.error(f"Ошибка обработки выхода участника: {exc}", exc_info=True)


async def join_request_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    request = update.chat_join_request
    engine = get_moderation_engine()
    if engine is None or request is None:
        return

    event = MemberEvent(
        group_id=request.chat.id,
        user_id=request.from_user.id,
        group_name=request.chat.title or "",
        user_name=_display_name(request.from_user),
    )
    try:
        await engine.handle_join_request(event)
    except Exception as exc:
        log.error(f"Ошибка обработки заявки на вступление: {exc}", exc_info=True)
