# Copyright (c) 2025 sprouee
"""Логирование наказаний.

БЕЗОПАСНОСТЬ:
- В журнал (sink) пишутся реальные ID (для работы модераторов)
- В application logs используются псевдонимы
"""
from datetime import datetime
from typing import Optional

from groupwarden.logging_config import log
from groupwarden.moderation.models import PunishmentRecord
from groupwarden.security.data_protection import safe_log_action
from groupwarden.utils.text import format_duration

ACTION_ICONS = {
    "warn": "⚠️",
    "mute": "🔇",
    "kick": "👢",
}

ACTION_NAMES = {
    "warn": "Предупреждение",
    "mute": "Мут",
    "kick": "Кик",
}


class PunishmentLogger:
    """Запись наказаний в журнал с логированием.

    Args:
        sink: объект с async record_punishment(record)
    """

    def __init__(self, sink):
        self.sink = sink

    async def log_punishment(self, record: PunishmentRecord) -> bool:
        """Записать наказание. Ошибка записи логируется и не пробрасывается.

        Returns:
            True если запись сохранена
        """
        log.info(safe_log_action(
            record.action,
            record.user_id,
            record.group_id,
            record.reason,
            record.offense_count,
        ))
        try:
            await self.sink.record_punishment(record)
            return True
        except Exception as exc:
            log.error(f"Не удалось записать наказание в журнал: {exc}")
            return False


def format_punishment_entry(record: PunishmentRecord, include_group: bool = False) -> str:
    """Форматировать запись журнала для отображения."""
    icon = ACTION_ICONS.get(record.action, "📋")
    time_str = datetime.fromtimestamp(record.timestamp).strftime("%d.%m %H:%M")

    action_name = ACTION_NAMES.get(record.action, record.action)
    if record.action == "mute" and record.mute_seconds:
        action_name += f" {format_duration(record.mute_seconds)}"

    result = f"{icon} [{time_str}] 👤{record.user_id} {action_name} (#{record.offense_count})"

    if record.reason:
        # Обрезаем длинные причины
        reason = record.reason[:50] + "..." if len(record.reason) > 50 else record.reason
        result += f"\n   └ {reason}"

    if include_group:
        result += f"\n   └ Группа: {record.group_id}"

    return result


def format_records(records, empty_text: Optional[str] = None) -> str:
    if not records:
        return empty_text or "Записей нет."
    return "\n".join(format_punishment_entry(record) for record in records)
