# Copyright (c) 2025 sprowii
"""Защита персональных данных участников групп.

Модуль обеспечивает:
- Псевдонимизацию user_id / group_id в логах приложения (HMAC с солью)
- Шифрование текста апелляций перед записью в Redis

В записи о наказаниях попадают реальные ID (они нужны модераторам),
в application logs - только псевдонимы.
"""
import base64
import hashlib
import hmac
import os
import re
import secrets
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from groupwarden.logging_config import log

ENCRYPTED_PREFIX = "enc:"

_HASH_SALT = os.getenv("DATA_HASH_SALT")
if not _HASH_SALT:
    log.warning(
        "DATA_HASH_SALT не задан! Генерирую временную соль, "
        "псевдонимы в логах изменятся после рестарта."
    )
    _HASH_SALT = secrets.token_hex(32)

_ENCRYPTION_KEY = os.getenv("DATA_ENCRYPTION_KEY")
_fernet: Optional[Fernet] = None

if _ENCRYPTION_KEY:
    try:
        _fernet = Fernet(_ENCRYPTION_KEY.encode())
    except ValueError:
        # Обычный пароль - деривируем ключ
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_HASH_SALT.encode()[:16],
            iterations=100000,
        )
        _fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(_ENCRYPTION_KEY.encode())))
else:
    log.warning("DATA_ENCRYPTION_KEY не задан! Тексты апелляций хранятся без шифрования.")


# ============================================================================
# ПСЕВДОНИМИЗАЦИЯ
# ============================================================================

def pseudonymize_id(user_id: Any, context: str = "default") -> str:
    """Псевдоним для ID в формате "u_<hash[:16]>".

    Один и тот же ID в одном контексте всегда даёт один и тот же псевдоним.
    """
    message = f"{context}:{user_id}".encode()
    h = hmac.new(_HASH_SALT.encode(), message, hashlib.sha256)
    return f"u_{h.hexdigest()[:16]}"


def pseudonymize_chat_id(chat_id: Any) -> str:
    return pseudonymize_id(chat_id, context="chat")


def safe_log_action(
    action_type: str,
    target_user_id: Any,
    chat_id: Any,
    reason: Optional[str] = None,
    offense_count: Optional[int] = None,
) -> str:
    """Безопасная строка для лога действия модерации."""
    target = pseudonymize_id(target_user_id)
    chat = pseudonymize_chat_id(chat_id)

    safe_reason = ""
    if reason:
        safe_reason = re.sub(r"@\w+", "@***", reason)[:50]

    line = f"[{action_type}] target={target} chat={chat} reason={safe_reason}"
    if offense_count is not None:
        line += f" count={offense_count}"
    return line


# ============================================================================
# ШИФРОВАНИЕ
# ============================================================================

def encrypt_text(text: str) -> str:
    """Шифрует текст, добавляя префикс "enc:".

    Если шифрование отключено - возвращает текст как есть.
    """
    if not _fernet or not text or text.startswith(ENCRYPTED_PREFIX):
        return text
    return ENCRYPTED_PREFIX + _fernet.encrypt(text.encode()).decode()


def decrypt_text(value: str) -> Optional[str]:
    """Расшифровывает текст с префиксом "enc:".

    Незашифрованные значения возвращаются как есть; None - если ключа нет
    или токен повреждён.
    """
    if not value or not value.startswith(ENCRYPTED_PREFIX):
        return value
    if not _fernet:
        log.warning("Попытка расшифровать данные без ключа шифрования")
        return None
    try:
        return _fernet.decrypt(value[len(ENCRYPTED_PREFIX):].encode()).decode()
    except InvalidToken as exc:
        log.error(f"Ошибка расшифровки: {exc}")
        return None


def check_security_config() -> Dict[str, Any]:
    issues = []
    if not os.getenv("DATA_HASH_SALT"):
        issues.append("DATA_HASH_SALT не задан - используется временная соль")
    if not os.getenv("DATA_ENCRYPTION_KEY"):
        issues.append("DATA_ENCRYPTION_KEY не задан - шифрование отключено")
    return {
        "encryption_enabled": _fernet is not None,
        "hash_salt_configured": bool(os.getenv("DATA_HASH_SALT")),
        "issues": issues,
        "secure": not issues,
    }
