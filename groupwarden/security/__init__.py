# Copyright (c) 2025 sprowii
"""Security-related helpers.

Модули:
- data_protection: Псевдонимизация ID в логах и шифрование текстов апелляций
"""
from groupwarden.security.data_protection import (
    check_security_config,
    decrypt_text,
    encrypt_text,
    pseudonymize_chat_id,
    pseudonymize_id,
    safe_log_action,
)

__all__ = [
    "check_security_config",
    "decrypt_text",
    "encrypt_text",
    "pseudonymize_chat_id",
    "pseudonymize_id",
    "safe_log_action",
]
