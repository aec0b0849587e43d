# Copyright (c) 2025 sprowii
import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _resolve_redis_url(raw_url: str) -> str:
    if ".upstash.io" in raw_url and raw_url.startswith("redis://"):
        return "rediss" + raw_url[len("redis") :]
    return raw_url


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


REDIS_URL = _resolve_redis_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"))

TG_TOKEN = os.getenv("TG_TOKEN")
ADMIN_ID = os.getenv("ADMIN_ID")
DOWNLOAD_KEY = os.getenv("DOWNLOAD_KEY")


def _load_managed_groups() -> List[int]:
    groups: List[int] = []
    for raw in (os.getenv("MANAGED_GROUPS") or "").split(","):
        raw = raw.strip()
        if raw.lstrip("-").isdigit():
            groups.append(int(raw))
    return groups


# Группы, для которых при старте поднимаются расписания объявлений
MANAGED_GROUPS = _load_managed_groups()

FLASK_HOST = "0.0.0.0"
FLASK_PORT = int(os.getenv("PORT", 10000))

# Счётчики активности сбрасываются в Redis не чаще этого интервала
ACTIVITY_FLUSH_INTERVAL_SEC = _get_float("ACTIVITY_FLUSH_INTERVAL_SEC", 30.0)
STATE_CLEANUP_INTERVAL_SEC = _get_float("STATE_CLEANUP_INTERVAL_SEC", 600.0)
CHALLENGE_GRACE_SEC = _get_float("CHALLENGE_GRACE_SEC", 2.0)

IMAGE_MODERATION_ENABLED = os.getenv("IMAGE_MODERATION_ENABLED", "").lower() in ("1", "true", "yes")
IMAGE_MODERATION_ENDPOINT = os.getenv("IMAGE_MODERATION_ENDPOINT", "")
IMAGE_MODERATION_API_KEY = os.getenv("IMAGE_MODERATION_API_KEY", "")
IMAGE_MODERATION_THRESHOLD = _get_float("IMAGE_MODERATION_THRESHOLD", 0.7)

GROUP_RULE_KEY_PREFIX = "group_rule:"
PUNISHMENTS_KEY_PREFIX = "punishments:"
APPEALS_KEY_PREFIX = "appeals:"
ACTIVITY_KEY_PREFIX = "activity:"
