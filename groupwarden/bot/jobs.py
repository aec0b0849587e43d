# Copyright (c) 2025 sprouee
from telegram.ext import CallbackContext

from groupwarden.logging_config import log
from groupwarden.moderation.controller import get_moderation_engine


async def state_cleanup_job(context: CallbackContext):
    engine = get_moderation_engine()
    if engine is None:
        return
    try:
        removed = await engine.cleanup()
        if removed:
            log.info(f"State cleanup: removed {removed} entries")
    except Exception as exc:
        log.error(f"State cleanup failed: {exc}")


async def activity_flush_job(context: CallbackContext):
    engine = get_moderation_engine()
    if engine is None:
        return
    written = await engine.activity.flush()
    if written:
        log.debug(f"Activity flush: {written} counters")
