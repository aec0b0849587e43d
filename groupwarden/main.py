# Copyright (c) 2025 sprowii
import asyncio
import threading

from telegram.ext import Application, ApplicationBuilder, ChatJoinRequestHandler, MessageHandler, filters

from groupwarden import config
from groupwarden.bot.handlers import (
    group_message_handler,
    join_request_handler,
    left_member_handler,
    new_members_handler,
)
from groupwarden.bot.jobs import activity_flush_job, state_cleanup_job
from groupwarden.logging_config import log
from groupwarden.moderation.capabilities import TelegramCapabilityAdapter
from groupwarden.moderation.content_filter import ImageClassifier
from groupwarden.moderation.controller import get_moderation_engine, init_moderation_engine
from groupwarden.moderation.storage import (
    RedisRecordSink,
    RedisRuleResolver,
    add_rule_listener,
    list_group_ids,
    load_all_activity_async,
    save_activity_async,
)
from groupwarden.security.data_protection import check_security_config
from groupwarden.web.server import run_web_server


def _build_image_classifier():
    if not (config.IMAGE_MODERATION_ENABLED and config.IMAGE_MODERATION_ENDPOINT):
        return None
    return ImageClassifier(
        endpoint=config.IMAGE_MODERATION_ENDPOINT,
        threshold=config.IMAGE_MODERATION_THRESHOLD,
        api_key=config.IMAGE_MODERATION_API_KEY,
    )


async def post_init(application: Application) -> None:
    engine = init_moderation_engine(
        TelegramCapabilityAdapter(application.bot),
        RedisRuleResolver(),
        RedisRecordSink(),
        image_classifier=_build_image_classifier(),
        activity_persist=save_activity_async,
    )
    loaded = engine.activity.load(await load_all_activity_async())
    log.info(f"Loaded {loaded} activity counters")

    group_ids = sorted(set(config.MANAGED_GROUPS) | set(list_group_ids()))
    await engine.start(group_ids)
    # Правки правил (веб, импорт) перезапускают расписание группы
    add_rule_listener(engine.rule_change_listener(asyncio.get_running_loop()))


async def post_shutdown(application: Application) -> None:
    engine = get_moderation_engine()
    if engine is not None:
        await engine.shutdown()


def main() -> None:
    if not config.TG_TOKEN:
        raise RuntimeError("TG_TOKEN не задан")

    security = check_security_config()
    for issue in security["issues"]:
        log.warning(f"Security: {issue}")

    threading.Thread(target=run_web_server, daemon=True).start()

    application = (
        ApplicationBuilder()
        .token(config.TG_TOKEN)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )

    application.add_handler(MessageHandler(filters.StatusUpdate.NEW_CHAT_MEMBERS, new_members_handler))
    application.add_handler(MessageHandler(filters.StatusUpdate.LEFT_CHAT_MEMBER, left_member_handler))
    application.add_handler(ChatJoinRequestHandler(join_request_handler))
    application.add_handler(
        MessageHandler(filters.ChatType.GROUPS & ~filters.COMMAND & ~filters.StatusUpdate.ALL, group_message_handler)
    )

    application.job_queue.run_repeating(state_cleanup_job, interval=config.STATE_CLEANUP_INTERVAL_SEC, first=60)
    application.job_queue.run_repeating(activity_flush_job, interval=config.ACTIVITY_FLUSH_INTERVAL_SEC)

    log.info("Starting groupwarden bot")
    application.run_polling()


if __name__ == "__main__":
    main()
