"""
Tests for groupwarden/bot/handlers.py and jobs.py

Telegram updates are MagicMock objects; the engine is patched in.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import GROUP_ID, USER_ID
from groupwarden.bot import handlers, jobs


def _user(user_id=USER_ID, username="bob", is_bot=False):
    user = MagicMock()
    user.id = user_id
    user.username = username
    user.full_name = "Bob"
    user.is_bot = is_bot
    return user


def _update(text="hello", document=None):
    update = MagicMock()
    update.effective_user = _user()
    update.effective_chat.id = GROUP_ID
    update.effective_chat.title = "Club"
    message = update.effective_message
    message.text = text
    message.caption = None
    message.message_id = 10
    message.document = document
    message.photo = []
    message.date = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return update


@pytest.fixture
def engine():
    mock = MagicMock()
    mock.image_classifier = None
    mock.handle_message = AsyncMock()
    mock.handle_member_added = AsyncMock()
    mock.handle_member_removed = AsyncMock()
    mock.cleanup = AsyncMock(return_value=3)
    mock.activity.flush = AsyncMock(return_value=0)
    with patch.object(handlers, "get_moderation_engine", return_value=mock), \
            patch.object(jobs, "get_moderation_engine", return_value=mock):
        yield mock


@pytest.mark.asyncio
async def test_group_message_converted(engine):
    document = MagicMock(file_name="a.exe")
    await handlers.group_message_handler(_update(document=document), MagicMock())

    inbound = engine.handle_message.await_args.args[0]
    assert inbound.group_id == GROUP_ID
    assert inbound.user_id == USER_ID
    assert inbound.content == "hello"
    assert inbound.message_id == 10
    assert inbound.user_name == "@bob"
    assert [a.extension for a in inbound.attachments] == ["exe"]


@pytest.mark.asyncio
async def test_bot_messages_ignored(engine):
    update = _update()
    update.effective_user = _user(is_bot=True)
    await handlers.group_message_handler(update, MagicMock())
    engine.handle_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_engine_errors_are_contained(engine):
    engine.handle_message.side_effect = RuntimeError("boom")
    await handlers.group_message_handler(_update(), MagicMock())


@pytest.mark.asyncio
async def test_new_members_skip_bots(engine):
    update = _update()
    update.effective_message.new_chat_members = [_user(1), _user(2, is_bot=True), _user(3, username=None)]
    await handlers.new_members_handler(update, MagicMock())

    events = [call.args[0] for call in engine.handle_member_added.await_args_list]
    assert [event.user_id for event in events] == [1, 3]
    assert events[1].user_name == "Bob"
    assert events[0].group_name == "Club"


@pytest.mark.asyncio
async def test_left_member(engine):
    update = _update()
    update.effective_message.left_chat_member = _user(5)
    await handlers.left_member_handler(update, MagicMock())
    assert engine.handle_member_removed.await_args.args[0].user_id == 5


@pytest.mark.asyncio
async def test_jobs(engine):
    await jobs.state_cleanup_job(MagicMock())
    await jobs.activity_flush_job(MagicMock())
    engine.cleanup.assert_awaited_once()
    engine.activity.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_join_request_forwarded(engine):
    engine.handle_join_request = AsyncMock(return_value=True)
    update = MagicMock()
    update.chat_join_request.chat.id = GROUP_ID
    update.chat_join_request.chat.title = "Club"
    update.chat_join_request.from_user = _user(7, username=None)

    await handlers.join_request_handler(update, MagicMock())
    event = engine.handle_join_request.await_args.args[0]
    assert (event.group_id, event.user_id, event.user_name) == (GROUP_ID, 7, "Bob")
