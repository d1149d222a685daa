"""Tests for the callback query dispatcher."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from opsconsole.bot.action_router import CallbackActionRouter
from opsconsole.bot.handlers.callback import DUPLICATE_PRESS_TEXT, handle_callback_query
from opsconsole.bot.utils.action_metrics import MenuActionMetrics
from opsconsole.bot.utils.callback_alias import CallbackAliasTable
from opsconsole.bot.utils.callback_codec import CallbackCodec
from opsconsole.bot.utils.callback_validator import CallbackValidator
from opsconsole.bot.utils.conversation import ConversationChannel, wait_for_conversation_text
from opsconsole.bot.utils.session_state import get_chat_session, start_operation
from opsconsole.exceptions import OperationCancelledError
from opsconsole.services import CallbackRecoveryService, OperationLifecycleService

CHAT_ID = 4401
USER_ID = 5501


def _context():
    codec = CallbackCodec(["secret"], CallbackAliasTable(capacity=50))
    router = CallbackActionRouter()
    bot = SimpleNamespace(
        send_message=AsyncMock(return_value=SimpleNamespace(message_id=900)),
        delete_message=AsyncMock(),
        edit_message_reply_markup=AsyncMock(),
    )
    return SimpleNamespace(
        bot=bot,
        chat_data={},
        bot_data={
            "callback_codec": codec,
            "callback_validator": CallbackValidator(codec),
            "callback_recovery_service": CallbackRecoveryService(codec),
            "operation_lifecycle_service": OperationLifecycleService(),
            "menu_metrics": MenuActionMetrics(actions={"MENU"}),
            "action_router": router,
            "settings": SimpleNamespace(action_dedupe_ttl_seconds=8.0),
        },
    )


def _update(data, *, callback_id="cb-1", message_id=10):
    message = SimpleNamespace(
        message_id=message_id,
        chat=SimpleNamespace(id=CHAT_ID),
        reply_text=AsyncMock(),
    )
    query = SimpleNamespace(
        id=callback_id,
        data=data,
        from_user=SimpleNamespace(id=USER_ID),
        message=message,
        answer=AsyncMock(),
        edit_message_reply_markup=AsyncMock(),
    )
    return SimpleNamespace(
        callback_query=query,
        effective_chat=SimpleNamespace(id=CHAT_ID),
        effective_message=message,
        effective_user=SimpleNamespace(id=USER_ID),
    )


def _signed(context, action):
    session = get_chat_session(context.chat_data)
    return context.bot_data["callback_codec"].build_callback_data(session, action)


@pytest.mark.asyncio
async def test_valid_press_is_routed_to_handler():
    context = _context()
    start_operation(get_chat_session(context.chat_data), "menu")
    handler = AsyncMock()
    context.bot_data["action_router"].add_action("MENU", handler)
    update = _update(_signed(context, "MENU"))

    await handle_callback_query(update, context)

    update.callback_query.answer.assert_awaited_once_with()
    handler.assert_awaited_once_with(update, context, "MENU")
    assert context.bot_data["menu_metrics"].summary() == [
        {"action": "MENU", "total": 1, "error_rate": 0}
    ]


@pytest.mark.asyncio
async def test_redelivered_callback_id_is_ignored():
    context = _context()
    handler = AsyncMock()
    context.bot_data["action_router"].add_action("MENU", handler)
    raw = _signed(context, "MENU")

    await handle_callback_query(_update(raw, callback_id="same"), context)
    again = _update(raw, callback_id="same")
    await handle_callback_query(again, context)

    handler.assert_awaited_once()
    again.callback_query.answer.assert_awaited_once_with(DUPLICATE_PRESS_TEXT)


@pytest.mark.asyncio
async def test_double_tap_on_same_message_is_collapsed():
    context = _context()
    handler = AsyncMock()
    context.bot_data["action_router"].add_action("MENU", handler)
    raw = _signed(context, "MENU")

    await handle_callback_query(_update(raw, callback_id="a"), context)
    await handle_callback_query(_update(raw, callback_id="b"), context)

    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_stale_press_is_recovered_with_fresh_menu():
    context = _context()
    session = get_chat_session(context.chat_data)
    start_operation(session, "menu")
    raw = _signed(context, "PROVIDER:HOME")
    start_operation(session, "sms")
    handler = AsyncMock()
    context.bot_data["action_router"].add_prefix("PROVIDER", handler)
    update = _update(raw)

    await handle_callback_query(update, context)

    handler.assert_not_awaited()
    update.callback_query.answer.assert_awaited_once_with(
        CallbackRecoveryService.INACTIVE_TEXT
    )
    update.callback_query.edit_message_reply_markup.assert_awaited_once_with(
        reply_markup=None
    )
    context.bot.send_message.assert_awaited_once()
    assert context.bot.send_message.await_args.kwargs["chat_id"] == CHAT_ID
    assert session.current_op.command == "menu"


@pytest.mark.asyncio
async def test_press_is_pushed_into_running_conversation():
    context = _context()
    session = get_chat_session(context.chat_data)
    op_id = start_operation(session, "sms")
    channel = ConversationChannel("sms-conversation")
    session.conversation = channel
    update = _update(_signed(context, f"sms-confirm:{op_id}:send"))

    await handle_callback_query(update, context)

    assert await channel.wait() is update


@pytest.mark.asyncio
async def test_press_into_text_conversation_is_answered_once():
    context = _context()
    session = get_chat_session(context.chat_data)
    op_id = start_operation(session, "sms")
    channel = ConversationChannel("sms-conversation")
    session.conversation = channel
    update = _update(_signed(context, f"sms-confirm:{op_id}:send"))
    update.message = None
    reply = AsyncMock()

    await handle_callback_query(update, context)
    channel.push(SimpleNamespace(message=SimpleNamespace(text="+15550100"), callback_query=None))
    _, text = await wait_for_conversation_text(channel, session, reply, guard_commands=False)

    assert text == "+15550100"
    update.callback_query.answer.assert_awaited_once_with()
    reply.assert_awaited_once_with("⚠️ Please send a text response to continue.")


@pytest.mark.asyncio
async def test_conversation_press_without_conversation_reopens_menu():
    context = _context()
    session = get_chat_session(context.chat_data)
    op_id = start_operation(session, "sms")
    update = _update(_signed(context, f"sms-confirm:{op_id}:send"))

    await handle_callback_query(update, context)

    update.effective_message.reply_text.assert_awaited_once()
    context.bot.send_message.assert_awaited_once()
    assert session.current_op.command == "menu"


@pytest.mark.asyncio
async def test_unknown_action_gets_notice():
    context = _context()
    update = _update(_signed(context, "NOT_REGISTERED"))

    await handle_callback_query(update, context)

    update.effective_message.reply_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancelled_handler_unwinds_silently():
    context = _context()
    handler = AsyncMock(side_effect=OperationCancelledError("Operation superseded"))
    context.bot_data["action_router"].add_action("MENU", handler)
    update = _update(_signed(context, "MENU"))

    await handle_callback_query(update, context)

    update.effective_message.reply_text.assert_not_awaited()
    assert context.bot_data["menu_metrics"].summary()[0]["error_rate"] == 100


@pytest.mark.asyncio
async def test_failing_handler_is_reported():
    context = _context()
    handler = AsyncMock(side_effect=RuntimeError("provider down"))
    context.bot_data["action_router"].add_action("MENU", handler)
    update = _update(_signed(context, "MENU"))

    await handle_callback_query(update, context)

    update.effective_message.reply_text.assert_awaited_once()
    assert context.bot_data["menu_metrics"].summary()[0]["error_rate"] == 100
