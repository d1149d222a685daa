"""Tests for per-chat operation lifecycle and flow state."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from opsconsole.bot.utils.session_state import (
    SESSION_STATE_KEY,
    ChatSession,
    FlowContext,
    Operation,
    abort_handle_registered,
    cancel_active_flow,
    cleanup_abandoned_handles,
    cleanup_expired_flows,
    derive_op_token,
    ensure_flow,
    ensure_operation_active,
    get_chat_session,
    get_current_op_id,
    get_current_op_token,
    get_session_memory_stats,
    guard_against_command_interrupt,
    is_operation_active,
    is_slash_command_input,
    register_abort_handle,
    reset_session,
    safe_reset,
    start_operation,
)
from opsconsole.exceptions import OperationCancelledError


def _freeze(monkeypatch, now):
    monkeypatch.setattr(
        "opsconsole.bot.utils.session_state.time.time",
        lambda: now[0],
    )


def test_start_operation_allocates_id_and_token():
    session = ChatSession()

    op_id = start_operation(session, "sms", {"step": 1})

    assert get_current_op_id(session) == op_id
    assert get_current_op_token(session) == op_id.replace("-", "")[:8]
    assert session.current_op.metadata == {"step": 1}
    assert session.last_command == "sms"


def test_same_command_reuses_operation(monkeypatch):
    now = [100.0]
    _freeze(monkeypatch, now)
    session = ChatSession()
    op_id = start_operation(session, "sms", {"a": 1})
    token = get_current_op_token(session)

    now[0] = 200.0
    again = start_operation(session, "sms", {"b": 2})

    assert again == op_id
    assert get_current_op_token(session) == token
    assert session.current_op.started_at == 200.0
    assert session.current_op.metadata == {"a": 1, "b": 2}


def test_new_command_supersedes_and_aborts_handles():
    session = ChatSession()
    first = start_operation(session, "sms")
    handle = MagicMock()
    register_abort_handle(session, handle)

    second = start_operation(session, "email")

    assert second != first
    assert is_operation_active(session, first) is False
    assert is_operation_active(session, second) is True
    handle.abort.assert_called_once_with("superseded:email")
    assert session.pending_abort_handles == []


def test_ensure_operation_active_raises_for_superseded_op():
    session = ChatSession()
    first = start_operation(session, "sms")
    start_operation(session, "email")

    with pytest.raises(OperationCancelledError):
        ensure_operation_active(session, first)
    with pytest.raises(OperationCancelledError):
        ensure_operation_active(session, None)


def test_register_abort_handle_release_is_idempotent():
    session = ChatSession()
    handle = MagicMock()
    release = register_abort_handle(session, handle)

    release()
    release()

    assert session.pending_abort_handles == []


def test_abort_handle_registered_context_manager():
    session = ChatSession()
    handle = MagicMock()

    with abort_handle_registered(session, handle):
        assert handle in session.pending_abort_handles

    assert handle not in session.pending_abort_handles


@pytest.mark.asyncio
async def test_cancel_active_flow_continues_after_failing_handle():
    session = ChatSession()
    start_operation(session, "sms")
    broken = MagicMock()
    broken.abort.side_effect = RuntimeError("boom")
    healthy = MagicMock()
    register_abort_handle(session, broken)
    register_abort_handle(session, healthy)
    conversation = SimpleNamespace(exit=MagicMock())
    session.conversation = conversation
    session.meta["x"] = 1
    ensure_flow(session, "sms")

    await cancel_active_flow(session, "cancel_command")

    healthy.abort.assert_called_once_with("cancel_command")
    conversation.exit.assert_called_once_with()
    assert session.current_op is None
    assert session.meta == {}
    assert session.flow is None
    assert session.conversation is None


@pytest.mark.asyncio
async def test_cancel_active_flow_ignores_missing_conversation():
    session = ChatSession()
    session.conversation = SimpleNamespace(
        exit=AsyncMock(side_effect=RuntimeError("No conversation to exit"))
    )

    await cancel_active_flow(session)

    assert session.conversation is None


@pytest.mark.asyncio
async def test_cancel_active_flow_is_safe_on_empty_session():
    session = ChatSession()

    await cancel_active_flow(session)

    assert session.current_op is None


def test_reset_session_clears_state():
    session = ChatSession()
    start_operation(session, "sms")
    session.errors.append("oops")

    reset_session(session)

    assert session.current_op is None
    assert session.last_command is None
    assert session.errors == []


@pytest.mark.asyncio
async def test_safe_reset_notifies_and_swallows_reply_errors():
    session = ChatSession()
    start_operation(session, "sms")
    reply = AsyncMock(side_effect=RuntimeError("chat gone"))

    await safe_reset(session, reply, "timeout", message="Expired.", menu_hint="Use /menu.")

    reply.assert_awaited_once_with("Expired.\nUse /menu.")
    assert session.current_op is None


@pytest.mark.asyncio
async def test_safe_reset_without_notify_is_silent():
    reply = AsyncMock()

    await safe_reset(ChatSession(), reply, notify=False)

    reply.assert_not_awaited()


def test_ensure_flow_resets_after_ttl(monkeypatch):
    now = [1000.0]
    _freeze(monkeypatch, now)
    session = ChatSession()
    flow = ensure_flow(session, "sms", ttl_seconds=60, step="recipient")
    flow.state["to"] = "+15550100"

    now[0] = 1030.0
    same = ensure_flow(session, "sms", ttl_seconds=60)
    assert same is flow
    assert same.state == {"to": "+15550100"}
    assert same.step == "recipient"

    now[0] = 1100.0
    reset = ensure_flow(session, "sms", ttl_seconds=60, step="recipient")
    assert reset.state == {}
    assert reset.created_at == 1100.0
    assert reset.step == "recipient"


def test_ensure_flow_with_other_name_starts_fresh():
    session = ChatSession()
    ensure_flow(session, "sms").state["x"] = 1

    flow = ensure_flow(session, "email")

    assert flow.name == "email"
    assert flow.state == {}


def test_ensure_flow_rehydrates_plain_mapping(monkeypatch):
    now = [1000.0]
    _freeze(monkeypatch, now)
    session = ChatSession()
    session.flow = {
        "name": "sms",
        "created_at": 990.0,
        "updated_at": 995.0,
        "step": "body",
        "state": {"to": "+15550100"},
    }

    flow = ensure_flow(session, "sms", ttl_seconds=60)

    assert isinstance(flow, FlowContext)
    assert flow.created_at == 990.0
    assert flow.step == "body"
    assert flow.state == {"to": "+15550100"}
    assert flow.updated_at == 1000.0


def test_get_chat_session_rebuilds_persisted_dict():
    op_id = "12345678-9abc-4def-8000-000000000000"
    chat_data = {
        SESSION_STATE_KEY: {
            "current_op": {"id": op_id, "command": "sms", "started_at": 5},
            "last_command": "sms",
            "flow": {"name": "sms", "ttl_seconds": 30, "state": {"a": 1}},
            "action_history": {"k": 10, "bad": "x"},
            "menu_messages": [{"chat_id": 1, "message_id": 2}, "junk"],
        }
    }

    session = get_chat_session(chat_data)

    assert isinstance(session, ChatSession)
    assert chat_data[SESSION_STATE_KEY] is session
    assert session.current_op.token == derive_op_token(op_id)
    assert session.current_op.started_at == 5.0
    assert session.flow.state == {"a": 1}
    assert session.flow.ttl_seconds == 30
    assert session.action_history == {"k": 10.0}
    assert session.menu_messages == [{"chat_id": 1, "message_id": 2}]
    assert get_chat_session(chat_data) is session


def test_chat_session_dict_round_trip_drops_runtime_fields():
    session = ChatSession()
    start_operation(session, "sms")
    session.conversation = object()
    register_abort_handle(session, MagicMock())

    data = session.to_dict()
    restored = ChatSession.from_dict(data)

    assert "conversation" not in data
    assert "pending_abort_handles" not in data
    assert restored.current_op == session.current_op
    assert restored.pending_abort_handles == []


def test_operation_from_dict_requires_id():
    assert Operation.from_dict({"command": "sms"}) is None
    assert Operation.from_dict("nonsense") is None


def test_cleanup_helpers(monkeypatch):
    now = [0.0]
    _freeze(monkeypatch, now)
    session = ChatSession()
    ensure_flow(session, "sms", ttl_seconds=10)
    session.pending_abort_handles = [MagicMock(), object()]

    assert cleanup_expired_flows(session) == 0
    now[0] = 20.0
    assert cleanup_expired_flows(session) == 1
    assert session.flow is None
    assert cleanup_abandoned_handles(session) == 1

    stats = get_session_memory_stats(session)
    assert stats["abort_handles"] == 1
    assert stats["has_flow"] is False


@pytest.mark.parametrize(
    ("text", "expected"),
    [("/menu", True), ("  /cancel ", True), ("/", False), ("hello", False), (None, False)],
)
def test_is_slash_command_input(text, expected):
    assert is_slash_command_input(text) is expected


@pytest.mark.asyncio
async def test_guard_against_command_interrupt_resets_session():
    session = ChatSession()
    start_operation(session, "sms")

    await guard_against_command_interrupt(session, "hello")
    assert session.current_op is not None

    with pytest.raises(OperationCancelledError):
        await guard_against_command_interrupt(session, "/menu")
    assert session.current_op is None
