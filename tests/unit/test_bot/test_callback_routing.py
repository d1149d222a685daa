"""Tests for action string structure and the action router."""

from unittest.mock import AsyncMock

import pytest

from opsconsole.bot.action_router import CallbackActionRouter
from opsconsole.bot.utils.callback_routing import (
    CallbackAction,
    build_stale_conversation_key,
    extract_legacy_op_token,
    is_conversation_callback_stale,
    is_session_bound_action,
    matches_expired_conversation,
    parse_callback_action,
    resolve_conversation_from_prefix,
)

OP_ID = "0f1e2d3c-4b5a-4978-8877-665544332211"


def test_parse_callback_action_with_op_id():
    parsed = parse_callback_action(f"sms-confirm:{OP_ID}:send:now")

    assert parsed == CallbackAction(prefix="sms-confirm", op_id=OP_ID, value="send:now")


def test_parse_callback_action_without_op_id():
    assert parse_callback_action("PROVIDER:HOME") == CallbackAction(
        prefix="PROVIDER", op_id=None, value="HOME"
    )
    assert parse_callback_action("MENU") is None


def test_extract_legacy_op_token():
    assert extract_legacy_op_token(f"call-retry:{OP_ID}:1") == "0f1e2d3c"
    assert extract_legacy_op_token("PROVIDER:HOME") is None
    assert extract_legacy_op_token("MENU") is None


def test_is_session_bound_action():
    assert is_session_bound_action("PROVIDER:HOME") is True
    assert is_session_bound_action("MENU") is False


@pytest.mark.parametrize(
    ("prefix", "conversation"),
    [
        ("call-script-fallback", "call-conversation"),
        ("call-script-edit", "scripts-conversation"),
        ("call-confirm", "call-conversation"),
        ("bulk-sms-preview", "bulk-sms-conversation"),
        ("sms-confirm", "sms-conversation"),
        ("email-template-pick", "email-templates-conversation"),
        ("PROVIDER", None),
        (None, None),
    ],
)
def test_resolve_conversation_from_prefix(prefix, conversation):
    assert resolve_conversation_from_prefix(prefix) == conversation


def test_matches_expired_conversation_by_op_id_or_token():
    expired = {"op_id": OP_ID, "token": "0f1e2d3c"}

    assert matches_expired_conversation(expired, parse_callback_action(f"sms-x:{OP_ID}:y"), None)
    assert matches_expired_conversation(expired, None, "0f1e2d3c")
    assert not matches_expired_conversation(expired, None, "ffffffff")
    assert not matches_expired_conversation(None, None, "0f1e2d3c")


def test_is_conversation_callback_stale():
    parsed = parse_callback_action(f"sms-x:{OP_ID}:y")

    assert is_conversation_callback_stale(parsed, OP_ID) is False
    assert is_conversation_callback_stale(parsed, "other") is True
    assert is_conversation_callback_stale(None, OP_ID) is True


def test_build_stale_conversation_key():
    assert build_stale_conversation_key("sms-conversation", None) == (
        "stale_conversation:sms-conversation:unknown"
    )


def test_router_prefers_exact_then_longest_prefix():
    router = CallbackActionRouter()
    exact = AsyncMock()
    short = AsyncMock()
    long = AsyncMock()
    router.add_action("SMS", exact)
    router.add_prefix("sms", short)
    router.add_prefix("sms:preview:", long)

    assert router.resolve("SMS") == ("SMS", exact)
    assert router.resolve("sms:preview:send") == ("sms:preview", long)
    assert router.resolve("sms:other") == ("sms", short)
    assert router.resolve("smsx") is None
    assert "sms" in router
    assert None not in router


def test_router_rejects_empty_keys():
    router = CallbackActionRouter()

    with pytest.raises(ValueError):
        router.add_action("", AsyncMock())
    with pytest.raises(ValueError):
        router.add_prefix(":", AsyncMock())
