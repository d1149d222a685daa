"""Structure of callback action strings.

Actions look like ``MENU`` (a global menu entry) or
``<prefix>:<op-id-or-token>:<value>`` / ``<prefix>:<value>`` for buttons that
belong to a running conversation.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

from .session_state import OP_TOKEN_LENGTH

ACTION_DELIMITER = ":"
OP_ID_SEGMENT_PATTERN = re.compile(r"^[0-9a-zA-Z-]{8,}$")

# (prefix, conversation); a trailing "-" matches by prefix
DEFAULT_CONVERSATION_ROUTES: Tuple[Tuple[str, str], ...] = (
    ("call-script-fallback", "call-conversation"),
    ("call-script-", "scripts-conversation"),
    ("call-", "call-conversation"),
    ("sms-script-", "scripts-conversation"),
    ("script-", "scripts-conversation"),
    ("inbound-default-", "scripts-conversation"),
    ("email-template-", "email-templates-conversation"),
    ("bulk-email-", "bulk-email-conversation"),
    ("email-", "email-conversation"),
    ("bulk-sms-", "bulk-sms-conversation"),
    ("sms-", "sms-conversation"),
    ("persona-", "persona-conversation"),
)


@dataclass(frozen=True)
class CallbackAction:
    prefix: str
    op_id: Optional[str]
    value: str


def parse_callback_action(action: Any) -> Optional[CallbackAction]:
    """Split a conversation action; None for flat menu actions."""
    text = str(action or "")
    if ACTION_DELIMITER not in text:
        return None
    parts = text.split(ACTION_DELIMITER)
    prefix = parts[0]
    if len(parts) >= 3 and OP_ID_SEGMENT_PATTERN.match(parts[1]):
        return CallbackAction(
            prefix=prefix,
            op_id=parts[1],
            value=ACTION_DELIMITER.join(parts[2:]),
        )
    return CallbackAction(
        prefix=prefix,
        op_id=None,
        value=ACTION_DELIMITER.join(parts[1:]),
    )


def extract_legacy_op_token(action: Any) -> Optional[str]:
    """Operation token embedded in an unsigned action, if any."""
    parts = str(action or "").split(ACTION_DELIMITER)
    if len(parts) < 2:
        return None
    candidate = parts[1]
    if OP_ID_SEGMENT_PATTERN.match(candidate):
        return candidate.replace("-", "")[:OP_TOKEN_LENGTH]
    return None


def is_session_bound_action(action: str) -> bool:
    """Whether an action belongs to a specific running interaction.

    Inferred from shape: anything with a sub-resource delimiter is bound.
    """
    return ACTION_DELIMITER in action


def resolve_conversation_from_prefix(
    prefix: Optional[str],
    routes: Sequence[Tuple[str, str]] = DEFAULT_CONVERSATION_ROUTES,
) -> Optional[str]:
    if not prefix:
        return None
    for route_prefix, conversation in routes:
        if route_prefix.endswith("-"):
            if prefix.startswith(route_prefix):
                return conversation
        elif prefix == route_prefix:
            return conversation
    return None


def matches_expired_conversation(
    expired_conversation: Optional[Dict[str, Any]],
    parsed: Optional[CallbackAction],
    signed_token: Optional[str],
) -> bool:
    """Whether a press targets the conversation that already timed out."""
    if not expired_conversation:
        return False
    expired_op_id = expired_conversation.get("op_id")
    if expired_op_id and parsed is not None and parsed.op_id == expired_op_id:
        return True
    expired_token = expired_conversation.get("token")
    return bool(expired_token and signed_token and expired_token == signed_token)


def is_conversation_callback_stale(
    parsed: Optional[CallbackAction], current_op_id: Optional[str]
) -> bool:
    return (
        parsed is None
        or not parsed.op_id
        or not current_op_id
        or parsed.op_id != current_op_id
    )


def build_stale_conversation_key(conversation: str, op_id: Optional[str]) -> str:
    return f"stale_conversation:{conversation}:{op_id or 'unknown'}"
