"""Classify incoming callback_data against the chat's live operation.

Every press resolves to one of ``ok``, ``invalid``, ``expired`` or ``stale``
before any handler runs. Handlers branch on the status only, never on the
raw payload shape.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ...utils.constants import DEFAULT_CALLBACK_TTL_SECONDS
from .callback_alias import ALIAS_TOKEN_MISMATCH
from .callback_codec import CallbackCodec
from .callback_routing import extract_legacy_op_token, is_session_bound_action
from .session_state import ChatSession

STATUS_OK = "ok"
STATUS_INVALID = "invalid"
STATUS_EXPIRED = "expired"
STATUS_STALE = "stale"

REASON_TTL = "ttl"
REASON_TOKEN_MISMATCH = ALIAS_TOKEN_MISMATCH


@dataclass
class CallbackValidation:
    status: str
    action: str
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


class CallbackValidator:
    """Validate callback payloads produced by ``CallbackCodec``.

    ``is_session_bound`` decides which signed actions get TTL and token
    checks; the default treats actions containing ``:`` as bound.
    """

    def __init__(
        self,
        codec: CallbackCodec,
        *,
        ttl_seconds: float = DEFAULT_CALLBACK_TTL_SECONDS,
        is_session_bound: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.codec = codec
        self.ttl_seconds = ttl_seconds
        self.is_session_bound = is_session_bound or is_session_bound_action

    def validate(
        self,
        session: ChatSession,
        raw: Any,
        *,
        ttl_seconds: Optional[float] = None,
    ) -> CallbackValidation:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        now = time.time()
        live_op = session.current_op
        live_token = live_op.token if live_op else None

        parsed = self.codec.parse_callback_data(raw)

        if not parsed.signed:
            legacy_token = extract_legacy_op_token(parsed.action)
            if legacy_token is None:
                return CallbackValidation(STATUS_OK, parsed.action)
            if live_token and legacy_token != live_token:
                return CallbackValidation(
                    STATUS_STALE, parsed.action, REASON_TOKEN_MISMATCH
                )
            if live_op is not None and ttl > 0 and now - live_op.started_at > ttl:
                return CallbackValidation(STATUS_EXPIRED, parsed.action, REASON_TTL)
            return CallbackValidation(STATUS_OK, parsed.action)

        if not parsed.valid:
            status = (
                STATUS_STALE
                if parsed.reason == REASON_TOKEN_MISMATCH
                else STATUS_INVALID
            )
            return CallbackValidation(status, parsed.action, parsed.reason)

        if not self.is_session_bound(parsed.action):
            return CallbackValidation(STATUS_OK, parsed.action)

        if ttl > 0 and parsed.timestamp is not None and now - parsed.timestamp > ttl:
            return CallbackValidation(STATUS_EXPIRED, parsed.action, REASON_TTL)
        if (parsed.token or "") != (live_token or ""):
            return CallbackValidation(
                STATUS_STALE, parsed.action, REASON_TOKEN_MISMATCH
            )
        return CallbackValidation(STATUS_OK, parsed.action)
