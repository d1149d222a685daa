"""Signed inline button payloads.

Wire forms, in order of preference:

* ``cb|<action>|<token>|<ts>|<sig>``: direct signed payload.
* ``cbk|<alias>|<token>|<ts>|<sig>``: signed payload over an alias key when
  the direct form would exceed Telegram's 64-byte callback_data limit.
* ``<action>``: bare action, for permanent buttons (``ttl_seconds <= 0``) or
  when neither signed form fits.

``sig`` is HMAC-SHA256 over ``<action-or-alias>|<token>|<ts>`` cut to 8 hex
characters. It binds a button to the operation that rendered it; it does not
hide anything.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import structlog

from ...exceptions import CallbackPayloadError
from ...utils.constants import (
    DEFAULT_CALLBACK_TTL_SECONDS,
    FALLBACK_CALLBACK_SECRET,
    TELEGRAM_CALLBACK_DATA_MAX_BYTES,
)
from .callback_alias import ALIAS_OK, CallbackAliasTable
from .session_state import ChatSession, get_current_op_token

logger = structlog.get_logger()

SIGNED_PREFIX = "cb"
ALIAS_PREFIX = "cbk"
DELIMITER = "|"
SIGNATURE_LENGTH = 8

# Parse failure reasons
REASON_FORMAT = "format"
REASON_SIGNATURE = "signature"


@dataclass
class ParsedCallback:
    """Decoded callback_data.

    ``valid`` is None for bare payloads, which carry no signature.
    """

    action: str
    signed: bool
    valid: Optional[bool] = None
    token: Optional[str] = None
    timestamp: Optional[int] = None
    reason: Optional[str] = None
    alias: Optional[str] = None


def payload_size(data: str) -> int:
    return len(data.encode("utf-8"))


class CallbackCodec:
    """Encode and decode operation-bound callback_data."""

    def __init__(
        self,
        secrets: Sequence[str],
        alias_table: CallbackAliasTable,
        *,
        max_bytes: int = TELEGRAM_CALLBACK_DATA_MAX_BYTES,
        default_ttl_seconds: float = DEFAULT_CALLBACK_TTL_SECONDS,
    ) -> None:
        self.secrets = [s for s in secrets if s] or [FALLBACK_CALLBACK_SECRET]
        self.alias_table = alias_table
        self.max_bytes = min(int(max_bytes), TELEGRAM_CALLBACK_DATA_MAX_BYTES)
        self.default_ttl_seconds = default_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Any, alias_table: CallbackAliasTable) -> "CallbackCodec":
        return cls(
            settings.callback_secrets,
            alias_table,
            max_bytes=settings.callback_max_bytes,
            default_ttl_seconds=settings.callback_ttl_seconds,
        )

    @staticmethod
    def _digest(secret: str, payload: str) -> str:
        mac = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256)
        return mac.hexdigest()[:SIGNATURE_LENGTH]

    def sign(self, payload: str) -> str:
        return self._digest(self.secrets[0], payload)

    def verify(self, payload: str, signature: str) -> bool:
        return any(
            hmac.compare_digest(self._digest(secret, payload), signature)
            for secret in self.secrets
        )

    def _encode(self, prefix: str, subject: str, token: str, timestamp: int) -> str:
        signature = self.sign(DELIMITER.join((subject, token, str(timestamp))))
        return DELIMITER.join((prefix, subject, token, str(timestamp), signature))

    def _fits(self, data: str) -> bool:
        return payload_size(data) <= self.max_bytes

    def _bare(self, action: str) -> str:
        if not self._fits(action):
            raise CallbackPayloadError(
                f"Callback action exceeds {self.max_bytes} bytes and cannot be "
                f"signed or aliased: {action[:24]!r}..."
            )
        return action

    def build_callback_data(
        self,
        session: Optional[ChatSession],
        action: str,
        *,
        ttl_seconds: Optional[float] = None,
        token: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> str:
        """Stamp ``action`` with the live operation token for a button."""
        safe_action = str(action or "")
        if not safe_action:
            return ""
        if safe_action.startswith((SIGNED_PREFIX + DELIMITER, ALIAS_PREFIX + DELIMITER)):
            raise CallbackPayloadError(
                f"Callback action collides with a signed prefix: {safe_action!r}"
            )

        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return self._bare(safe_action)

        if token is None:
            bound_token = get_current_op_token(session) if session else ""
        else:
            bound_token = str(token)
        if DELIMITER in bound_token:
            raise CallbackPayloadError(f"Invalid callback token: {bound_token!r}")
        ts = int(timestamp if timestamp is not None else time.time())

        direct = self._encode(SIGNED_PREFIX, safe_action, bound_token, ts)
        if self._fits(direct):
            return direct

        alias = self.alias_table.allocate(
            action=safe_action,
            token=bound_token,
            timestamp=ts,
            ttl_seconds=ttl,
        )
        if alias is not None:
            aliased = self._encode(ALIAS_PREFIX, alias, bound_token, ts)
            if self._fits(aliased):
                return aliased

        logger.warning(
            "Callback payload over budget, falling back to bare action",
            action_length=payload_size(safe_action),
            max_bytes=self.max_bytes,
        )
        return self._bare(safe_action)

    def parse_callback_data(self, raw: Any) -> ParsedCallback:
        """Decode callback_data; never raises."""
        text = str(raw or "")
        prefix, sep, rest = text.partition(DELIMITER)
        if not sep or prefix not in (SIGNED_PREFIX, ALIAS_PREFIX):
            return ParsedCallback(action=text, signed=False)

        is_alias = prefix == ALIAS_PREFIX
        # Split from the right so a direct action may itself contain "|"
        parts = rest.rsplit(DELIMITER, 3)
        if len(parts) != 4 or not parts[0]:
            return ParsedCallback(action="", signed=True, valid=False, reason=REASON_FORMAT)

        subject, token, ts_raw, signature = parts
        try:
            timestamp = int(ts_raw)
        except ValueError:
            return ParsedCallback(action="", signed=True, valid=False, reason=REASON_FORMAT)

        signed_ok = self.verify(DELIMITER.join((subject, token, ts_raw)), signature)

        if not is_alias:
            return ParsedCallback(
                action=subject,
                signed=True,
                valid=signed_ok,
                token=token,
                timestamp=timestamp,
                reason=None if signed_ok else REASON_SIGNATURE,
            )

        if not signed_ok:
            return ParsedCallback(
                action="",
                signed=True,
                valid=False,
                token=token,
                timestamp=timestamp,
                reason=REASON_SIGNATURE,
                alias=subject,
            )

        outcome, entry = self.alias_table.resolve(subject, token=token)
        return ParsedCallback(
            action=entry.action if entry is not None else "",
            signed=True,
            valid=outcome == ALIAS_OK,
            token=token,
            timestamp=timestamp,
            reason=None if outcome == ALIAS_OK else outcome,
            alias=subject,
        )

    def matches_callback_prefix(self, raw: Any, prefix: str) -> bool:
        """Whether the decoded action is ``prefix`` or ``prefix:...``."""
        action = self.parse_callback_data(raw).action or ""
        return action == prefix or action.startswith(f"{prefix}:")
