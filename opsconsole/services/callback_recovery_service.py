"""Recovery application service for stale, expired and invalid button presses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ..bot.utils.action_dedupe import is_duplicate_action
from ..bot.utils.callback_codec import CallbackCodec
from ..bot.utils.callback_routing import (
    matches_expired_conversation,
    parse_callback_action,
)
from ..bot.utils.callback_validator import STATUS_EXPIRED, CallbackValidation
from ..bot.utils.session_state import ChatSession
from ..utils.constants import STALE_NOTICE_TTL_SECONDS

logger = structlog.get_logger()

EXPIRED_CONVERSATION_META_KEY = "expired_conversation"


@dataclass
class CallbackRecoveryActions:
    """Side effects the service may perform for the current press."""

    answer: Callable[[str], Awaitable[Any]]
    clear_markup: Callable[[], Awaitable[Any]]
    clear_menus: Callable[[], Awaitable[Any]]
    reopen_menu: Callable[[str], Awaitable[Any]]


@dataclass
class CallbackRecoveryResult:
    """Outcome for metrics; the press is always handled."""

    metric_status: str
    notice_sent: bool
    reopened: bool = False
    metric_extra: Dict[str, Any] = field(default_factory=dict)


class CallbackRecoveryService:
    """Answer dead buttons once per cause and reopen a live menu."""

    MENU_EXPIRED_TEXT = "⌛ This menu expired. Use /menu to start again."
    SESSION_EXPIRED_TEXT = "⌛ Session expired. Use /menu to start again."
    EXPIRED_REOPEN_TEXT = "⌛ This menu expired. Opening the latest view…"
    INACTIVE_TEXT = "⚠️ This menu is no longer active."

    def __init__(
        self,
        codec: CallbackCodec,
        *,
        notice_ttl_seconds: float = STALE_NOTICE_TTL_SECONDS,
    ) -> None:
        self.codec = codec
        self.notice_ttl_seconds = notice_ttl_seconds

    async def handle_invalid_callback(
        self,
        *,
        session: ChatSession,
        raw_action: str,
        validation: CallbackValidation,
        message_id: Optional[int],
        actions: CallbackRecoveryActions,
    ) -> CallbackRecoveryResult:
        stale_action = validation.action or ""
        signed = self.codec.parse_callback_data(raw_action)
        parsed_action = parse_callback_action(stale_action)
        expired_conversation = session.meta.get(EXPIRED_CONVERSATION_META_KEY)

        if matches_expired_conversation(expired_conversation, parsed_action, signed.token):
            notice_key = "expired_conversation:" + str(
                expired_conversation.get("op_id")
                or expired_conversation.get("token")
                or "unknown"
            )
            first_notice = not expired_conversation.get(
                "notice_sent"
            ) and not is_duplicate_action(session, notice_key, self.notice_ttl_seconds)

            await actions.answer(
                self.MENU_EXPIRED_TEXT if first_notice else self.SESSION_EXPIRED_TEXT
            )
            await actions.clear_markup()
            if first_notice:
                session.meta[EXPIRED_CONVERSATION_META_KEY] = {
                    **expired_conversation,
                    "notice_sent": True,
                }
            return CallbackRecoveryResult(
                metric_status="expired_callback", notice_sent=first_notice
            )

        notice_key = f"stale_menu:{validation.status}:{message_id or 'unknown'}"
        first_notice = not is_duplicate_action(session, notice_key, self.notice_ttl_seconds)
        text = (
            self.EXPIRED_REOPEN_TEXT
            if validation.status == STATUS_EXPIRED
            else self.INACTIVE_TEXT
        )

        await actions.answer(text)
        await actions.clear_markup()

        if first_notice:
            await actions.clear_menus()
            await actions.reopen_menu(stale_action)

        logger.info(
            "Dead callback handled",
            status=validation.status,
            reason=validation.reason,
            first_notice=first_notice,
        )
        return CallbackRecoveryResult(
            metric_status=validation.status,
            notice_sent=first_notice,
            reopened=first_notice,
            metric_extra={"reason": validation.reason},
        )
