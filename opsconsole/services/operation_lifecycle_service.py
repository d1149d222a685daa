"""Operation lifecycle application service."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ..bot.utils.conversation import ConversationChannel, launch_conversation
from ..bot.utils.session_state import (
    ChatSession,
    FlowContext,
    cancel_active_flow,
    ensure_flow,
    get_current_op_id,
    reset_session,
    start_operation,
)
from ..utils.constants import (
    DEFAULT_CONVERSATION_TIMEOUT_SECONDS,
    DEFAULT_FLOW_TTL_SECONDS,
)
from .callback_recovery_service import EXPIRED_CONVERSATION_META_KEY

logger = structlog.get_logger()


@dataclass
class OperationStartResult:
    """Result for starting or re-entering a command."""

    op_id: str
    token: str
    reused: bool
    superseded_op_id: Optional[str] = None


@dataclass
class OperationEndResult:
    """Result for ending the live operation."""

    had_active_operation: bool
    ended_op_id: Optional[str]


class OperationLifecycleService:
    """Manage operation transitions for command handlers.

    Also the entry point feature flows use for forms and conversations, so
    the configured flow TTL and conversation timeout apply to them.
    """

    def __init__(
        self,
        *,
        flow_ttl_seconds: float = DEFAULT_FLOW_TTL_SECONDS,
        conversation_timeout_seconds: float = DEFAULT_CONVERSATION_TIMEOUT_SECONDS,
    ) -> None:
        self.flow_ttl_seconds = flow_ttl_seconds
        self.conversation_timeout_seconds = conversation_timeout_seconds

    def start(
        self,
        session: ChatSession,
        command: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OperationStartResult:
        previous_op_id = get_current_op_id(session)
        op_id = start_operation(session, command, metadata)
        reused = previous_op_id == op_id
        token = session.current_op.token if session.current_op else ""
        return OperationStartResult(
            op_id=op_id,
            token=token,
            reused=reused,
            superseded_op_id=None if reused else previous_op_id,
        )

    async def end(self, session: ChatSession, reason: str = "end") -> OperationEndResult:
        """Cancel the live operation for /cancel behavior."""
        current_op_id = get_current_op_id(session)
        had_work = bool(current_op_id or session.pending_abort_handles or session.flow)
        await cancel_active_flow(session, reason)
        if had_work:
            logger.info("Operation ended", op_id=current_op_id, reason=reason)
        return OperationEndResult(
            had_active_operation=had_work,
            ended_op_id=current_op_id,
        )

    async def reset(self, session: ChatSession, reason: str = "reset") -> None:
        """Cancel everything and clear the session for /menu behavior."""
        await cancel_active_flow(session, reason)
        reset_session(session)

    async def expire_conversation(
        self, session: ChatSession, reason: str = "conversation_timeout"
    ) -> OperationEndResult:
        """End a timed-out conversation, remembering it for later presses.

        Buttons of the expired conversation then get a single "menu expired"
        notice instead of a generic stale warning.
        """
        op = session.current_op
        result = await self.end(session, reason)
        if op is not None:
            session.meta[EXPIRED_CONVERSATION_META_KEY] = {
                "op_id": op.id,
                "token": op.token,
                "command": op.command,
                "notice_sent": False,
            }
        return result

    def ensure_flow(
        self, session: ChatSession, name: str, step: Optional[str] = None
    ) -> FlowContext:
        return ensure_flow(session, name, ttl_seconds=self.flow_ttl_seconds, step=step)

    def launch_conversation(
        self,
        session: ChatSession,
        name: str,
        body: Callable[[ConversationChannel], Awaitable[Any]],
    ) -> "asyncio.Task[Any]":
        """Start a background conversation that expires after the configured timeout."""
        return launch_conversation(
            session,
            name,
            body,
            on_timeout=self.expire_conversation,
            timeout_seconds=self.conversation_timeout_seconds,
        )
