"""Per-chat session state: operation lifecycle, flows and abort handles.

Every chat has exactly one ``ChatSession`` stored in ``context.chat_data``.
It holds the single live ``Operation`` whose token is embedded in signed
button payloads, an optional ``FlowContext`` for multi-step forms, and the
abort handles of async work owned by the live operation.
"""

import asyncio
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    MutableMapping,
    Optional,
)

import structlog

from ...exceptions import OperationCancelledError
from ...utils.constants import DEFAULT_FLOW_TTL_SECONDS

logger = structlog.get_logger()

SESSION_STATE_KEY = "session"
OP_TOKEN_LENGTH = 8

ReplyFn = Callable[[str], Awaitable[Any]]


def derive_op_token(op_id: str) -> str:
    """Short binding token for an operation id."""
    return str(op_id).replace("-", "")[:OP_TOKEN_LENGTH]


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


@dataclass
class Operation:
    """The single logical task currently open in a chat."""

    id: str
    token: str
    command: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token": self.token,
            "command": self.command,
            "metadata": dict(self.metadata),
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Operation"]:
        """Rebuild from persisted data; None when there is no usable id."""
        if isinstance(data, Operation):
            return data
        if not isinstance(data, dict):
            return None
        op_id = str(data.get("id") or "").strip()
        if not op_id:
            return None
        metadata = data.get("metadata")
        started_at = _as_float(data.get("started_at"))
        return cls(
            id=op_id,
            token=str(data.get("token") or "") or derive_op_token(op_id),
            command=str(data.get("command") or ""),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            started_at=started_at if started_at is not None else time.time(),
        )


class FlowContext:
    """Named multi-step form state with an inactivity TTL."""

    def __init__(
        self,
        name: str,
        ttl_seconds: float = DEFAULT_FLOW_TTL_SECONDS,
        *,
        created_at: Optional[float] = None,
        updated_at: Optional[float] = None,
        step: Optional[str] = None,
        state: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.created_at = created_at if created_at is not None else time.time()
        self.updated_at = updated_at if updated_at is not None else self.created_at
        self.step = step
        self.state: Dict[str, Any] = state if state is not None else {}

    @property
    def expired(self) -> bool:
        return time.time() - self.updated_at > self.ttl_seconds

    def touch(self, step: Optional[str] = None) -> None:
        self.updated_at = time.time()
        if step:
            self.step = step

    def reset(self, name: Optional[str] = None) -> None:
        if name is not None:
            self.name = name
        now = time.time()
        self.created_at = now
        self.updated_at = now
        self.step = None
        self.state = {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ttl_seconds": self.ttl_seconds,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "step": self.step,
            "state": dict(self.state),
        }

    @classmethod
    def from_dict(
        cls,
        data: Any,
        *,
        name: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
    ) -> "FlowContext":
        """Build a live flow from persisted fields, ignoring malformed ones."""
        seed = data if isinstance(data, dict) else {}
        created_at = _as_float(seed.get("created_at"))
        updated_at = _as_float(seed.get("updated_at"))
        step = seed.get("step")
        state = seed.get("state")
        seed_ttl = _as_float(seed.get("ttl_seconds"))
        return cls(
            name or str(seed.get("name") or ""),
            ttl_seconds or seed_ttl or DEFAULT_FLOW_TTL_SECONDS,
            created_at=created_at,
            updated_at=updated_at,
            step=step if isinstance(step, str) and step else None,
            state=dict(state) if isinstance(state, dict) else {},
        )

    def __repr__(self) -> str:
        return (
            f"FlowContext(name={self.name!r}, step={self.step!r}, "
            f"expired={self.expired})"
        )


@dataclass
class ChatSession:
    """Mutable per-chat store shared by every handler of that chat."""

    current_op: Optional[Operation] = None
    last_command: Optional[str] = None
    pending_abort_handles: List[Any] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    flow: Optional[FlowContext] = None
    errors: List[Any] = field(default_factory=list)
    menu_messages: List[Dict[str, Any]] = field(default_factory=list)
    action_history: Dict[str, float] = field(default_factory=dict)
    # Runtime only, never persisted
    conversation: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serializable snapshot (abort handles and conversation excluded)."""
        return {
            "current_op": self.current_op.to_dict() if self.current_op else None,
            "last_command": self.last_command,
            "meta": dict(self.meta),
            "flow": self.flow.to_dict() if self.flow else None,
            "errors": list(self.errors),
            "menu_messages": [dict(entry) for entry in self.menu_messages],
            "action_history": dict(self.action_history),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ChatSession":
        seed = data if isinstance(data, dict) else {}

        def _seq(key: str) -> List[Any]:
            value = seed.get(key)
            return list(value) if isinstance(value, list) else []

        def _map(key: str) -> Dict[str, Any]:
            value = seed.get(key)
            return dict(value) if isinstance(value, dict) else {}

        flow_data = seed.get("flow")
        return cls(
            current_op=Operation.from_dict(seed.get("current_op")),
            last_command=seed.get("last_command") or None,
            meta=_map("meta"),
            flow=FlowContext.from_dict(flow_data) if flow_data else None,
            errors=_seq("errors"),
            menu_messages=[e for e in _seq("menu_messages") if isinstance(e, dict)],
            action_history={
                str(key): float(ts)
                for key, ts in _map("action_history").items()
                if _as_float(ts) is not None
            },
        )


def get_chat_session(chat_data: MutableMapping[str, Any]) -> ChatSession:
    """Get or create the typed session stored in chat_data."""
    session = chat_data.get(SESSION_STATE_KEY)
    if not isinstance(session, ChatSession):
        session = ChatSession.from_dict(session)
        chat_data[SESSION_STATE_KEY] = session
    elif session.current_op is not None and not session.current_op.token:
        session.current_op.token = derive_op_token(session.current_op.id)
    return session


def _generate_op_id() -> str:
    return str(uuid.uuid4())


def start_operation(
    session: ChatSession,
    command: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Open (or refresh) the chat's live operation and return its id.

    Re-entering the live command keeps id and token so buttons already on
    screen stay valid. Any other command allocates a new id, invalidating
    every payload signed against the previous token.
    """
    safe_command = str(command or "").strip()
    current = session.current_op
    if current is not None and current.id and safe_command and current.command == safe_command:
        current.started_at = time.time()
        if metadata:
            current.metadata = {**current.metadata, **metadata}
        session.last_command = safe_command
        return current.id

    if current is not None:
        _abort_handles(session, f"superseded:{safe_command or 'unknown'}")

    op_id = _generate_op_id()
    session.current_op = Operation(
        id=op_id,
        token=derive_op_token(op_id),
        command=safe_command,
        metadata=dict(metadata or {}),
        started_at=time.time(),
    )
    session.last_command = safe_command
    logger.debug(
        "Operation started",
        op_id=op_id,
        command=safe_command,
        superseded_op_id=current.id if current else None,
    )
    return op_id


def get_current_op_id(session: ChatSession) -> Optional[str]:
    return session.current_op.id if session.current_op else None


def get_current_op_token(session: ChatSession) -> str:
    return session.current_op.token if session.current_op else ""


def is_operation_active(session: ChatSession, op_id: Optional[str]) -> bool:
    return bool(op_id and session.current_op and session.current_op.id == op_id)


def ensure_operation_active(session: ChatSession, op_id: Optional[str]) -> None:
    """Raise OperationCancelledError if op_id is no longer the live operation."""
    if not is_operation_active(session, op_id):
        raise OperationCancelledError("Operation superseded")


def register_abort_handle(session: ChatSession, handle: Any) -> Callable[[], None]:
    """Track an abort handle; call the returned function once work completes."""
    session.pending_abort_handles.append(handle)

    def release() -> None:
        session.pending_abort_handles = [
            item for item in session.pending_abort_handles if item is not handle
        ]

    return release


@contextmanager
def abort_handle_registered(session: ChatSession, handle: Any) -> Iterator[Any]:
    """Keep ``handle`` registered for the duration of the block."""
    release = register_abort_handle(session, handle)
    try:
        yield handle
    finally:
        release()


def _abort_handles(session: ChatSession, reason: str) -> int:
    handles, session.pending_abort_handles = session.pending_abort_handles, []
    for handle in handles:
        try:
            handle.abort(reason)
        except Exception as e:
            logger.warning("Abort handle error", reason=reason, error=str(e))
    return len(handles)


async def cancel_active_flow(session: ChatSession, reason: str = "reset") -> None:
    """Abort all work of the live operation and clear it."""
    aborted = _abort_handles(session, reason)

    conversation = session.conversation
    exit_conversation = getattr(conversation, "exit", None)
    if callable(exit_conversation):
        try:
            result = exit_conversation()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            if "no conversation" not in str(e).lower():
                logger.warning("Conversation exit warning", error=str(e))

    if aborted or session.current_op:
        logger.debug(
            "Active flow cancelled",
            reason=reason,
            op_id=get_current_op_id(session),
            aborted=aborted,
        )
    session.current_op = None
    session.meta = {}
    session.flow = None
    session.conversation = None


def reset_session(session: ChatSession) -> None:
    session.current_op = None
    session.last_command = None
    session.meta = {}
    session.pending_abort_handles = []
    session.flow = None
    session.errors = []


async def safe_reset(
    session: ChatSession,
    reply: Optional[ReplyFn] = None,
    reason: str = "reset",
    *,
    message: Optional[str] = "⚠️ Session expired. Restarting setup...",
    menu_hint: Optional[str] = "📋 Use /menu to start again.",
    notify: bool = True,
) -> None:
    """Cancel and reset the session, optionally telling the user."""
    await cancel_active_flow(session, reason)
    reset_session(session)

    if not notify or reply is None:
        return

    lines = [line for line in (message, menu_hint) if line]
    if not lines:
        return
    try:
        await reply("\n".join(lines))
    except Exception as e:
        logger.warning("Reset notice failed", reason=reason, error=str(e))


def ensure_flow(
    session: ChatSession,
    name: str,
    *,
    ttl_seconds: Optional[float] = None,
    step: Optional[str] = None,
) -> FlowContext:
    """Return a live flow named ``name``, resetting it when expired."""
    ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else DEFAULT_FLOW_TTL_SECONDS
    flow: Any = session.flow

    if isinstance(flow, FlowContext) and flow.name == name:
        flow.ttl_seconds = ttl
    elif isinstance(flow, dict) and flow.get("name") == name:
        # Persisted plain data for the same flow: rewrap it
        flow = FlowContext.from_dict(flow, name=name, ttl_seconds=ttl)
    else:
        flow = FlowContext(name, ttl)

    if flow.expired:
        flow.reset(name)

    flow.touch(step)
    session.flow = flow
    return flow


def cleanup_expired_flows(session: ChatSession) -> int:
    flow = session.flow
    if flow is None:
        return 0
    if not isinstance(flow, FlowContext) or flow.expired:
        logger.info("Cleanup: expired flow", flow=getattr(flow, "name", None))
        session.flow = None
        return 1
    return 0


def cleanup_abandoned_handles(session: ChatSession) -> int:
    """Drop registered handles that can no longer be aborted."""
    kept = [
        handle
        for handle in session.pending_abort_handles
        if callable(getattr(handle, "abort", None))
    ]
    removed = len(session.pending_abort_handles) - len(kept)
    session.pending_abort_handles = kept
    if removed:
        logger.info("Cleanup: removed abandoned abort handles", count=removed)
    return removed


def get_session_memory_stats(session: ChatSession) -> Dict[str, Any]:
    flow = session.flow
    return {
        "has_current_op": session.current_op is not None,
        "abort_handles": len(session.pending_abort_handles),
        "has_flow": flow is not None,
        "flow_expired": flow.expired if isinstance(flow, FlowContext) else None,
        "menu_messages": len(session.menu_messages),
        "errors": len(session.errors),
        "action_history": len(session.action_history),
    }


def is_slash_command_input(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    trimmed = text.strip()
    return trimmed.startswith("/") and len(trimmed) > 1


async def guard_against_command_interrupt(
    session: ChatSession,
    text: Any,
    reason: str = "command_interrupt",
) -> None:
    """Abort the running conversation when the user types a slash command."""
    if not is_slash_command_input(text):
        return
    await safe_reset(session, reason=reason, notify=False)
    raise OperationCancelledError("Conversation interrupted by slash command")
