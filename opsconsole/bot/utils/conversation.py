"""Wait-for-next-update primitive for multi-step conversations.

The text message handler pushes updates into the chat's channel while a
conversation coroutine awaits them. Every wait is raced against a timeout;
a timeout or an exit surfaces as ``OperationCancelledError``.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple

import structlog

from ...exceptions import ConversationTimeoutError, OperationCancelledError
from ...utils.constants import DEFAULT_CONVERSATION_TIMEOUT_SECONDS
from .cancellation import TaskAbortHandle
from .session_state import (
    ChatSession,
    ReplyFn,
    guard_against_command_interrupt,
    register_abort_handle,
)

logger = structlog.get_logger()

_EXIT = object()


class ConversationChannel:
    """Single-consumer queue of updates for one chat's running conversation."""

    def __init__(self, name: str = "", timeout_seconds: Optional[float] = None) -> None:
        self.name = name
        self.timeout_seconds = timeout_seconds
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def push(self, update: Any) -> bool:
        """Deliver an update; False when the conversation is over."""
        if self._closed:
            return False
        self._queue.put_nowait(update)
        return True

    async def wait(self) -> Any:
        if self._closed and self._queue.empty():
            raise OperationCancelledError("Conversation exited")
        update = await self._queue.get()
        if update is _EXIT:
            raise OperationCancelledError("Conversation exited")
        return update

    def exit(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_EXIT)


def _message_text(update: Any) -> Optional[str]:
    message = getattr(update, "message", None)
    text = getattr(message, "text", None)
    return text if isinstance(text, str) else None


async def wait_for_conversation_text(
    channel: ConversationChannel,
    session: ChatSession,
    reply: ReplyFn,
    *,
    ensure_active: Optional[Callable[[], None]] = None,
    allow_empty: bool = False,
    guard_commands: bool = True,
    timeout_seconds: Optional[float] = None,
    invalid_message: Optional[str] = "⚠️ Please send a text response to continue.",
    empty_message: Optional[str] = "⚠️ Please send a non-empty response to continue.",
    timeout_message: Optional[str] = "⏱️ Response timeout. Starting over...",
) -> Tuple[Any, str]:
    """Wait for the next text reply, returning (update, stripped text).

    ``timeout_seconds`` bounds the whole wait, not each update; 0 disables it.
    It defaults to the channel's own timeout.
    """
    if timeout_seconds is None:
        timeout_seconds = channel.timeout_seconds
    if timeout_seconds is None:
        timeout_seconds = DEFAULT_CONVERSATION_TIMEOUT_SECONDS
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds if timeout_seconds > 0 else None

    while True:
        try:
            if deadline is None:
                update = await channel.wait()
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                update = await asyncio.wait_for(channel.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            if timeout_message:
                try:
                    await reply(timeout_message)
                except Exception as e:
                    logger.debug("Timeout notice failed", error=str(e))
            raise ConversationTimeoutError(
                f"Conversation timeout after {timeout_seconds}s"
            ) from None

        if ensure_active is not None:
            ensure_active()

        raw_text = _message_text(update)
        if raw_text is None:
            if invalid_message:
                await reply(invalid_message)
            continue

        text = raw_text.strip()
        if not text and not allow_empty:
            if empty_message:
                await reply(empty_message)
            continue

        if guard_commands and text:
            await guard_against_command_interrupt(session, text)

        return update, text


TimeoutHook = Callable[[ChatSession], Awaitable[Any]]


async def run_conversation(
    session: ChatSession,
    name: str,
    body: Callable[[ConversationChannel], Awaitable[Any]],
    *,
    on_timeout: Optional[TimeoutHook] = None,
    timeout_seconds: Optional[float] = None,
) -> Any:
    """Run ``body`` with a fresh channel attached to the session.

    Cancellation unwinds silently; the channel is detached afterwards.
    ``on_timeout`` runs when the user stopped replying, typically
    ``OperationLifecycleService.expire_conversation``.
    """
    previous = session.conversation
    if isinstance(previous, ConversationChannel):
        previous.exit()
    channel = ConversationChannel(name, timeout_seconds)
    session.conversation = channel
    try:
        return await body(channel)
    except ConversationTimeoutError as e:
        logger.info("Conversation timed out", conversation=name, reason=e.reason)
        if on_timeout is not None:
            await on_timeout(session)
        return None
    except OperationCancelledError as e:
        logger.debug("Conversation cancelled", conversation=name, reason=e.reason)
        return None
    finally:
        channel.exit()
        if session.conversation is channel:
            session.conversation = None


def launch_conversation(
    session: ChatSession,
    name: str,
    body: Callable[[ConversationChannel], Awaitable[Any]],
    *,
    on_timeout: Optional[TimeoutHook] = None,
    timeout_seconds: Optional[float] = None,
) -> "asyncio.Task[Any]":
    """Run a conversation in the background, abortable via the session.

    Update handlers must not await a conversation directly: the replies it
    waits for are delivered by later updates.
    """
    task = asyncio.create_task(
        run_conversation(
            session, name, body, on_timeout=on_timeout, timeout_seconds=timeout_seconds
        )
    )
    release = register_abort_handle(session, TaskAbortHandle(task))

    def _finished(done: "asyncio.Task[Any]") -> None:
        release()
        if done.cancelled():
            return
        error = done.exception()
        if error is not None:
            logger.error(
                "Conversation failed",
                conversation=name,
                error=str(error),
                error_type=type(error).__name__,
                exc_info=error,
            )

    task.add_done_callback(_finished)
    return task
