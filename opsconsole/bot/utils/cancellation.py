"""Cooperative cancellation primitives for operation-owned work.

A unit of async work receives a ``CancellationToken``, checks it at every
suspension point and registers it (or a ``TaskAbortHandle``) with the chat
session. Starting a new operation or resetting the chat aborts every
registered handle.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Protocol, TypeVar

import structlog

from ...exceptions import OperationCancelledError

logger = structlog.get_logger()

T = TypeVar("T")


class AbortHandle(Protocol):
    """Anything the cancellation registry can abort."""

    def abort(self, reason: Optional[str] = None) -> None: ...


class CancellationToken:
    """Abort signal shared between a unit of work and whoever supersedes it."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[Optional[str]], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: Optional[str] = None) -> None:
        """Signal cancellation. Repeated calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason or "aborted"
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self._reason)
            except Exception as e:
                logger.warning(
                    "Abort callback failed", reason=self._reason, error=str(e)
                )

    def on_abort(self, callback: Callable[[Optional[str]], Any]) -> None:
        """Run callback on abort, immediately if already aborted."""
        if self._event.is_set():
            callback(self._reason)
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self._reason)

    async def wait(self) -> Optional[str]:
        """Block until aborted, returning the reason."""
        await self._event.wait()
        return self._reason

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is aborted first.

        On abort the inner work is cancelled and ``OperationCancelledError``
        is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        aborted = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, aborted}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            aborted.cancel()

        if work in done:
            return work.result()

        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, OperationCancelledError):
            pass
        raise OperationCancelledError(self._reason)


def _running_task() -> Optional["asyncio.Task[Any]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class TaskAbortHandle:
    """Abort handle that cancels an asyncio task."""

    def __init__(self, task: "asyncio.Task[Any]") -> None:
        self.task = task
        self.reason: Optional[str] = None

    def abort(self, reason: Optional[str] = None) -> None:
        # A task unwinding its own operation must not cancel itself
        if self.task.done() or self.task is _running_task():
            return
        self.reason = reason or "aborted"
        self.task.cancel(self.reason)
