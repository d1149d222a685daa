"""Route validated callback actions to their handlers.

Exact actions (``MENU``, ``SMS_SEND``) are looked up first, then the longest
registered prefix (``sms-preview`` for ``sms-preview:<op>:send``).
"""

from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

# handler(update, context, action)
ActionHandler = Callable[[Any, Any, str], Awaitable[Any]]


class CallbackActionRouter:
    """Registry of callback action handlers."""

    def __init__(self) -> None:
        self._exact: Dict[str, ActionHandler] = {}
        self._prefixes: Dict[str, ActionHandler] = {}

    def add_action(self, action: str, handler: ActionHandler) -> None:
        if not action:
            raise ValueError("action must be non-empty")
        self._exact[action] = handler

    def add_prefix(self, prefix: str, handler: ActionHandler) -> None:
        key = prefix.rstrip(":")
        if not key:
            raise ValueError("prefix must be non-empty")
        self._prefixes[key] = handler

    def resolve(self, action: str) -> Optional[Tuple[str, ActionHandler]]:
        """Return (matched key, handler) or None."""
        handler = self._exact.get(action)
        if handler is not None:
            return action, handler
        for prefix in sorted(self._prefixes, key=len, reverse=True):
            if action == prefix or action.startswith(f"{prefix}:"):
                return prefix, self._prefixes[prefix]
        return None

    def __contains__(self, action: object) -> bool:
        return isinstance(action, str) and self.resolve(action) is not None
