"""Per-chat suppression of repeated button presses.

``ChatSession.action_history`` maps a dedupe key to the moment its window
closes. Storing the deadline rather than the last-seen time lets short
double-tap windows and hour-long notice windows share one history without a
short check pruning the long-lived keys.
"""

import time

from ...utils.constants import DEFAULT_ACTION_DEDUPE_TTL_SECONDS
from .session_state import ChatSession


def _prune_history(history: dict[str, float], now: float) -> None:
    expired = [key for key, deadline in history.items() if not deadline or deadline <= now]
    for key in expired:
        history.pop(key, None)


def is_duplicate_action(
    session: ChatSession,
    key: str,
    ttl_seconds: float = DEFAULT_ACTION_DEDUPE_TTL_SECONDS,
) -> bool:
    """Return True if key was seen within the window, otherwise record it."""
    if not key:
        return False
    now = time.time()
    history = session.action_history
    _prune_history(history, now)

    if key in history:
        return True

    history[key] = now + ttl_seconds
    return False
