"""Alias table for oversized inline button payloads.

Telegram callback_data has a 64-byte limit. When a signed payload would not
fit, the action is parked here under a short random key and the button
carries the key instead. One table is shared by the whole process; it is
bounded by capacity and pruned on every insert and lookup.
"""

import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Tuple

import structlog

from ...utils.constants import (
    DEFAULT_CALLBACK_ALIAS_CAPACITY,
    DEFAULT_CALLBACK_ALIAS_TTL_SECONDS,
)

logger = structlog.get_logger()

ALIAS_KEY_BYTES = 6  # 8 urlsafe characters
ALIAS_MAX_ATTEMPTS = 5

# Resolution outcomes
ALIAS_OK = "ok"
ALIAS_MISSING = "alias_missing"
ALIAS_EXPIRED = "alias_expired"
ALIAS_TOKEN_MISMATCH = "token_mismatch"


@dataclass(frozen=True)
class AliasEntry:
    action: str
    token: str
    timestamp: int
    expires_at: float


class CallbackAliasTable:
    """Bounded, TTL-pruned map of short keys to full button actions."""

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_CALLBACK_ALIAS_CAPACITY,
        ttl_seconds: float = DEFAULT_CALLBACK_ALIAS_TTL_SECONDS,
        key_bytes: int = ALIAS_KEY_BYTES,
        max_attempts: int = ALIAS_MAX_ATTEMPTS,
    ) -> None:
        self.capacity = max(1, int(capacity))
        self.ttl_seconds = max(1.0, float(ttl_seconds))
        self.key_bytes = max(1, int(key_bytes))
        self.max_attempts = max(1, int(max_attempts))
        self._entries: "OrderedDict[str, AliasEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _new_key(self) -> str:
        return secrets.token_urlsafe(self.key_bytes)

    def allocate(
        self,
        *,
        action: str,
        token: str,
        timestamp: int,
        ttl_seconds: Optional[float] = None,
    ) -> Optional[str]:
        """Store an action and return its alias key, or None on repeated collision."""
        now = time.time()
        self._prune_expired(now)

        key = None
        for _ in range(self.max_attempts):
            candidate = self._new_key()
            if candidate not in self._entries:
                key = candidate
                break
        if key is None:
            logger.warning(
                "Callback alias allocation failed",
                attempts=self.max_attempts,
                size=len(self._entries),
            )
            return None

        ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else self.ttl_seconds
        self._entries[key] = AliasEntry(
            action=action,
            token=token,
            timestamp=int(timestamp),
            expires_at=now + ttl,
        )
        self._evict_overflow()
        return key

    def resolve(
        self, key: str, *, token: Optional[str] = None
    ) -> Tuple[str, Optional[AliasEntry]]:
        """Look up an alias, returning (outcome, entry).

        Expiry is checked on the requested key before the rest of the table
        is pruned so that an expired alias is reported as such rather than
        as missing.
        """
        now = time.time()
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at <= now:
            self._entries.pop(key, None)
            self._prune_expired(now)
            return ALIAS_EXPIRED, None

        self._prune_expired(now)
        if entry is None:
            return ALIAS_MISSING, None
        if token is not None and entry.token != token:
            return ALIAS_TOKEN_MISMATCH, entry
        return ALIAS_OK, entry

    def purge_expired(self) -> int:
        """Remove all expired entries. Returns count removed."""
        return self._prune_expired(time.time())

    def _prune_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Purged callback aliases", count=len(expired))
        return len(expired)

    def _evict_overflow(self) -> None:
        evicted = 0
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            evicted += 1
        if evicted:
            logger.debug("Evicted callback aliases over capacity", count=evicted)
