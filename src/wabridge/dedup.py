"""Short-lived duplicate suppression for relayed source events."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Literal

import structlog

logger = structlog.get_logger()

Direction = Literal["in", "out"]


def dedup_key(direction: Direction, message_id: str) -> str:
    return f"{direction}:{message_id}"


class Deduplicator:
    """Remembers keys for ``ttl_s`` seconds and reports repeats.

    Expiry is evaluated against ``clock`` on every call, so a key disappears
    once its TTL has elapsed whether or not it is ever looked up again.
    State is in-memory only and starts empty on every process start.
    """

    def __init__(self, ttl_s: float = 10.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._expires_at: dict[str, float] = {}

    def should_suppress(self, key: str) -> bool:
        """Return True if ``key`` was seen within the TTL, otherwise record it."""
        now = self._clock()
        self._prune(now)
        if key in self._expires_at:
            logger.debug("dedup.suppressed", key=key)
            return True
        self._expires_at[key] = now + self.ttl_s
        return False

    def __len__(self) -> int:
        self._prune(self._clock())
        return len(self._expires_at)

    def _prune(self, now: float) -> None:
        # dicts keep insertion order and every key gets the same TTL,
        # so expired keys are always at the front
        expired: list[str] = []
        for key, expires_at in self._expires_at.items():
            if expires_at > now:
                break
            expired.append(key)
        for key in expired:
            del self._expires_at[key]
