"""
At-most-once emission guard.

Reconciles are replayed and watch events are redelivered, so producers of
status signals may be asked to emit the same fact many times. ResultRelay
remembers a digest of the last message emitted per key and suppresses
repeats. Entries are evicted once the authoritative record reflects the
message, or when the owning subject is deleted.

The cache lives in memory only: after a restart at most one duplicate is
emitted per key.
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class RelayKey:
    """Cache key: the owning subject plus the item the message is about."""

    subject: str
    item: str = ""


class ResultRelay:
    """Thread-safe key -> SHA1 digest store."""

    def __init__(self, name: str = "relay"):
        self.name = name
        self._lock = threading.Lock()
        self._sent: dict[RelayKey, str] = {}

    @staticmethod
    def digest(message: str) -> str:
        return hashlib.sha1(message.encode("utf-8"), usedforsecurity=False).hexdigest()

    def should_emit(self, key: RelayKey, message: str) -> bool:
        """Return False when this exact message was the last one emitted for key."""
        with self._lock:
            return self._sent.get(key) != self.digest(message)

    def record(self, key: RelayKey, message: str) -> None:
        with self._lock:
            self._sent[key] = self.digest(message)

    async def emit(
        self,
        key: RelayKey,
        message: str,
        send: Callable[[], Awaitable[Any]],
    ) -> bool:
        """
        Send the message unless it was already sent for key.

        The digest is recorded only after send() succeeds, so a failed send
        is retried on the next call. Returns whether send() was called.
        """
        if not self.should_emit(key, message):
            logger.debug("relay_suppressed", relay=self.name, subject=key.subject, item=key.item)
            return False

        await send()
        self.record(key, message)
        return True

    def evict(self, key: RelayKey) -> bool:
        with self._lock:
            return self._sent.pop(key, None) is not None

    def evict_subject(self, subject: str) -> int:
        """Drop every entry scoped to subject. Returns the number evicted."""
        with self._lock:
            stale = [key for key in self._sent if key.subject == subject]
            for key in stale:
                del self._sent[key]
        if stale:
            logger.debug("relay_subject_evicted", relay=self.name, subject=subject, count=len(stale))
        return len(stale)

    def retain(self, subject: str, keep: Iterable[RelayKey]) -> int:
        """Drop entries of subject that are not in keep. Returns the number evicted."""
        keep_set = set(keep)
        with self._lock:
            stale = [
                key for key in self._sent if key.subject == subject and key not in keep_set
            ]
            for key in stale:
                del self._sent[key]
        return len(stale)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._sent

    def __len__(self) -> int:
        with self._lock:
            return len(self._sent)
