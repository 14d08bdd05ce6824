from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

log = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    created_at: int          # ms
    ttl_ms: int
    started_at: int          # ms; start of the fetch that produced the value

    def expired(self, now: int) -> bool:
        return now - self.created_at > self.ttl_ms


class CacheStore:
    """Key/value store with logical TTL expiry.

    Expired entries stay in memory until overwritten, deleted or pruned so the
    last good value can still be peeked at. Writes carry the start time of the
    fetch that produced them; a write from an older fetch never replaces a newer one.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def _live(self, key: str) -> CacheEntry | None:
        e = self._entries.get(key)
        if e is None or e.expired(self.clock()):
            return None
        return e

    def get(self, key: str, default: Any = None) -> Any:
        e = self._live(key)
        return default if e is None else e.value

    def peek(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def set(self, key: str, value: Any, ttl_ms: int, *, started_at_ms: int | None = None) -> bool:
        now = self.clock()
        started = now if started_at_ms is None else started_at_ms
        cur = self._entries.get(key)
        if cur is not None and cur.started_at > started:
            log.debug("cache: rejected write for %s from fetch started at %d (have %d)", key, started, cur.started_at)
            return False
        self._entries[key] = CacheEntry(key, value, now, ttl_ms, started)
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def expire(self, key: str) -> bool:
        """Mark the entry expired now; it stays peekable until overwritten."""
        e = self._entries.get(key)
        if e is None:
            return False
        e.ttl_ms = -1
        return True

    def age(self, key: str) -> int | None:
        e = self._live(key)
        return None if e is None else self.clock() - e.created_at

    def ttl_remaining(self, key: str) -> int | None:
        e = self._live(key)
        return None if e is None else e.ttl_ms - (self.clock() - e.created_at)

    def prune(self) -> int:
        now = self.clock()
        dead = [k for k, e in self._entries.items() if e.expired(now)]
        for k in dead:
            del self._entries[k]
        return len(dead)

    def __len__(self) -> int:
        return len(self._entries)
