from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

log = logging.getLogger(__name__)

Deliver = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class Subscriber:
    id: int
    deliver: Deliver
    topics: frozenset[str] | None = None      # None = every topic

    def wants(self, topic: str) -> bool:
        return self.topics is None or topic in self.topics


class Broadcaster:
    """Fan-out of metric payloads to live subscribers.

    ``publish`` only schedules deliveries; a subscriber whose delivery raises is
    dropped from the registry without affecting the others.
    """

    def __init__(self) -> None:
        self._subs: dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._subs)

    def subscribe(self, deliver: Deliver, topics: Iterable[str] | None = None) -> int:
        sub = Subscriber(next(self._ids), deliver, frozenset(topics) if topics is not None else None)
        self._subs[sub.id] = sub
        log.info("subscriber %d connected (%d total)", sub.id, len(self._subs))
        return sub.id

    def unsubscribe(self, handle: int) -> bool:
        removed = self._subs.pop(handle, None) is not None
        if removed:
            log.info("subscriber %d removed (%d total)", handle, len(self._subs))
        return removed

    def publish(self, topic: str, payload: Any) -> int:
        message = {"type": topic, "data": payload}
        n = 0
        for sub in list(self._subs.values()):
            if not sub.wants(topic):
                continue
            task = asyncio.create_task(self._deliver(sub, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            n += 1
        return n

    async def _deliver(self, sub: Subscriber, message: dict[str, Any]) -> None:
        try:
            await sub.deliver(message)
        except Exception as e:
            log.warning("delivery to subscriber %d failed (%s), dropping it", sub.id, e)
            self.unsubscribe(sub.id)

    async def drain(self) -> None:
        """Wait for every scheduled delivery."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        self._subs.clear()
