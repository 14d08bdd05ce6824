"""Metric Service: cache -> single-flight fetch -> cache + broadcast, never raising.

Per key the service moves between ``idle``, ``fetching`` and ``ready``
(``ready_stale`` once the cached value is older than the soft refresh
threshold). A stale read returns immediately and schedules one jittered
background revalidation; a miss blocks on the single in-flight fetch.
Failed fetches fall back to the last good value, or to the metric's zero
value on a cold start, and carry the error message alongside.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..domain.value_types import MetricSource
from .broadcaster import Broadcaster
from .cache import CacheStore

log = logging.getLogger(__name__)

_MISS = object()


def _identity(value: Any) -> Any:
    return value


class MetricState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    READY_STALE = "ready_stale"


@dataclass(slots=True, frozen=True)
class MetricSpec:
    key: str
    compute: Callable[[], Awaitable[Any]]
    ttl_ms: int
    default: Callable[[int], Any]                 # now_ms -> zero-valued metric
    soft_refresh_ms: int | None = None
    topic: str | None = None                      # broadcast topic, None = not pushed
    serialize: Callable[[Any], Any] = _identity


@dataclass(slots=True, frozen=True)
class MetricResult:
    key: str
    value: Any
    source: MetricSource
    error: str | None = None
    stale: bool = False


class MetricService:
    def __init__(
        self,
        cache: CacheStore,
        broadcaster: Broadcaster,
        *,
        jitter_s: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.cache = cache
        self.broadcaster = broadcaster
        self.jitter_s = jitter_s
        self.sleep = sleep
        self.rand = rand
        self._specs: dict[str, MetricSpec] = {}
        self._inflight: dict[str, asyncio.Task[MetricResult]] = {}
        self._revalidating: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self.fetch_count: dict[str, int] = {}

    # ── registry ───────────────────────────────────────────────────────────

    def register(self, spec: MetricSpec) -> None:
        self._specs[spec.key] = spec

    def spec(self, key: str) -> MetricSpec:
        try:
            return self._specs[key]
        except KeyError:
            raise KeyError(f"unknown metric {key!r}") from None

    # ── reads ──────────────────────────────────────────────────────────────

    def _is_stale(self, spec: MetricSpec) -> bool:
        age = self.cache.age(spec.key)
        return spec.soft_refresh_ms is not None and age is not None and age > spec.soft_refresh_ms

    def state(self, key: str) -> MetricState:
        spec = self.spec(key)
        if key in self._inflight:
            return MetricState.FETCHING
        if self.cache.get(key, _MISS) is _MISS:
            return MetricState.IDLE
        return MetricState.READY_STALE if self._is_stale(spec) else MetricState.READY

    async def get(self, key: str) -> MetricResult:
        spec = self.spec(key)
        value = self.cache.get(key, _MISS)
        if value is not _MISS:
            stale = self._is_stale(spec)
            if stale:
                self._schedule_revalidate(spec)
            return MetricResult(key, value, "cache", stale=stale)
        return await self._fetch(spec)

    async def refresh(self, key: str) -> MetricResult:
        """Invalidate and recompute synchronously. The old value stays as the fallback."""
        spec = self.spec(key)
        self.cache.expire(key)
        log.info("%s: cache invalidated, recomputing", key)
        return await self._fetch(spec)

    def prefetch(self, key: str) -> None:
        spec = self.spec(key)
        if key in self._inflight or self.cache.get(key, _MISS) is not _MISS:
            return
        self._spawn(self._fetch(spec))

    def cached_payload(self, key: str) -> Any | None:
        value = self.cache.get(key, _MISS)
        return None if value is _MISS else self.spec(key).serialize(value)

    # ── fetching ───────────────────────────────────────────────────────────

    async def _fetch(self, spec: MetricSpec) -> MetricResult:
        task = self._inflight.get(spec.key)
        if task is None:
            task = asyncio.create_task(self._compute(spec))
            self._inflight[spec.key] = task
            task.add_done_callback(lambda t, k=spec.key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[MetricResult]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _compute(self, spec: MetricSpec) -> MetricResult:
        key = spec.key
        started = self.cache.clock()
        self.fetch_count[key] = self.fetch_count.get(key, 0) + 1
        try:
            value = await spec.compute()
        except Exception as e:
            log.warning("%s: refresh failed: %s: %s", key, type(e).__name__, e)
            log.debug("%s: refresh traceback", key, exc_info=True)
            prev = self.cache.peek(key)
            if prev is not None:
                return MetricResult(key, prev.value, "fallback", error=str(e) or type(e).__name__, stale=True)
            return MetricResult(key, spec.default(self.cache.clock()), "default",
                                error=str(e) or type(e).__name__, stale=True)

        if self.cache.set(key, value, spec.ttl_ms, started_at_ms=started):
            if spec.topic is not None:
                self.broadcaster.publish(spec.topic, spec.serialize(value))
            log.info("%s: refreshed", key)
        else:
            newer = self.cache.peek(key)
            if newer is not None:
                value = newer.value
        return MetricResult(key, value, "fresh")

    def _schedule_revalidate(self, spec: MetricSpec) -> None:
        if spec.key in self._inflight or spec.key in self._revalidating:
            return
        task = self._spawn(self._revalidate(spec))
        self._revalidating[spec.key] = task
        task.add_done_callback(lambda t, k=spec.key: self._revalidating.pop(k, None))

    async def _revalidate(self, spec: MetricSpec) -> None:
        delay = self.rand(0, self.jitter_s) if self.jitter_s > 0 else 0.0
        log.debug("%s: stale, revalidating in %.1fs", spec.key, delay)
        await self.sleep(delay)
        if not self._is_stale(spec) and self.cache.get(spec.key, _MISS) is not _MISS:
            return
        await self._fetch(spec)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── timers ─────────────────────────────────────────────────────────────

    async def run_auto_refresh(self, key: str, interval_s: float, min_ttl_remaining_ms: int) -> None:
        """Timer trigger: refresh ``key`` whenever its remaining TTL drops below the threshold."""
        spec = self.spec(key)
        while True:
            await self.sleep(interval_s)
            remaining = self.cache.ttl_remaining(key)
            if remaining is None or remaining < min_ttl_remaining_ms:
                log.info("%s: auto-refresh (ttl remaining %s ms)", key, remaining)
                await self._fetch(spec)

    async def aclose(self) -> None:
        tasks = [*self._background, *self._inflight.values()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
