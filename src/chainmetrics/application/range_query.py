"""Range Query Engine: block range + filter -> (events, partial) over an unreliable RPC.

Batches run strictly one after another. Inside a batch an explicit stack of
``(from, to, depth)`` replaces recursion: oversized responses push smaller
sub-ranges, rate limits and transient failures go through the backoff
controller, and anything unrecognised aborts the batch. Upstream failures
never escape ``query``; they end up in ``QueryResult.partial`` and the chunk
records.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..adapters.endpoint_pool import EndpointPool
from ..domain.errors import (
    AllEndpointsExhaustedError, OversizedResponseError, RateLimitError, TransientNetworkError,
)
from ..domain.models import BlockRange, ChunkRec, EventFilter, LogEvent, QueryResult
from ..domain.value_types import Status
from ..ports.storage import ManifestSink
from .backoff import Action, BackoffController, BackoffPolicy, LOG_QUERY_POLICY
from .planning import plan_batches, split_range

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class QueryPolicy:
    max_range_size: int = 2_000
    max_split_depth: int = 4
    min_splittable_size: int = 20
    num_chunks: int = 8
    inter_batch_delay_s: float = 2.0
    max_retries_per_range: int = 2


class _Outcome(enum.Enum):
    PROGRESS = "progress"
    NO_PROGRESS = "no_progress"
    STOP = "stop"


class _DeadlineExpired(Exception):
    pass


class RangeQueryEngine:
    def __init__(
        self,
        pool: EndpointPool,
        *,
        policy: QueryPolicy = QueryPolicy(),
        backoff_policy: BackoffPolicy = LOG_QUERY_POLICY,
        manifest: ManifestSink | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pool = pool
        self.policy = policy
        self.backoff_policy = backoff_policy
        self.manifest = manifest
        self.sleep = sleep
        self.clock = clock
        self.calls = 0

    def deadline_in(self, seconds: float) -> float:
        return self.clock() + seconds

    async def query(
        self,
        flt: EventFilter,
        rng: BlockRange,
        *,
        max_range_size: int | None = None,
        max_split_depth: int | None = None,
        deadline: float | None = None,
    ) -> QueryResult:
        max_range = self.policy.max_range_size if max_range_size is None else max_range_size
        max_depth = self.policy.max_split_depth if max_split_depth is None else max_split_depth
        result = QueryResult()
        backoff = BackoffController(self.backoff_policy)
        calls_before = self.calls

        batches = plan_batches(rng.start, rng.end, max_range)
        for i, batch in enumerate(batches):
            outcome = await self._run_batch(flt, batch, max_depth, backoff, deadline, result)
            if outcome is _Outcome.STOP:
                result.partial = True
                break
            if outcome is _Outcome.PROGRESS and i < len(batches) - 1:
                if not await self._sleep(self.policy.inter_batch_delay_s, deadline):
                    result.partial = True
                    break

        level = logging.WARNING if result.partial else logging.INFO
        log.log(level, "logs %s %d-%d: %d events in %d call(s)%s",
                flt.event.name if flt.event else ",".join(flt.topic0s), rng.start, rng.end,
                len(result.events), self.calls - calls_before, " (partial)" if result.partial else "")
        return result

    async def _run_batch(
        self,
        flt: EventFilter,
        batch: BlockRange,
        max_depth: int,
        backoff: BackoffController,
        deadline: float | None,
        result: QueryResult,
    ) -> _Outcome:
        stack: list[tuple[int, int, int]] = [(batch.start, batch.end, 0)]
        progressed = False
        while stack:
            a, b, depth = stack.pop()
            attempts = 0
            while True:
                attempts += 1
                try:
                    events = await self._call(flt, a, b, deadline)
                except _DeadlineExpired:
                    await self._record(result, a, b, "abandoned", attempts, "deadline expired")
                    return _Outcome.STOP
                except AllEndpointsExhaustedError as e:
                    err = e.last_error
                else:
                    backoff.record_success()
                    result.events.extend(events)
                    progressed = True
                    await self._record(result, a, b, "done", attempts, None, len(events))
                    break

                if isinstance(err, OversizedResponseError):
                    if depth >= max_depth or (b - a) < self.policy.min_splittable_size:
                        log.warning("giving up on oversized range %d-%d (depth %d)", a, b, depth)
                        await self._record(result, a, b, "abandoned", attempts, str(err))
                        break
                    parts = split_range(a, b, self.policy.num_chunks)
                    await self._record(result, a, b, "split", attempts, str(err))
                    stack.extend((pa, pb, depth + 1) for pa, pb in reversed(parts))
                    break

                if isinstance(err, (RateLimitError, TransientNetworkError)):
                    decision = backoff.decide(err)
                    if decision.action is Action.GIVE_UP:
                        log.warning("too many consecutive failures (%d), stopping at %d-%d",
                                    backoff.consecutive_failures, a, b)
                        await self._record(result, a, b, "abandoned", attempts, str(err))
                        return _Outcome.STOP
                    if decision.action is Action.ABANDON or attempts > self.policy.max_retries_per_range:
                        log.warning("skipping range %d-%d after %d attempt(s): %s", a, b, attempts, err)
                        await self._record(result, a, b, "abandoned", attempts, str(err))
                        break
                    log.warning("%s on %d-%d, waiting %.1fs", type(err).__name__, a, b, decision.delay_ms / 1000)
                    if not await self._sleep(decision.delay_ms / 1000, deadline):
                        await self._record(result, a, b, "abandoned", attempts, "deadline expired")
                        return _Outcome.STOP
                    continue

                log.warning("unrecognised error on %d-%d, aborting batch %d-%d: %r", a, b, batch.start, batch.end, err)
                await self._record(result, a, b, "failed", attempts, repr(err))
                return _Outcome.PROGRESS if progressed else _Outcome.NO_PROGRESS
        return _Outcome.PROGRESS if progressed else _Outcome.NO_PROGRESS

    async def _call(self, flt: EventFilter, a: int, b: int, deadline: float | None) -> list[LogEvent]:
        remaining = None if deadline is None else deadline - self.clock()
        if remaining is not None and remaining <= 0:
            raise _DeadlineExpired()
        self.calls += 1
        call = self.pool.with_endpoint(lambda rpc: rpc.get_logs(flt, a, b))
        if remaining is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise _DeadlineExpired() from e

    async def _sleep(self, seconds: float, deadline: float | None) -> bool:
        """Sleep unless the deadline would pass first; False means time is up."""
        if deadline is not None and deadline - self.clock() <= seconds:
            return False
        if seconds > 0:
            await self.sleep(seconds)
        return True

    async def _record(
        self, result: QueryResult, a: int, b: int, status: Status,
        attempts: int, error: str | None, logs: int = 0,
    ) -> None:
        if status in ("abandoned", "failed"):
            result.partial = True
        rec = ChunkRec(from_block=a, to_block=b, status=status, attempts=attempts,
                       error=error, logs=logs, updated_at=time.time())
        result.chunks.append(rec)
        if self.manifest is not None:
            await self.manifest.append(rec)
