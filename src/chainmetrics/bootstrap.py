"""Wiring: settings -> endpoint pool, engines, cache, broadcaster and registered metrics."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Sequence

from .adapters.endpoint_pool import EndpointPool
from .application.broadcaster import Broadcaster
from .application.cache import CacheStore
from .application.metric_service import MetricService, MetricSpec
from .application.range_query import QueryPolicy, RangeQueryEngine
from .application.state_reads import StateReader
from .application.use_cases import (
    LotteryParams, TVLParams, compute_lottery_stats, compute_tvl_chart, read_total_supply,
)
from .config import Settings
from .domain.models import LotteryStats, TVLChart
from .ports.rpc import RPCClient
from .ports.storage import ManifestSink

LOTTERY_STATS = "lottery-stats"
TVL_CHART = "tvl-chart"
TOTAL_SUPPLY = "pusd-total-supply"
CIRCULATING_SUPPLY = "pusd-circulating-supply"

STATS_TOPIC = "stats"
TVL_TOPIC = "tvl"


@dataclass(slots=True, frozen=True)
class RefreshSchedule:
    key: str
    interval_s: float
    min_ttl_remaining_ms: int


@dataclass(slots=True)
class Runtime:
    settings: Settings
    pool: EndpointPool
    engine: RangeQueryEngine
    reader: StateReader
    cache: CacheStore
    broadcaster: Broadcaster
    service: MetricService
    schedules: list[RefreshSchedule] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.service.aclose()
        await self.broadcaster.aclose()
        await self.pool.aclose()


def _ms(seconds: float) -> int:
    return int(seconds * 1000)


def build_runtime(
    settings: Settings,
    *,
    clients: Sequence[RPCClient] | None = None,
    manifest: ManifestSink | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Runtime:
    pool = EndpointPool(clients) if clients is not None else \
        EndpointPool.from_urls(settings.rpc_endpoints, timeout_s=settings.rpc_timeout_s)
    engine = RangeQueryEngine(
        pool,
        policy=QueryPolicy(max_range_size=settings.max_range_size,
                           inter_batch_delay_s=settings.inter_batch_delay_s),
        manifest=manifest,
        sleep=sleep,
    )
    reader = StateReader(pool, sleep=sleep)
    cache = CacheStore()
    broadcaster = Broadcaster()
    service = MetricService(cache, broadcaster, jitter_s=settings.refresh_jitter_s, sleep=sleep)

    c = settings.contracts
    budget = settings.refresh_budget_s or None
    lottery_params = LotteryParams(
        default_start_block=settings.lottery_default_start_block,
        discovery_window=settings.discovery_window_blocks,
        query_pause_s=settings.query_pause_s,
    )
    tvl_params = TVLParams(
        discovery_window=settings.discovery_window_blocks,
        state_read_delay_s=settings.state_read_delay_s,
    )

    service.register(MetricSpec(
        key=LOTTERY_STATS,
        compute=partial(compute_lottery_stats, engine=engine, reader=reader, lottery=c.lottery,
                        params=lottery_params, budget_s=budget, sleep=sleep),
        ttl_ms=_ms(settings.lottery_ttl_s),
        soft_refresh_ms=_ms(settings.lottery_soft_refresh_s),
        default=LotteryStats.zero,
        topic=STATS_TOPIC,
        serialize=LotteryStats.to_dict,
    ))
    service.register(MetricSpec(
        key=TVL_CHART,
        compute=partial(compute_tvl_chart, engine=engine, reader=reader, contracts=c,
                        params=tvl_params, budget_s=budget, sleep=sleep),
        ttl_ms=_ms(settings.tvl_ttl_s),
        soft_refresh_ms=_ms(settings.tvl_soft_refresh_s),
        default=TVLChart.zero,
        topic=TVL_TOPIC,
        serialize=TVLChart.to_dict,
    ))
    for key in (TOTAL_SUPPLY, CIRCULATING_SUPPLY):
        service.register(MetricSpec(
            key=key,
            compute=partial(read_total_supply, reader=reader, token=c.token),
            ttl_ms=_ms(settings.supply_ttl_s),
            default=lambda now_ms: 0,
            serialize=str,
        ))

    schedules = [
        RefreshSchedule(LOTTERY_STATS, settings.lottery_refresh_interval_s, 60_000),
        RefreshSchedule(TVL_CHART, settings.tvl_refresh_interval_s, 600_000),
    ]
    return Runtime(settings, pool, engine, reader, cache, broadcaster, service, schedules)
