from __future__ import annotations
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable

from ..domain.aggregation import (
    MATERIALITY, build_tvl_series, burn_amount, count_tickets, reduce_prizes, tvl_value,
)
from ..domain.decoding import EventABI
from ..domain.errors import ChainMetricsError
from ..domain.models import (
    BalanceSample, BlockRange, EventFilter, LotteryStats, QueryResult, TVLChart,
)
from ..domain.units import units_to_decimal
from ..domain.value_types import Address
from .range_query import RangeQueryEngine
from .state_reads import StateReader, StateReadGiveUp

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

TICKETS_PURCHASED = EventABI.parse(
    "TicketsPurchased(address indexed user, uint256[] ticketIds, uint256[] numbers, uint256 drawId)")
REWARD_CLAIMED = EventABI.parse(
    "RewardClaimed(address indexed user, uint256 ticketId, uint256 amount, uint8 tier)")
LOCKED = EventABI.parse(
    "Locked(address indexed user, uint256 amount, uint256 lockId, uint256 unlockTime)")

PRICE_SIG = "getPOLPrice()"      # 8 decimals
BALANCE_SIG = "getBalance()"
TOTAL_LOCKED_SIG = "totalLocked()"
TOTAL_SUPPLY_SIG = "totalSupply()"

SECONDS_PER_DAY = 86_400


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class Contracts:
    token: Address
    lottery: Address
    oracle: Address
    vault: Address
    staking: Address
    swap: Address


@dataclass(slots=True, frozen=True)
class LotteryParams:
    ticket_price: int = 10**17          # 0.1 token in base units
    burn_rate_bps: int = 500            # 5%
    default_start_block: int | None = None
    default_lookback: int = 50_000
    discovery_window: int = 200_000
    discovery_margin: int = 100
    discovery_max_range: int = 10_000
    query_pause_s: float = 5.0


@dataclass(slots=True, frozen=True)
class TVLParams:
    max_points: int = 5
    blocks_per_day: int = SECONDS_PER_DAY // 2     # ~2s blocks
    discovery_window: int = 200_000
    discovery_margin: int = 50
    discovery_max_range: int = 10_000
    state_read_delay_s: float = 1.0
    sample_delay_s: float = 2.0
    materiality: Decimal = MATERIALITY


@dataclass(slots=True, frozen=True)
class Discovery:
    start_block: int
    found: bool
    search_range: BlockRange
    search: QueryResult

    def covers(self, start_block: int) -> bool:
        """True when the search result already holds every event from ``start_block`` on."""
        return self.search_range.start <= start_block and (self.found or not self.search.partial)


# ──────────────────────────────
# Start block discovery
# ──────────────────────────────

async def discover_start_block(
    engine: RangeQueryEngine,
    flt: EventFilter,
    latest: int,
    *,
    window: int,
    margin: int,
    default: int,
    max_range_size: int | None = None,
    deadline: float | None = None,
) -> Discovery:
    """Earliest matching event in the last ``window`` blocks minus ``margin``.

    Finding nothing, or a search that failed, is not an error: the configured
    default start block is used instead.
    """
    search = BlockRange(max(0, latest - window), latest)
    res = await engine.query(flt, search, max_range_size=max_range_size, deadline=deadline)
    if res.events:
        earliest = min(e.block_number for e in res.events)
        return Discovery(max(0, earliest - margin), True, search, res)
    fallback = max(0, min(default, latest))
    log.warning("no events in %d-%d%s, starting from default block %d",
                search.start, search.end, " (partial search)" if res.partial else "", fallback)
    return Discovery(fallback, False, search, res)


# ──────────────────────────────
# Lottery
# ──────────────────────────────

async def compute_lottery_stats(
    *,
    engine: RangeQueryEngine,
    reader: StateReader,
    lottery: Address,
    params: LotteryParams = LotteryParams(),
    budget_s: float | None = None,
    sleep: Sleep = asyncio.sleep,
    now_ms: Callable[[], int] = _now_ms,
) -> LotteryStats:
    reader = reader.session()
    deadline = engine.deadline_in(budget_s) if budget_s else None
    latest = await reader.latest_block()

    tickets_flt = EventFilter.for_event(lottery, TICKETS_PURCHASED)
    default = (params.default_start_block if params.default_start_block is not None
               else latest - params.default_lookback)
    disc = await discover_start_block(
        engine, tickets_flt, latest,
        window=params.discovery_window, margin=params.discovery_margin, default=default,
        max_range_size=params.discovery_max_range, deadline=deadline,
    )
    rng = BlockRange(disc.start_block, latest)
    if disc.covers(rng.start):
        tickets = disc.search
    else:
        tickets = await engine.query(tickets_flt, rng, deadline=deadline)

    await sleep(params.query_pause_s)
    rewards = await engine.query(EventFilter.for_event(lottery, REWARD_CLAIMED), rng, deadline=deadline)

    tally = count_tickets(tickets.events)
    prizes = reduce_prizes(rewards.events)
    burned = burn_amount(tally.total, params.ticket_price, params.burn_rate_bps)
    stats = LotteryStats(
        total_tickets_sold=tally.total,
        total_prizes_distributed=units_to_decimal(prizes.total),
        total_burned=units_to_decimal(burned),
        biggest_win=units_to_decimal(prizes.biggest),
        last_updated=now_ms(),
        partial=tickets.partial or rewards.partial,
        skipped_events=tally.skipped + prizes.skipped,
    )
    if stats.skipped_events:
        log.warning("lottery: %d unparseable event(s) skipped", stats.skipped_events)
    log.info("lottery %d-%d: %d tickets in %d purchases, %d prizes, biggest %s%s",
             rng.start, rng.end, tally.total, tally.counted, prizes.counted, stats.biggest_win,
             " (partial)" if stats.partial else "")
    return stats


# ──────────────────────────────
# TVL
# ──────────────────────────────

def sample_blocks(
    deployment: int, latest: int, deploy_ts: int, now_ts: int, *, max_points: int, blocks_per_day: int,
) -> list[int]:
    """Historical blocks to sample, roughly one per ``step`` days since deployment (latest excluded)."""
    total_days = max(1, math.ceil((now_ts - deploy_ts) / SECONDS_PER_DAY))
    points = min(total_days + 1, max_points)
    step = max(1, (total_days + 1) // max(1, points))
    blocks = {deployment}
    for i in range(1, points):
        b = deployment + i * step * blocks_per_day
        if b <= latest:
            blocks.add(b)
    blocks.discard(latest)
    return sorted(blocks)


async def read_sample(
    reader: StateReader,
    contracts: Contracts,
    block: int,
    timestamp: int,
    *,
    delay_s: float = 0.0,
    sleep: Sleep = asyncio.sleep,
) -> BalanceSample:
    """Oracle price plus vault, staking and swap balances at ``block``, read one at a time."""
    reads = (
        (contracts.oracle, PRICE_SIG),
        (contracts.vault, BALANCE_SIG),
        (contracts.staking, TOTAL_LOCKED_SIG),
        (contracts.swap, BALANCE_SIG),
    )
    values: list[int] = []
    for i, (addr, sig) in enumerate(reads):
        if i and delay_s:
            await sleep(delay_s)
        values.append(await reader.read_uint(addr, sig, block))
    price, *balances = values
    return BalanceSample(block_number=block, timestamp=timestamp, balances=tuple(balances), price=price)


async def compute_tvl_chart(
    *,
    engine: RangeQueryEngine,
    reader: StateReader,
    contracts: Contracts,
    params: TVLParams = TVLParams(),
    budget_s: float | None = None,
    sleep: Sleep = asyncio.sleep,
    now_ms: Callable[[], int] = _now_ms,
) -> TVLChart:
    reader = reader.session()
    deadline = engine.deadline_in(budget_s) if budget_s else None
    latest = await reader.latest_block()
    now_ts = await reader.block_timestamp(latest)
    partial = False

    try:
        current = await read_sample(reader, contracts, latest, now_ts,
                                    delay_s=params.state_read_delay_s, sleep=sleep)
    except ChainMetricsError as e:
        log.warning("tvl: current balances unavailable (%s), reporting zero", e)
        current = BalanceSample(latest, now_ts, (), 0)
        partial = True

    disc = await discover_start_block(
        engine, EventFilter.for_event(contracts.staking, LOCKED), latest,
        window=params.discovery_window, margin=params.discovery_margin,
        default=latest - params.discovery_window,
        max_range_size=params.discovery_max_range, deadline=deadline,
    )

    samples: list[BalanceSample] = []
    if disc.start_block < latest:
        deploy_ts = await reader.block_timestamp(disc.start_block)
        blocks = sample_blocks(disc.start_block, latest, deploy_ts, now_ts,
                               max_points=params.max_points, blocks_per_day=params.blocks_per_day)
        log.info("tvl: sampling %d historical block(s)", len(blocks))
        for block in blocks:
            if deadline is not None and engine.clock() >= deadline:
                partial = True
                break
            try:
                ts = await reader.block_timestamp(block)
                samples.append(await read_sample(reader, contracts, block, ts,
                                                 delay_s=params.state_read_delay_s, sleep=sleep))
            except StateReadGiveUp as e:
                log.warning("tvl: %s; stopping historical sampling", e)
                partial = True
                break
            except ChainMetricsError as e:
                log.warning("tvl: skipping block %d: %s", block, e)
                partial = True
                continue
            await sleep(params.sample_delay_s)

    series = build_tvl_series([*samples, current], materiality=params.materiality)
    chart = TVLChart(
        series=tuple(series),
        current_tvl=tvl_value(current.balances, current.price),
        last_updated=now_ms(),
        partial=partial,
    )
    log.info("tvl: %d point(s), current %s%s", len(series), chart.current_tvl.quantize(Decimal("0.01")),
             " (partial)" if partial else "")
    return chart


# ──────────────────────────────
# Supply
# ──────────────────────────────

async def read_total_supply(*, reader: StateReader, token: Address) -> int:
    """Total token supply in base units; circulating supply is the same figure."""
    return await reader.session().read_uint(token, TOTAL_SUPPLY_SIG)
