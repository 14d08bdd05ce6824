"""End-to-end computations over a fake chain: lottery stats, TVL chart and supply."""

from decimal import Decimal

import pytest

from chainmetrics.adapters.endpoint_pool import EndpointPool
from chainmetrics.application.range_query import RangeQueryEngine
from chainmetrics.application.state_reads import StateReader
from chainmetrics.application.use_cases import (
    LOCKED, REWARD_CLAIMED, TICKETS_PURCHASED, Contracts, LotteryParams,
    compute_lottery_stats, compute_tvl_chart, discover_start_block, read_total_supply, sample_blocks,
)
from chainmetrics.domain.decoding import selector
from chainmetrics.domain.errors import RPCError, TransientNetworkError
from chainmetrics.domain.models import EventFilter, LogEvent

from conftest import FakeRPC

WEI = 10**18
NOW_MS = 1_700_000_000_000

CONTRACTS = Contracts(
    token="0xToken", lottery="0xLottery", oracle="0xOracle",
    vault="0xVault", staking="0xStaking", swap="0xSwap",
)


def _chain(events_by_topic):
    """logs handler serving {topic0: [LogEvent, ...]} filtered by block range."""
    def handler(flt, a, b):
        return [e for e in events_by_topic.get(flt.topic0s[0], []) if a <= e.block_number <= b]
    return handler


def _wire(rpc, sleep, clock):
    pool = EndpointPool([rpc])
    return RangeQueryEngine(pool, sleep=sleep, clock=clock), StateReader(pool, sleep=sleep)


class TestDiscovery:

    @pytest.mark.asyncio
    async def test_earliest_event_minus_margin(self, sleep, clock):
        ev = LogEvent(block_number=150_000, args={})
        rpc = FakeRPC(logs_handler=_chain({TICKETS_PURCHASED.topic0: [ev]}))
        engine, _ = _wire(rpc, sleep, clock)
        flt = EventFilter.for_event(CONTRACTS.lottery, TICKETS_PURCHASED)

        disc = await discover_start_block(engine, flt, 300_000, window=200_000, margin=100,
                                          default=0, max_range_size=10_000)

        assert disc.found
        assert disc.start_block == 149_900
        assert disc.covers(149_900)

    @pytest.mark.asyncio
    async def test_failed_search_falls_back_to_default(self, sleep, clock):
        rpc = FakeRPC(logs_handler=lambda flt, a, b: RPCError("execution reverted"))
        engine, _ = _wire(rpc, sleep, clock)
        flt = EventFilter.for_event(CONTRACTS.lottery, TICKETS_PURCHASED)

        disc = await discover_start_block(engine, flt, 300_000, window=200_000, margin=100,
                                          default=250_000, max_range_size=10_000)

        assert not disc.found
        assert disc.start_block == 250_000
        assert disc.search.partial
        assert not disc.covers(250_000)


class TestLotteryStats:

    @pytest.mark.asyncio
    async def test_stats_from_ticket_and_reward_events(self, sleep, clock):
        chain = {
            TICKETS_PURCHASED.topic0: [
                LogEvent(block_number=150_000, args={"ticketIds": (1, 2, 3)}),
                LogEvent(block_number=250_000, args={"ticketIds": (4,)}),
            ],
            REWARD_CLAIMED.topic0: [
                LogEvent(block_number=200_000, args={"amount": 2 * WEI}),
                LogEvent(block_number=260_000, args={"amount": 5 * WEI}),
                LogEvent(block_number=100_000, args={"amount": 99 * WEI}),     # before start
            ],
        }
        rpc = FakeRPC(latest=300_000, logs_handler=_chain(chain))
        engine, reader = _wire(rpc, sleep, clock)

        stats = await compute_lottery_stats(engine=engine, reader=reader, lottery=CONTRACTS.lottery,
                                            sleep=sleep, now_ms=lambda: NOW_MS)

        assert stats.total_tickets_sold == 4
        assert stats.total_prizes_distributed == Decimal(7)
        assert stats.biggest_win == Decimal(5)
        assert stats.to_dict() == {
            "totalTicketsSold": 4,
            "totalPrizesDistributed": "7.0",
            "totalBurned": "0.02",
            "biggestWin": "5.0",
            "lastUpdated": NOW_MS,
            "partial": False,
        }
        assert 5.0 in sleep.calls

    @pytest.mark.asyncio
    async def test_configured_default_start_block(self, sleep, clock):
        rpc = FakeRPC(latest=1_000)
        engine, reader = _wire(rpc, sleep, clock)

        stats = await compute_lottery_stats(engine=engine, reader=reader, lottery=CONTRACTS.lottery,
                                            params=LotteryParams(default_start_block=5),
                                            sleep=sleep, now_ms=lambda: NOW_MS)

        assert stats.total_tickets_sold == 0
        assert rpc.log_calls[-1] == (5, 1_000)

    @pytest.mark.asyncio
    async def test_failed_reward_query_marks_partial(self, sleep, clock):
        def handler(flt, a, b):
            if flt.topic0s[0] == REWARD_CLAIMED.topic0:
                return RPCError("execution reverted")
            return [LogEvent(block_number=900, args={"ticketIds": (1,)})] if a <= 900 <= b else []

        rpc = FakeRPC(latest=1_000, logs_handler=handler)
        engine, reader = _wire(rpc, sleep, clock)

        stats = await compute_lottery_stats(engine=engine, reader=reader, lottery=CONTRACTS.lottery,
                                            sleep=sleep, now_ms=lambda: NOW_MS)

        assert stats.partial
        assert stats.total_tickets_sold == 1
        assert stats.total_prizes_distributed == 0

    @pytest.mark.asyncio
    async def test_undecodable_events_are_counted_as_skipped(self, sleep, clock):
        chain = {TICKETS_PURCHASED.topic0: [
            LogEvent(block_number=500, args={"ticketIds": (1, 2)}),
            LogEvent(block_number=600, args={}, decode_error="truncated"),
        ]}
        rpc = FakeRPC(latest=1_000, logs_handler=_chain(chain))
        engine, reader = _wire(rpc, sleep, clock)

        stats = await compute_lottery_stats(engine=engine, reader=reader, lottery=CONTRACTS.lottery,
                                            sleep=sleep, now_ms=lambda: NOW_MS)

        assert stats.total_tickets_sold == 2
        assert stats.skipped_events == 1


# 2023-11-15 00:00 UTC is the timestamp of the deployment block 199_950
BASE_TS = 1_700_006_400 - 199_950 * 2


def _tvl_rpc(**overrides):
    uints = {
        (CONTRACTS.oracle, selector("getPOLPrice()")): 10**8,
        (CONTRACTS.vault, selector("getBalance()")): 100 * WEI,
        (CONTRACTS.staking, selector("totalLocked()")): 50 * WEI,
        (CONTRACTS.swap, selector("getBalance()")): 0,
    }
    uints.update(overrides)
    chain = {LOCKED.topic0: [LogEvent(block_number=200_000, args={})]}
    return FakeRPC(latest=300_000, logs_handler=_chain(chain), uints=uints,
                   timestamps=lambda b: BASE_TS + b * 2)


class TestTVLChart:

    def test_sample_blocks_one_per_day(self):
        blocks = sample_blocks(199_950, 300_000, BASE_TS + 399_900, BASE_TS + 600_000,
                               max_points=5, blocks_per_day=43_200)
        assert blocks == [199_950, 243_150, 286_350]

    def test_sample_blocks_capped(self):
        blocks = sample_blocks(0, 100_000_000, 0, 365 * 86_400, max_points=5, blocks_per_day=43_200)
        assert len(blocks) == 5

    @pytest.mark.asyncio
    async def test_chart_from_historical_samples(self, sleep, clock):
        rpc = _tvl_rpc()
        engine, reader = _wire(rpc, sleep, clock)

        chart = await compute_tvl_chart(engine=engine, reader=reader, contracts=CONTRACTS,
                                        sleep=sleep, now_ms=lambda: NOW_MS)

        assert not chart.partial
        assert [p.day for p in chart.series] == ["11/15", "11/16", "11/17"]
        assert all(p.tvl == Decimal(150) for p in chart.series)
        body = chart.to_dict()
        assert body["currentTVL"] == "150.00"
        assert body["data"][0] == {"day": "11/15", "tvl": 150.0, "timestamp": 1_700_006_400_000}

    @pytest.mark.asyncio
    async def test_failed_historical_sample_is_skipped(self, sleep, clock):
        def vault(block):
            if block == 243_150:
                raise RPCError("execution reverted")
            return 100 * WEI

        rpc = _tvl_rpc()
        rpc.uints[(CONTRACTS.vault, selector("getBalance()"))] = vault
        engine, reader = _wire(rpc, sleep, clock)

        chart = await compute_tvl_chart(engine=engine, reader=reader, contracts=CONTRACTS,
                                        sleep=sleep, now_ms=lambda: NOW_MS)

        assert chart.partial
        assert [p.day for p in chart.series] == ["11/15", "11/17"]

    @pytest.mark.asyncio
    async def test_current_sample_failure_reports_zero(self, sleep, clock):
        rpc = _tvl_rpc()

        def price(block):
            if block == 300_000:
                raise RPCError("execution reverted")
            return 10**8

        rpc.uints[(CONTRACTS.oracle, selector("getPOLPrice()"))] = price
        engine, reader = _wire(rpc, sleep, clock)

        chart = await compute_tvl_chart(engine=engine, reader=reader, contracts=CONTRACTS,
                                        sleep=sleep, now_ms=lambda: NOW_MS)

        assert chart.partial
        assert chart.current_tvl == 0
        assert chart.series[-1].tvl == 0
        assert chart.series[0].tvl == Decimal(150)

    @pytest.mark.asyncio
    async def test_give_up_stops_historical_sampling(self, sleep, clock):
        def vault(block):
            if block != 300_000:
                raise TransientNetworkError("timeout")
            return 100 * WEI

        rpc = _tvl_rpc()
        rpc.uints[(CONTRACTS.vault, selector("getBalance()"))] = vault
        engine, reader = _wire(rpc, sleep, clock)

        chart = await compute_tvl_chart(engine=engine, reader=reader, contracts=CONTRACTS,
                                        sleep=sleep, now_ms=lambda: NOW_MS)

        assert chart.partial
        assert len(chart.series) == 1
        assert chart.series[0].tvl == Decimal(150)
        assert chart.current_tvl == Decimal(150)
        sampled = {block for _, _, block in rpc.read_calls}
        assert 199_950 in sampled
        assert not sampled & {243_150, 286_350}
        assert sleep.calls[-3:] == [2.0, 4.0, 8.0]


class TestSupply:

    @pytest.mark.asyncio
    async def test_total_supply(self, sleep):
        rpc = FakeRPC(uints={(CONTRACTS.token, selector("totalSupply()")): 1_234 * WEI})
        reader = StateReader(EndpointPool([rpc]), sleep=sleep)
        assert await read_total_supply(reader=reader, token=CONTRACTS.token) == 1_234 * WEI
