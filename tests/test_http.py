"""Tests for the aiohttp surface: JSON endpoints, plain-text supply, CORS and the push socket."""

import asyncio
from decimal import Decimal

import pytest
from aiohttp.test_utils import TestClient, TestServer

from chainmetrics.application.broadcaster import Broadcaster
from chainmetrics.application.cache import CacheStore
from chainmetrics.application.metric_service import MetricService, MetricSpec
from chainmetrics.bootstrap import (
    CIRCULATING_SUPPLY, LOTTERY_STATS, STATS_TOPIC, TOTAL_SUPPLY, TVL_CHART, TVL_TOPIC, RefreshSchedule,
)
from chainmetrics.domain.models import LotteryStats, TVLChart, TVLPoint
from chainmetrics.presentation.http import TIMERS, create_app

NOW_MS = 1_700_000_000_000
STATS = LotteryStats(1_000, Decimal("12.5"), Decimal("5"), Decimal("10"), NOW_MS)
CHART = TVLChart((TVLPoint("11/15", Decimal("150"), 1_700_006_400_000),), Decimal("150"), NOW_MS)


class Script:
    def __init__(self, value):
        self.value = value
        self.fail = None

    async def __call__(self):
        if self.fail is not None:
            raise self.fail
        return self.value


def _service(stats=STATS, chart=CHART, supply=10**24):
    scripts = {LOTTERY_STATS: Script(stats), TVL_CHART: Script(chart),
               TOTAL_SUPPLY: Script(supply), CIRCULATING_SUPPLY: Script(supply)}
    service = MetricService(CacheStore(), Broadcaster(), jitter_s=0)
    service.register(MetricSpec(LOTTERY_STATS, scripts[LOTTERY_STATS], 120_000, LotteryStats.zero,
                                soft_refresh_ms=60_000, topic=STATS_TOPIC, serialize=LotteryStats.to_dict))
    service.register(MetricSpec(TVL_CHART, scripts[TVL_CHART], 3_600_000, TVLChart.zero,
                                topic=TVL_TOPIC, serialize=TVLChart.to_dict))
    for key in (TOTAL_SUPPLY, CIRCULATING_SUPPLY):
        service.register(MetricSpec(key, scripts[key], 300_000, lambda now_ms: 0, serialize=str))
    return service, scripts


async def _client(service, **kwargs):
    client = TestClient(TestServer(create_app(service, service.broadcaster, **kwargs)))
    await client.start_server()
    return client


class TestJSONEndpoints:

    @pytest.mark.asyncio
    async def test_health(self):
        client = await _client(_service()[0])
        try:
            resp = await client.get("/health")
            body = await resp.json()
            assert resp.status == 200
            assert body["status"] == "ok"
            assert isinstance(body["timestamp"], int)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_lottery_stats(self):
        client = await _client(_service()[0])
        try:
            resp = await client.get("/api/lottery/stats")
            assert resp.status == 200
            assert await resp.json() == {
                "totalTicketsSold": 1000,
                "totalPrizesDistributed": "12.5",
                "totalBurned": "5.0",
                "biggestWin": "10.0",
                "lastUpdated": NOW_MS,
                "partial": False,
            }
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_lottery_stats_cold_failure_is_still_200(self):
        service, scripts = _service()
        scripts[LOTTERY_STATS].fail = RuntimeError("all endpoints down")
        client = await _client(service)
        try:
            resp = await client.get("/api/lottery/stats")
            body = await resp.json()
            assert resp.status == 200
            assert body["totalTicketsSold"] == 0
            assert body["error"] == "all endpoints down"
            assert body["stale"] is True
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_lottery_refresh(self):
        service, scripts = _service()
        client = await _client(service)
        try:
            ok = await client.post("/api/lottery/refresh")
            body = await ok.json()
            assert ok.status == 200
            assert body["success"] is True
            assert body["stats"]["totalTicketsSold"] == 1000

            scripts[LOTTERY_STATS].fail = RuntimeError("rate limited")
            bad = await client.post("/api/lottery/refresh")
            assert bad.status == 500
            assert (await bad.json())["message"] == "rate limited"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_failed_refresh_leaves_last_stats_in_place(self):
        service, scripts = _service()
        client = await _client(service)
        try:
            assert (await (await client.get("/api/lottery/stats")).json())["totalTicketsSold"] == 1000
            scripts[LOTTERY_STATS].fail = RuntimeError("rate limited")

            bad = await client.post("/api/lottery/refresh")
            assert bad.status == 500
            assert (await bad.json())["stats"]["totalTicketsSold"] == 1000

            resp = await client.get("/api/lottery/stats")
            body = await resp.json()
            assert resp.status == 200
            assert body["totalTicketsSold"] == 1000
            assert body["totalPrizesDistributed"] == "12.5"
            assert body["error"] == "rate limited"
            assert body["stale"] is True
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_tvl_chart_and_refresh(self):
        client = await _client(_service()[0])
        try:
            chart = await (await client.get("/api/tvl/chart")).json()
            assert chart["currentTVL"] == "150.00"
            assert chart["data"] == [{"day": "11/15", "tvl": 150.0, "timestamp": 1_700_006_400_000}]
            refreshed = await (await client.post("/api/tvl/refresh")).json()
            assert refreshed["success"] is True
            assert refreshed["data"]["currentTVL"] == "150.00"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_cors_allows_any_origin(self):
        client = await _client(_service()[0])
        try:
            resp = await client.get("/health", headers={"Origin": "https://example.org"})
            assert resp.headers.get("Access-Control-Allow-Origin") == "https://example.org"
        finally:
            await client.close()


class TestSupplyEndpoints:

    @pytest.mark.asyncio
    async def test_plain_text_base_units(self):
        client = await _client(_service()[0])
        try:
            for path in ("/api/supply/total", "/api/supply/circulating"):
                resp = await client.get(path)
                assert resp.status == 200
                assert await resp.text() == str(10**24)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_cold_failure_is_500_zero(self):
        service, scripts = _service()
        scripts[TOTAL_SUPPLY].fail = RuntimeError("down")
        client = await _client(service)
        try:
            resp = await client.get("/api/supply/total")
            assert resp.status == 500
            assert await resp.text() == "0"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_failure_after_success_serves_last_value(self):
        service, scripts = _service()
        client = await _client(service)
        try:
            await client.get("/api/supply/total")
            service.cache.delete(TOTAL_SUPPLY)
            service.cache.set(TOTAL_SUPPLY, 7, ttl_ms=0, started_at_ms=0)
            await asyncio.sleep(0.01)
            scripts[TOTAL_SUPPLY].fail = RuntimeError("down")
            resp = await client.get("/api/supply/total")
            assert resp.status == 200
            assert await resp.text() == "7"
        finally:
            await client.close()


class TestWebSocket:

    @pytest.mark.asyncio
    async def test_cached_value_on_connect_then_pushes(self):
        service, _ = _service()
        await service.get(LOTTERY_STATS)
        client = await _client(service)
        try:
            ws = await client.ws_connect("/ws")
            first = await asyncio.wait_for(ws.receive_json(), 5)
            assert first["type"] == "stats"
            assert first["data"]["totalTicketsSold"] == 1000

            # tvl was not cached: the connection triggers a fetch that is pushed
            second = await asyncio.wait_for(ws.receive_json(), 5)
            assert second["type"] == "tvl"

            await client.post("/api/lottery/refresh")
            third = await asyncio.wait_for(ws.receive_json(), 5)
            assert third["type"] == "stats"
            await ws.close()
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_closed_socket_is_unsubscribed(self):
        service, _ = _service()
        await service.get(LOTTERY_STATS)
        await service.get(TVL_CHART)
        client = await _client(service)
        try:
            ws = await client.ws_connect("/ws")
            await asyncio.wait_for(ws.receive_json(), 5)
            await asyncio.wait_for(ws.receive_json(), 5)
            assert len(service.broadcaster) == 1
            await ws.close()
            for _ in range(50):
                if len(service.broadcaster) == 0:
                    break
                await asyncio.sleep(0.01)
            assert len(service.broadcaster) == 0
        finally:
            await client.close()


class TestTimers:

    @pytest.mark.asyncio
    async def test_auto_refresh_tasks_live_with_the_app(self):
        service, _ = _service()
        client = await _client(service, schedules=[RefreshSchedule(LOTTERY_STATS, 3_600, 60_000)])
        timers = client.app[TIMERS]
        assert len(timers) == 1 and not timers[0].done()
        await client.close()
        assert timers[0].cancelled()
