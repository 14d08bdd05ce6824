from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Sequence

import aiohttp_cors
from aiohttp import WSMsgType, web

from ..application.broadcaster import Broadcaster
from ..application.metric_service import MetricResult, MetricService
from ..bootstrap import (
    CIRCULATING_SUPPLY, LOTTERY_STATS, STATS_TOPIC, TOTAL_SUPPLY, TVL_CHART, TVL_TOPIC, RefreshSchedule,
)

log = logging.getLogger(__name__)

SERVICE = web.AppKey("service", MetricService)
BROADCASTER = web.AppKey("broadcaster", Broadcaster)
SCHEDULES = web.AppKey("schedules", tuple)
TIMERS = web.AppKey("timers", list)

# push topic -> metric key, in the order a new socket receives them
PUSHED = ((STATS_TOPIC, LOTTERY_STATS), (TVL_TOPIC, TVL_CHART))


def _body(service: MetricService, res: MetricResult) -> dict[str, Any]:
    body = dict(service.spec(res.key).serialize(res.value))
    if res.error is not None:
        body["error"] = res.error
        body["stale"] = True
    return body


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "timestamp": int(time.time() * 1000)})


async def lottery_stats(request: web.Request) -> web.Response:
    service = request.app[SERVICE]
    return web.json_response(_body(service, await service.get(LOTTERY_STATS)))


async def lottery_refresh(request: web.Request) -> web.Response:
    service = request.app[SERVICE]
    res = await service.refresh(LOTTERY_STATS)
    if res.error is not None:
        return web.json_response({"success": False, "error": "Failed to refresh stats", "message": res.error,
                                  "stats": _body(service, res)}, status=500)
    return web.json_response({"success": True, "stats": _body(service, res),
                              "message": "Lottery stats refreshed successfully"})


async def tvl_chart(request: web.Request) -> web.Response:
    service = request.app[SERVICE]
    return web.json_response(_body(service, await service.get(TVL_CHART)))


async def tvl_refresh(request: web.Request) -> web.Response:
    service = request.app[SERVICE]
    res = await service.refresh(TVL_CHART)
    if res.error is not None:
        return web.json_response({"success": False, "error": "Failed to refresh TVL", "message": res.error,
                                  "data": _body(service, res)}, status=500)
    return web.json_response({"success": True, "data": _body(service, res)})


async def _supply(request: web.Request, key: str) -> web.Response:
    res = await request.app[SERVICE].get(key)
    if res.source == "default":
        return web.Response(text="0", status=500)
    return web.Response(text=str(res.value))


async def total_supply(request: web.Request) -> web.Response:
    return await _supply(request, TOTAL_SUPPLY)


async def circulating_supply(request: web.Request) -> web.Response:
    return await _supply(request, CIRCULATING_SUPPLY)


async def websocket(request: web.Request) -> web.WebSocketResponse:
    service = request.app[SERVICE]
    broadcaster = request.app[BROADCASTER]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    for topic, key in PUSHED:
        payload = service.cached_payload(key)
        if payload is not None:
            await ws.send_json({"type": topic, "data": payload})
        else:
            service.prefetch(key)

    async def deliver(message: dict[str, Any]) -> None:
        if ws.closed:
            raise ConnectionResetError("socket closed")
        await ws.send_json(message)

    handle = broadcaster.subscribe(deliver)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                log.warning("websocket error: %s", ws.exception())
                break
    finally:
        broadcaster.unsubscribe(handle)
    return ws


async def _start_timers(app: web.Application) -> None:
    service = app[SERVICE]
    app[TIMERS] = [
        asyncio.create_task(service.run_auto_refresh(s.key, s.interval_s, s.min_ttl_remaining_ms))
        for s in app[SCHEDULES]
    ]


async def _stop_timers(app: web.Application) -> None:
    timers = app.get(TIMERS, [])
    for t in timers:
        t.cancel()
    await asyncio.gather(*timers, return_exceptions=True)


def create_app(
    service: MetricService,
    broadcaster: Broadcaster,
    *,
    schedules: Sequence[RefreshSchedule] = (),
) -> web.Application:
    app = web.Application()
    app[SERVICE] = service
    app[BROADCASTER] = broadcaster
    app[SCHEDULES] = tuple(schedules)
    app.on_startup.append(_start_timers)
    app.on_cleanup.append(_stop_timers)

    cors = aiohttp_cors.setup(app, defaults={
        "*": aiohttp_cors.ResourceOptions(
            allow_credentials=True, expose_headers="*", allow_headers="*", allow_methods="*"
        )
    })
    routes = [
        web.get("/health", health),
        web.get("/api/lottery/stats", lottery_stats),
        web.post("/api/lottery/refresh", lottery_refresh),
        web.get("/api/tvl/chart", tvl_chart),
        web.post("/api/tvl/refresh", tvl_refresh),
        web.get("/api/supply/total", total_supply),
        web.get("/api/supply/circulating", circulating_supply),
    ]
    for route in routes:
        cors.add(app.router.add_route(route.method, route.path, route.handler))
    app.router.add_get("/ws", websocket)
    return app
