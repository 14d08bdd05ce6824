from __future__ import annotations
import logging
from typing import Any
import httpx
from ..domain.decoding import decode_log
from ..domain.errors import (
    AggregationParseError, OversizedResponseError, RateLimitError, TransientNetworkError,
    classify_rpc_error, parse_retry_hint,
)
from ..domain.models import EventFilter, LogEvent
from ..domain.value_types import Address
from ..ports.rpc import RPCClient

log = logging.getLogger(__name__)

def _to_hex_block(n: int | str) -> str: return n if isinstance(n, str) else hex(int(n))
def _retry_after_ms(r: httpx.Response) -> int | None:
    ra = r.headers.get("Retry-After")
    if ra and ra.strip().isdigit():
        return int(ra.strip()) * 1000
    return parse_retry_hint(r.text)

def _to_log_event(rl: dict[str, Any], flt: EventFilter) -> LogEvent:
    topics = [(t if isinstance(t, str) else t.decode()).lower() for t in rl.get("topics", [])]
    args: dict[str, Any] = {}
    err: str | None = None
    if flt.event is not None:
        try:
            args = decode_log(flt.event, topics, str(rl.get("data") or "0x"))
        except AggregationParseError as e:
            err = str(e)
            log.debug("undecodable %s log in tx %s: %s", flt.event.name, rl.get("transactionHash"), e)
    return LogEvent(
        block_number=int(rl["blockNumber"], 16),
        args=args,
        address=Address(rl["address"].lower()),
        tx_hash=(rl.get("transactionHash") or "").lower(),
        log_index=int(rl.get("logIndex") or "0x0", 16),
        decode_error=err,
    )

class HttpxRPC(RPCClient):
    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 20,
        max_conn: int = 64,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.client = httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max_conn//2),
            transport=transport,
        )
        self._id = 0

    def __repr__(self) -> str:
        return f"HttpxRPC({self.rpc_url!r})"

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._id += 1
        payload = {"jsonrpc":"2.0","id":self._id,"method":method,"params":params}
        try:
            r = await self.client.post(self.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} transport error: {type(e).__name__}: {e}") from e
        if r.status_code == 429:
            raise RateLimitError(f"{method} HTTP 429: {r.text[:200]}", _retry_after_ms(r))
        if r.status_code == 413:
            raise OversizedResponseError(f"{method} HTTP 413 Content Too Large")
        if r.status_code >= 500:
            raise TransientNetworkError(f"{method} HTTP {r.status_code}")
        if r.status_code >= 400:
            raise classify_rpc_error(f"{method} HTTP {r.status_code}: {r.text[:200]}")
        try:
            data = r.json()
        except ValueError as e:
            raise TransientNetworkError(f"{method} returned non-JSON body") from e
        if "error" in data:
            err = data["error"]
            if isinstance(err, dict):
                raise classify_rpc_error(str(err.get("message")), err.get("code"))
            raise classify_rpc_error(str(err))
        return data.get("result")

    async def latest_block(self) -> int:
        return int(await self._rpc("eth_blockNumber", []), 16)

    async def block_timestamp(self, block: int) -> int:
        res = await self._rpc("eth_getBlockByNumber", [_to_hex_block(block), False])
        if not res:
            raise TransientNetworkError(f"block {block} not available yet")
        return int(res["timestamp"], 16)

    async def call_uint(self, to: Address, selector: str, block: int | str = "latest") -> int:
        res = await self._rpc("eth_call", [{"to": str(to), "data": selector}, _to_hex_block(block)])
        if not res or res == "0x":
            raise classify_rpc_error(f"eth_call {selector} on {to} returned no data")
        return int(res, 16)

    async def get_logs(self, flt: EventFilter, from_block: int, to_block: int) -> list[LogEvent]:
        res = await self._rpc("eth_getLogs", [{
            "address": str(flt.address),
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": [list(flt.topic0s)],
        }])
        return [_to_log_event(rl, flt) for rl in (res or [])]

    async def aclose(self) -> None:
        await self.client.aclose()
