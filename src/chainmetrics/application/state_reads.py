from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..adapters.endpoint_pool import EndpointPool
from ..domain.decoding import selector
from ..domain.errors import AllEndpointsExhaustedError, ChainMetricsError, RateLimitError, TransientNetworkError
from ..domain.value_types import Address
from ..ports.rpc import RPCClient
from .backoff import Action, BackoffController, BackoffPolicy, STATE_READ_POLICY

log = logging.getLogger(__name__)

T = TypeVar("T")


class StateReadGiveUp(ChainMetricsError):
    """Raised when the backoff controller gives up on numeric reads."""


class StateReader:
    """Numeric state reads (block number, block timestamp, uint views) with their own backoff."""

    def __init__(
        self,
        pool: EndpointPool,
        *,
        policy: BackoffPolicy = STATE_READ_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.pool = pool
        self.backoff = BackoffController(policy)
        self.sleep = sleep

    def session(self) -> "StateReader":
        """Same pool and policy with a failure streak of its own (one per computation)."""
        return StateReader(self.pool, policy=self.backoff.policy, sleep=self.sleep)

    async def _read(self, what: str, op: Callable[[RPCClient], Awaitable[T]]) -> T:
        while True:
            try:
                value = await self.pool.with_endpoint(op)
            except AllEndpointsExhaustedError as e:
                err = e.last_error
                if not isinstance(err, (RateLimitError, TransientNetworkError)):
                    raise
                decision = self.backoff.decide(err)
                if decision.action is Action.GIVE_UP:
                    raise StateReadGiveUp(f"{what}: giving up after repeated failures") from e
                if decision.action is Action.ABANDON:
                    raise
                log.warning("%s: %s, retrying in %.1fs", what, type(err).__name__, decision.delay_ms / 1000)
                await self.sleep(decision.delay_ms / 1000)
                continue
            self.backoff.record_success()
            return value

    async def latest_block(self) -> int:
        return await self._read("eth_blockNumber", lambda rpc: rpc.latest_block())

    async def block_timestamp(self, block: int) -> int:
        return await self._read(f"timestamp of {block}", lambda rpc: rpc.block_timestamp(block))

    async def read_uint(self, address: Address, signature: str, block: int | str = "latest") -> int:
        sel = selector(signature)
        return await self._read(f"{signature} on {address}@{block}",
                                lambda rpc: rpc.call_uint(address, sel, block))
