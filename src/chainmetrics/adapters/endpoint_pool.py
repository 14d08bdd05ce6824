from __future__ import annotations

import logging
from typing import Awaitable, Callable, Sequence, TypeVar

from ..domain.errors import AllEndpointsExhaustedError
from ..ports.rpc import RPCClient
from .rpc_httpx import HttpxRPC

log = logging.getLogger(__name__)

T = TypeVar("T")


class EndpointPool:
    """Ordered, interchangeable RPC endpoints.

    Every call starts at the first endpoint and walks the list on failure; nothing
    is remembered between calls.
    """

    def __init__(self, clients: Sequence[RPCClient]) -> None:
        if not clients:
            raise ValueError("EndpointPool needs at least one endpoint")
        self.clients = list(clients)

    @classmethod
    def from_urls(cls, urls: Sequence[str], *, timeout_s: float = 20) -> "EndpointPool":
        return cls([HttpxRPC(u, timeout_s=timeout_s) for u in urls])

    def __len__(self) -> int:
        return len(self.clients)

    async def with_endpoint(self, operation: Callable[[RPCClient], Awaitable[T]]) -> T:
        errors: list[Exception] = []
        for attempt, client in enumerate(self.clients, start=1):
            try:
                return await operation(client)
            except Exception as e:
                errors.append(e)
                if attempt < len(self.clients):
                    log.warning("endpoint %d/%d failed (%s: %s), trying next",
                                attempt, len(self.clients), type(e).__name__, e)
        raise AllEndpointsExhaustedError(errors) from errors[-1]

    async def aclose(self) -> None:
        for c in self.clients:
            await c.aclose()
