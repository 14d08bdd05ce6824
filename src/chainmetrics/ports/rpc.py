# chainmetrics/ports/rpc.py
from __future__ import annotations

from typing import Protocol
from ..domain.models import EventFilter, LogEvent
from ..domain.value_types import Address


class RPCClient(Protocol):
    """Port defining the contract for an Ethereum JSON-RPC client (logs + numeric reads).

    Implementations raise the errors of ``chainmetrics.domain.errors`` and never retry.
    """

    async def get_logs(
        self,
        flt: EventFilter,
        from_block: int,
        to_block: int,
    ) -> list[LogEvent]:
        """Return normalized, typed logs for [from_block, to_block] inclusive."""

    async def latest_block(self) -> int:
        """Return the latest block number as an integer."""

    async def block_timestamp(self, block: int) -> int:
        """Return the timestamp (seconds) of a block."""

    async def call_uint(self, to: Address, selector: str, block: int | str = "latest") -> int:
        """eth_call a zero-argument view returning a single uint256."""

    async def aclose(self) -> None:
        """Release network resources."""
