from __future__ import annotations

from typing import Any, Callable

import pytest

from chainmetrics.domain.models import EventFilter, LogEvent


class FakeClock:
    """Monotonic seconds that only move when a FakeSleep sleeps."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def ms(self) -> int:
        return int(self.now * 1000)


class FakeSleep:
    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.now += seconds

    @property
    def total(self) -> float:
        return sum(self.calls)


class FakeRPC:
    """In-memory RPC client.

    ``logs`` maps (from, to) -> events or an exception; anything not listed is
    answered by ``logs_handler`` (default: no events). State reads come from
    ``uints`` keyed by (address, selector) and may also be exceptions.
    """

    def __init__(
        self,
        *,
        latest: int = 100_000,
        logs_handler: Callable[[EventFilter, int, int], list[LogEvent]] | None = None,
        uints: dict[tuple[str, str], Any] | None = None,
        timestamps: Callable[[int], int] | None = None,
        name: str = "fake",
    ) -> None:
        self.latest = latest
        self.logs_handler = logs_handler or (lambda flt, a, b: [])
        self.uints = uints or {}
        self.timestamps = timestamps or (lambda b: 1_700_000_000 + b * 2)
        self.name = name
        self.log_calls: list[tuple[int, int]] = []
        self.read_calls: list[tuple[str, str, Any]] = []
        self.closed = False

    async def get_logs(self, flt: EventFilter, from_block: int, to_block: int) -> list[LogEvent]:
        self.log_calls.append((from_block, to_block))
        out = self.logs_handler(flt, from_block, to_block)
        if isinstance(out, BaseException):
            raise out
        return list(out)

    async def latest_block(self) -> int:
        if isinstance(self.latest, BaseException):
            raise self.latest
        return self.latest

    async def block_timestamp(self, block: int) -> int:
        return self.timestamps(block)

    async def call_uint(self, to: str, selector: str, block: int | str = "latest") -> int:
        self.read_calls.append((to, selector, block))
        value = self.uints.get((to, selector))
        if value is None:
            raise AssertionError(f"unexpected eth_call {selector} on {to}")
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value(block)
        return value

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)
