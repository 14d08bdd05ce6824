"""Pure reducers that fold already-fetched logs and samples into metrics.

Nothing here performs I/O or reads the clock; timestamps are passed in.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Iterable, Sequence

from .errors import AggregationParseError
from .models import BalanceSample, LogEvent, TVLPoint
from .units import PRICE_DECIMALS, TOKEN_DECIMALS, day_label, units_to_decimal

BPS = 10_000
MATERIALITY = Decimal("0.01")


@dataclass(slots=True, frozen=True)
class TicketTally:
    total: int
    counted: int
    skipped: int


@dataclass(slots=True, frozen=True)
class PrizeTotals:
    total: int          # base units
    biggest: int        # base units
    counted: int
    skipped: int


def sort_events(events: Iterable[LogEvent]) -> list[LogEvent]:
    return sorted(events, key=lambda e: (e.block_number, e.log_index))


def _field(ev: LogEvent, name: str) -> object:
    if ev.decode_error is not None:
        raise AggregationParseError(ev.decode_error)
    if name not in ev.args or ev.args[name] is None:
        raise AggregationParseError(f"event at block {ev.block_number} has no {name!r}")
    return ev.args[name]


def _ticket_count(value: object) -> int:
    if isinstance(value, (list, tuple)):
        return len(value)
    return 1


def _amount(value: object) -> int:
    if isinstance(value, bool):
        raise AggregationParseError(f"boolean is not an amount: {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str):
        try:
            amount = int(value, 0) if value.lower().startswith("0x") else int(value)
        except ValueError as e:
            raise AggregationParseError(f"not an integer amount: {value!r}") from e
    else:
        raise AggregationParseError(f"unsupported amount type {type(value).__name__}")
    if amount < 0:
        raise AggregationParseError(f"negative amount {amount}")
    return amount


def count_tickets(events: Iterable[LogEvent], field: str = "ticketIds") -> TicketTally:
    total = counted = skipped = 0
    for ev in events:
        try:
            n = _ticket_count(_field(ev, field))
        except AggregationParseError:
            skipped += 1
            continue
        total += n
        counted += 1
    return TicketTally(total, counted, skipped)


def reduce_prizes(events: Iterable[LogEvent], field: str = "amount") -> PrizeTotals:
    total = biggest = counted = skipped = 0
    for ev in events:
        try:
            amount = _amount(_field(ev, field))
        except AggregationParseError:
            skipped += 1
            continue
        total += amount
        biggest = max(biggest, amount)
        counted += 1
    return PrizeTotals(total, biggest, counted, skipped)


def burn_amount(tickets: int, ticket_price: int | Decimal, burn_rate_bps: int) -> int | Decimal:
    """``tickets * price * bps / 10000``; floor division for base-unit integers."""
    gross = tickets * ticket_price * burn_rate_bps
    if isinstance(gross, int):
        return gross // BPS
    return gross / BPS


def tvl_value(
    balances: Sequence[int],
    price: int,
    *,
    balance_decimals: int = TOKEN_DECIMALS,
    price_decimals: int = PRICE_DECIMALS,
) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = 80
        return units_to_decimal(sum(balances), balance_decimals) * units_to_decimal(price, price_decimals)


def dedupe_by_day(points: Iterable[TVLPoint]) -> list[TVLPoint]:
    """One point per day label; the later timestamp wins. Sorted by timestamp."""
    by_day: dict[str, TVLPoint] = {}
    for p in points:
        cur = by_day.get(p.day)
        if cur is None or cur.timestamp < p.timestamp:
            by_day[p.day] = p
    return sorted(by_day.values(), key=lambda p: p.timestamp)


def build_tvl_series(samples: Sequence[BalanceSample], *, materiality: Decimal = MATERIALITY) -> list[TVLPoint]:
    if not samples:
        return []
    ordered = sorted(samples, key=lambda s: (s.timestamp, s.block_number))
    last = len(ordered) - 1
    points: list[TVLPoint] = []
    for i, s in enumerate(ordered):
        tvl = max(Decimal(0), tvl_value(s.balances, s.price))
        if tvl < materiality and i != last:
            continue
        ts_ms = s.timestamp * 1000
        points.append(TVLPoint(day=day_label(ts_ms), tvl=tvl, timestamp=ts_ms))
    return dedupe_by_day(points)
