from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping
from .value_types import Address, Topic0, Status
from .decoding import EventABI
from .units import format_decimal

_HEX = frozenset("0123456789abcdef")

def _is_topic_hash(x: str) -> bool:
    return x.startswith("0x") and len(x) == 66 and set(x[2:]) <= _HEX

@dataclass(slots=True, frozen=True)
class BlockRange:
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < 0:
            raise ValueError(f"block numbers must be non-negative: {self.start}-{self.end}")
        if self.start > self.end:
            raise ValueError(f"start ({self.start}) must be <= end ({self.end})")

    def span(self) -> int: return self.end - self.start + 1

@dataclass(slots=True, frozen=True)
class EventFilter:
    address: Address
    topic0s: tuple[Topic0, ...]
    event: EventABI | None = None   # decodes args when set

    def __post_init__(self) -> None:
        if not self.topic0s:
            raise ValueError("at least one topic0 is required")
        t0s = tuple(Topic0(str(t).strip().lower()) for t in self.topic0s)
        bad = [t for t in t0s if not _is_topic_hash(t)]
        if bad:
            raise ValueError(f"invalid topic0(s): {bad}")
        object.__setattr__(self, "topic0s", t0s)

    @classmethod
    def for_event(cls, address: Address, event: EventABI) -> "EventFilter":
        return cls(address=address, topic0s=(event.topic0,), event=event)

@dataclass(slots=True, frozen=True)
class LogEvent:
    block_number: int
    args: Mapping[str, Any]
    address: Address | None = None
    tx_hash: str = ""
    log_index: int = 0
    decode_error: str | None = None

@dataclass(slots=True, frozen=True)
class ChunkRec:
    from_block: int
    to_block: int
    status: Status = "pending"
    attempts: int = 0
    error: str | None = None
    logs: int = 0
    updated_at: float = 0.0

@dataclass(slots=True)
class QueryResult:
    events: list[LogEvent] = field(default_factory=list)
    partial: bool = False
    chunks: list[ChunkRec] = field(default_factory=list)

@dataclass(slots=True, frozen=True)
class LotteryStats:
    total_tickets_sold: int
    total_prizes_distributed: Decimal
    total_burned: Decimal
    biggest_win: Decimal
    last_updated: int                  # ms since epoch
    partial: bool = False
    skipped_events: int = 0

    @classmethod
    def zero(cls, now_ms: int) -> "LotteryStats":
        return cls(0, Decimal(0), Decimal(0), Decimal(0), now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTicketsSold": self.total_tickets_sold,
            "totalPrizesDistributed": format_decimal(self.total_prizes_distributed),
            "totalBurned": format_decimal(self.total_burned),
            "biggestWin": format_decimal(self.biggest_win),
            "lastUpdated": self.last_updated,
            "partial": self.partial,
        }

@dataclass(slots=True, frozen=True)
class BalanceSample:
    block_number: int
    timestamp: int                     # seconds since epoch
    balances: tuple[int, ...]          # base units, 18 decimals
    price: int                         # USD per unit, 8 decimals

@dataclass(slots=True, frozen=True)
class TVLPoint:
    day: str                           # MM/DD (UTC)
    tvl: Decimal
    timestamp: int                     # ms since epoch

@dataclass(slots=True, frozen=True)
class TVLChart:
    series: tuple[TVLPoint, ...]
    current_tvl: Decimal
    last_updated: int
    partial: bool = False

    @classmethod
    def zero(cls, now_ms: int) -> "TVLChart":
        return cls((), Decimal(0), now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [{"day": p.day, "tvl": float(p.tvl), "timestamp": p.timestamp} for p in self.series],
            "currentTVL": f"{self.current_tvl.quantize(Decimal('0.01')):f}",
            "lastUpdated": self.last_updated,
            "partial": self.partial,
        }

