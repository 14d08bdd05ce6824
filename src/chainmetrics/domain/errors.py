"""Error taxonomy shared by adapters, the range engine and the metric service."""
from __future__ import annotations

import re
from typing import Sequence

_RETRY_HINT = re.compile(r"retry in\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)\b", re.IGNORECASE)
_UNIT_MS = {"ms": 1, "s": 1_000, "m": 60_000, "h": 3_600_000}

_RATE_LIMIT_MARKERS = (
    "rate limit", "too many requests", "-32090", "retry in", "exceeded the rate",
)
_OVERSIZED_MARKERS = (
    "413", "content too large", "query returned more than", "response size",
    "too many results", "block range", "-32005",
)
_TRANSIENT_MARKERS = ("timeout", "timed out", "internal error", "-32603", "header not found")


class ChainMetricsError(Exception):
    """Base class for every failure raised by chainmetrics."""


class TransientNetworkError(ChainMetricsError):
    pass


class RateLimitError(ChainMetricsError):
    def __init__(self, message: str, hinted_delay_ms: int | None = None) -> None:
        super().__init__(message)
        self.hinted_delay_ms = hinted_delay_ms


class OversizedResponseError(ChainMetricsError):
    pass


class RPCError(ChainMetricsError):
    """JSON-RPC error the taxonomy does not recognise."""
    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class AllEndpointsExhaustedError(ChainMetricsError):
    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        self.last_error = self.errors[-1] if self.errors else None
        super().__init__(f"all {len(self.errors)} endpoint(s) failed; last error: {self.last_error!r}")


class AggregationParseError(ChainMetricsError):
    pass


def parse_retry_hint(message: str) -> int | None:
    """Return the wait time in ms announced by a "retry in <N><unit>" message."""
    m = _RETRY_HINT.search(message or "")
    if not m:
        return None
    return int(float(m.group(1)) * _UNIT_MS[m.group(2).lower()])


def classify_rpc_error(message: str, code: int | None = None) -> ChainMetricsError:
    text = f"{code} {message}" if code is not None else str(message)
    low = text.lower()
    if any(k in low for k in _RATE_LIMIT_MARKERS):
        return RateLimitError(message, parse_retry_hint(message))
    if any(k in low for k in _OVERSIZED_MARKERS):
        return OversizedResponseError(message)
    if any(k in low for k in _TRANSIENT_MARKERS):
        return TransientNetworkError(message)
    return RPCError(message, code)
