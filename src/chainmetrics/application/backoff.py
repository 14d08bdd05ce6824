from __future__ import annotations

import enum
from dataclasses import dataclass

from ..domain.errors import ChainMetricsError, RateLimitError
from ..domain.value_types import ErrorKind


class Action(str, enum.Enum):
    WAIT = "wait"
    ABANDON = "abandon"      # drop this sub-range, keep going
    GIVE_UP = "give_up"      # stop the whole operation


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    base_delay_ms: int = 2_000
    max_delay_ms: int = 30_000
    max_consecutive_failures: int = 3
    hint_cap_ms: int = 600_000
    abandon_threshold_ms: int = 60_000


LOG_QUERY_POLICY = BackoffPolicy()
STATE_READ_POLICY = BackoffPolicy(max_delay_ms=60_000)


@dataclass(slots=True, frozen=True)
class BackoffDecision:
    action: Action
    delay_ms: int = 0


class BackoffController:
    """Failure-streak bookkeeping and wait-time policy. No I/O."""

    def __init__(self, policy: BackoffPolicy = LOG_QUERY_POLICY) -> None:
        self.policy = policy
        self.consecutive_failures = 0

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def next_delay(self, error_kind: ErrorKind, hinted_delay_ms: int | None = None) -> BackoffDecision:
        p = self.policy
        failures = self.consecutive_failures
        self.consecutive_failures += 1

        if failures >= p.max_consecutive_failures:
            return BackoffDecision(Action.GIVE_UP)
        if error_kind == "rate_limit" and hinted_delay_ms is not None:
            hint = min(max(0, hinted_delay_ms), p.hint_cap_ms)
            if hint > p.abandon_threshold_ms:
                return BackoffDecision(Action.ABANDON, hint)
            return BackoffDecision(Action.WAIT, hint)
        return BackoffDecision(Action.WAIT, min(p.base_delay_ms * 2 ** failures, p.max_delay_ms))

    def decide(self, err: ChainMetricsError) -> BackoffDecision:
        if isinstance(err, RateLimitError):
            return self.next_delay("rate_limit", err.hinted_delay_ms)
        return self.next_delay("transient")
