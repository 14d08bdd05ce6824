from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed
Topic0  = NewType("Topic0", str)    # 66-char 0x-hash
Status  = Literal["pending", "done", "failed", "split", "abandoned"]
ErrorKind = Literal["rate_limit", "transient"]
MetricSource = Literal["cache", "fresh", "fallback", "default"]
