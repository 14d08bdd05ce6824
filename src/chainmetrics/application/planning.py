from __future__ import annotations
from ..domain.models import BlockRange

def plan_batches(start_block: int, end_block: int, max_range_size: int) -> list[BlockRange]:
    """Sequential batches whose ``end - start`` never exceeds ``max_range_size``."""
    if max_range_size < 0:
        raise ValueError("max_range_size must be >= 0")
    out: list[BlockRange] = []
    b = start_block
    while b <= end_block:
        fb, tb = b, min(end_block, b + max_range_size)
        out.append(BlockRange(fb, tb))
        b = tb + 1
    return out

def split_range(start: int, end: int, parts: int) -> list[tuple[int, int]]:
    """Split [start, end] into at most ``parts`` contiguous, near-equal pieces."""
    span = end - start + 1
    parts = max(1, min(parts, span))
    size = -(-span // parts)
    out: list[tuple[int, int]] = []
    a = start
    while a <= end:
        b = min(end, a + size - 1)
        out.append((a, b))
        a = b + 1
    return out

def merge_intervals(intervals: list[tuple[int,int]]) -> list[tuple[int,int]]:
    if not intervals: return []
    intervals = sorted(intervals)
    merged: list[list[int]] = [[intervals[0][0], intervals[0][1]]]
    for s, e in intervals[1:]:
        ms, me = merged[-1]
        if s <= me + 1: merged[-1][1] = max(me, e)
        else: merged.append([s, e])
    return [(s, e) for s, e in merged]
