# chainmetrics/ports/storage.py
from __future__ import annotations

from typing import Protocol
from ..domain.models import ChunkRec


class ManifestSink(Protocol):
    """Port for appending range/chunk status records (e.g., JSONL manifest)."""

    async def append(self, rec: ChunkRec) -> None:
        """Append a manifest record atomically (callers handle ordering/locking)."""
