"""
Exact lookup cache

Bounded, time-limited memo of exact-key lookups against the master tables.
Entries expire after the TTL; once the size limit is reached the least
recently used entry is evicted.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from app.models.entity import EntityKind, ExactHit, normalize_text

logger = logging.getLogger(__name__)


@dataclass
class CachedLookup:
    hits: List[ExactHit]
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class ExactLookupCache:
    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], CachedLookup]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(kind: EntityKind, value: str) -> Tuple[str, str]:
        # Values equal under normalize_text resolve to the same rows
        return kind.value, normalize_text(value)

    def get(self, kind: EntityKind, value: str) -> Optional[List[ExactHit]]:
        key = self._key(kind, value)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if not entry.is_valid(self._clock()):
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return list(entry.hits)

    def put(self, kind: EntityKind, value: str, hits: List[ExactHit]) -> None:
        key = self._key(kind, value)
        self._entries[key] = CachedLookup(hits=list(hits), expires_at=self._clock() + self.ttl_seconds)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Exact lookup cache full, evicted %s", evicted)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, int]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}
