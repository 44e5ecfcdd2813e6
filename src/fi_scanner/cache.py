"""
Classification Result Cache
===========================

A bounded, thread-safe memo of cascade outcomes keyed on the document name,
target category and the leading characters of its extracted text. Eviction is
first-in-first-out: the oldest insertion goes first, regardless of how often
it was read.
"""

from __future__ import annotations

import hashlib
import threading
from collections import OrderedDict

import structlog

from .models import ClassificationResult

log = structlog.get_logger(__name__)


def cache_key(file_name: str, category: str, text: str, prefix_chars: int) -> str:
    """Stable digest over (file name, category, text prefix)."""
    material = f"{file_name}|{category.strip().lower()}|{text[:prefix_chars]}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class ResultCache:
    """Fixed-capacity FIFO map from cache key to classification result."""

    def __init__(self, capacity: int = 1000, prefix_chars: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.prefix_chars = prefix_chars
        self._entries: OrderedDict[str, ClassificationResult] = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._saves = 0
        self._evictions = 0

    def key_for(self, file_name: str, category: str, text: str) -> str:
        return cache_key(file_name, category, text, self.prefix_chars)

    def get(self, key: str) -> ClassificationResult | None:
        with self._lock:
            result = self._entries.get(key)
            if result is None:
                self._misses += 1
                return None
            self._hits += 1
            return result

    def put(self, key: str, result: ClassificationResult) -> None:
        with self._lock:
            if key in self._entries:
                # Overwrites keep their original insertion slot.
                self._entries[key] = result
                return
            while len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                log.debug("Evicted cache entry", key=evicted[:12])
            self._entries[key] = result
            self._saves += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._saves = 0
            self._evictions = 0

    def stats(self) -> dict:
        """Return hit/miss counters, current size and hit rate."""
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "saves": self._saves,
                "evictions": self._evictions,
                "size": len(self._entries),
                "capacity": self.capacity,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }
