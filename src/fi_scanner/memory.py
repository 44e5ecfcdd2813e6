"""
Resident memory sampling for the job runner's circuit breaker.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import psutil


def process_rss_bytes() -> int:
    """Resident set size of the current process."""
    return psutil.Process().memory_info().rss


@dataclass
class MemoryGuard:
    """
    Compares sampled RSS with a fixed ceiling.

    ``sampler`` is injectable so tests can simulate memory pressure.
    """

    ceiling_bytes: int
    sampler: Callable[[], int] = process_rss_bytes

    def sample(self) -> int:
        return self.sampler()

    def exceeded(self) -> tuple[bool, int]:
        rss = self.sample()
        return rss > self.ceiling_bytes, rss
