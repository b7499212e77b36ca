"""
Resource Guard

Samples process memory and recommends embedding batch sizes.
Advisory only: callers decide whether to shrink, grow or pause.
"""

from __future__ import annotations

import logging
import resource
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Optional

import psutil

from app.core.config import get_settings

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 10
MAX_BATCH_SIZE = 200
GROWTH_STEP = 10
LOW_WATERMARK_RATIO = 0.6


def read_process_memory_mb() -> float:
    """Current resident set size of this process in MB."""
    rss = psutil.Process().memory_info().rss
    return round(rss / (1024 * 1024), 2)


def read_peak_memory_mb() -> float:
    """Highest resident set size this process has reached, in MB."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return round(usage / divisor, 2)


@dataclass(frozen=True)
class MemoryPressure:
    heap_used_mb: float
    pressure: bool
    critical: bool

    @property
    def ok(self) -> bool:
        return not self.pressure and not self.critical

    @property
    def status(self) -> str:
        if self.critical:
            return "critical"
        if self.pressure:
            return "pressure"
        return "ok"


class ResourceGuard:
    def __init__(
        self,
        soft_limit_mb: float = 700,
        hard_limit_mb: float = 900,
        *,
        check_interval_seconds: float = 2.0,
        memory_reader: Optional[Callable[[], float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.soft_limit_mb = soft_limit_mb
        self.hard_limit_mb = hard_limit_mb
        self.check_interval_seconds = check_interval_seconds
        self._read = memory_reader or read_process_memory_mb
        self._clock = clock
        self._last_check: Optional[float] = None

    def check_pressure(self) -> MemoryPressure:
        used = self._read()
        critical = used > self.hard_limit_mb
        return MemoryPressure(
            heap_used_mb=used,
            pressure=not critical and used > self.soft_limit_mb,
            critical=critical,
        )

    def should_pause(self) -> bool:
        now = self._clock()
        if self._last_check is not None and now - self._last_check < self.check_interval_seconds:
            return False
        self._last_check = now

        reading = self.check_pressure()
        if not reading.ok:
            logger.warning(
                "Memory %s: %.1fMB used (soft=%s hard=%s)",
                reading.status,
                reading.heap_used_mb,
                self.soft_limit_mb,
                self.hard_limit_mb,
            )
        return not reading.ok

    def recommended_batch_size(self, current: int) -> int:
        reading = self.check_pressure()
        if reading.critical:
            return max(MIN_BATCH_SIZE, current // 4)
        if reading.pressure:
            return max(MIN_BATCH_SIZE, current // 2)
        if reading.heap_used_mb < self.soft_limit_mb * LOW_WATERMARK_RATIO:
            return min(MAX_BATCH_SIZE, current + GROWTH_STEP)
        return current

    def memory_stats(self) -> dict:
        reading = self.check_pressure()
        return {
            "heap_used_mb": reading.heap_used_mb,
            "rss_mb": read_process_memory_mb(),
            "peak_rss_mb": read_peak_memory_mb(),
            "soft_limit_mb": self.soft_limit_mb,
            "hard_limit_mb": self.hard_limit_mb,
            "status": reading.status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


@lru_cache
def get_resource_guard() -> ResourceGuard:
    settings = get_settings()
    return ResourceGuard(
        settings.memory_soft_limit_mb,
        settings.memory_hard_limit_mb,
        check_interval_seconds=settings.memory_check_interval_seconds,
    )
