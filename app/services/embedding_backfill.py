"""
Embedding Backfill Driver

Drives one maintainer through mega-batches until no entity is left without an embedding.
Provider failures retry the same batch with backoff; exhausting the retries halts the run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from app.core.config import Settings, get_settings
from app.core.errors import BackfillAbortedError, EmbeddingProviderError
from app.models.embedding import BackfillReport
from app.services.embedding_maintainer import EmbeddingMaintainer

logger = logging.getLogger(__name__)


class BackfillDriver:
    def __init__(
        self,
        maintainer: EmbeddingMaintainer,
        *,
        mega_batch_size: int = 2000,
        max_retries: int = 3,
        base_backoff_ms: int = 2000,
        cooldown_ms: int = 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.maintainer = maintainer
        self.mega_batch_size = mega_batch_size
        self.max_retries = max_retries
        self.base_backoff_ms = base_backoff_ms
        self.cooldown_ms = cooldown_ms
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls, maintainer: EmbeddingMaintainer, settings: Optional[Settings] = None
    ) -> "BackfillDriver":
        settings = settings or get_settings()
        return cls(
            maintainer,
            mega_batch_size=settings.embedding_mega_batch_size,
            max_retries=settings.embedding_max_retries,
            base_backoff_ms=settings.embedding_backoff_base_ms,
            cooldown_ms=settings.embedding_cooldown_ms,
        )

    async def run(self) -> BackfillReport:
        kind = self.maintainer.kind
        report = BackfillReport(kind=kind)
        started = self._clock()
        logger.info("Backfill %s: starting (mega_batch=%s)", kind.value, self.mega_batch_size)

        while True:
            report.batches += 1
            processed = await self._run_batch(report.batches)
            report.elapsed_seconds = self._clock() - started

            if processed == 0:
                report.batches -= 1
                logger.info("Backfill %s: backlog exhausted", kind.value)
                break

            report.total_processed += processed
            report.last_batch_size = processed
            logger.info(
                "Backfill %s: batch=%s processed=%s total=%s elapsed=%.1fs rate=%.1f/s",
                kind.value,
                report.batches,
                processed,
                report.total_processed,
                report.elapsed_seconds,
                report.throughput,
            )

            if self.cooldown_ms > 0:
                await self._sleep(self.cooldown_ms / 1000)

        report.elapsed_seconds = self._clock() - started
        logger.info(
            "Backfill %s complete: total=%s batches=%s elapsed=%.1fs rate=%.1f/s",
            kind.value,
            report.total_processed,
            report.batches,
            report.elapsed_seconds,
            report.throughput,
        )
        return report

    async def _run_batch(self, batch_number: int) -> int:
        """One mega-batch; up to ``max_retries`` retries after the first attempt."""
        attempt = 0
        while True:
            try:
                return await self.maintainer.embed_missing_batch(self.mega_batch_size)
            except EmbeddingProviderError as exc:
                attempt += 1
                logger.warning(
                    "Backfill %s batch %s failed (retry %s/%s): %s",
                    self.maintainer.kind.value,
                    batch_number,
                    attempt,
                    self.max_retries,
                    exc,
                )
                if attempt > self.max_retries:
                    raise BackfillAbortedError(
                        f"{self.maintainer.kind.value} backfill halted after {attempt} failed attempts",
                        attempts=attempt,
                        last_error=exc,
                    ) from exc
                backoff_ms = attempt * self.base_backoff_ms
                logger.info("Retrying in %sms", backoff_ms)
                await self._sleep(backoff_ms / 1000)
