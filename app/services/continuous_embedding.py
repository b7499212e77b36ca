"""
Continuous Embedding Service

APScheduler-driven background loop that keeps embeddings warm with small batches.
A failing tick is logged and swallowed; the interval job keeps firing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import get_settings
from app.models.entity import EntityKind
from app.services.embedding_maintainer import EmbeddingMaintainer, get_embedding_maintainer

logger = logging.getLogger(__name__)

JOB_ID = "continuous-embeddings"


class ContinuousEmbeddingService:
    def __init__(
        self,
        maintainers: List[EmbeddingMaintainer],
        *,
        batch_size: int = 75,
        interval_seconds: float = 60,
    ) -> None:
        self.maintainers = maintainers
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self.tick_count = 0
        self.last_run_at: Optional[str] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.info("Continuous embeddings already running, skipping start")
            return

        self._running = True
        logger.info(
            "Continuous embeddings starting: kinds=%s batch_size=%s interval=%ss",
            [m.kind.value for m in self.maintainers],
            self.batch_size,
            self.interval_seconds,
        )

        await self._tick()
        if not self._running:
            return

        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": int(max(self.interval_seconds, 1)),
            },
        )
        self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="Continuous embedding generation",
            replace_existing=True,
        )
        self._scheduler.start()

    def stop(self) -> None:
        if not self._running:
            logger.info("Continuous embeddings not running, skipping stop")
            return

        self._running = False
        if self._scheduler is not None:
            if self._scheduler.get_job(JOB_ID) is not None:
                self._scheduler.remove_job(JOB_ID)
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.info("Continuous embeddings stopped")

    def job_count(self) -> int:
        if self._scheduler is None:
            return 0
        return len(self._scheduler.get_jobs())

    async def _tick(self) -> None:
        if not self._running:
            return
        self.tick_count += 1
        self.last_run_at = datetime.now(timezone.utc).isoformat()
        errors: List[str] = []
        for maintainer in self.maintainers:
            try:
                outcome = await maintainer.generate_missing_embeddings(self.batch_size)
                if outcome.processed > 0:
                    stats = await maintainer.get_stats()
                    logger.info(
                        "Continuous %s embeddings: processed=%s progress=%s%% (%s/%s)",
                        maintainer.kind.value,
                        outcome.processed,
                        stats.percentage_complete,
                        stats.embedded,
                        stats.total,
                    )
            except Exception as exc:
                errors.append(f"{maintainer.kind.value}: {exc}")
                logger.exception("Continuous %s embedding batch failed", maintainer.kind.value)
        self.last_error = "; ".join(errors) or None

    def get_status(self) -> Dict[str, Any]:
        next_run_time = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run_time = job.next_run_time.isoformat()
        return {
            "running": self._running,
            "kinds": [m.kind.value for m in self.maintainers],
            "batch_size": self.batch_size,
            "interval_seconds": self.interval_seconds,
            "tick_count": self.tick_count,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
            "next_run_time": next_run_time,
        }


_service: Optional[ContinuousEmbeddingService] = None


def get_continuous_embedding_service() -> ContinuousEmbeddingService:
    global _service
    if _service is None:
        settings = get_settings()
        kinds = [EntityKind(kind) for kind in settings.continuous_kinds]
        _service = ContinuousEmbeddingService(
            [get_embedding_maintainer(kind) for kind in kinds],
            batch_size=settings.continuous_embedding_batch_size,
            interval_seconds=settings.continuous_embedding_interval_seconds,
        )
    return _service
