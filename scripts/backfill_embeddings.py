"""
Embedding backfill for customers, contacts and items.

Runs mega-batches until every row of the selected kinds has an embedding.
Exits non-zero when a batch keeps failing after all retries.

    python -m scripts.backfill_embeddings --kind item
    python -m scripts.backfill_embeddings --kind all --mega-batch-size 500
    python -m scripts.backfill_embeddings --stats-only
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List

from app.core.config import get_settings
from app.core.errors import BackfillAbortedError, PersistenceError
from app.models.entity import EntityKind
from app.services.embedding_backfill import BackfillDriver
from app.services.embedding_maintainer import get_embedding_maintainer

LOGGER = logging.getLogger(__name__)


def _kinds(value: str) -> List[EntityKind]:
    if value == "all":
        return list(EntityKind)
    return [EntityKind(value)]


async def backfill(kinds: List[EntityKind], mega_batch_size: int | None = None, stats_only: bool = False) -> int:
    settings = get_settings()
    for kind in kinds:
        maintainer = get_embedding_maintainer(kind)
        stats = await maintainer.get_stats()
        LOGGER.info(
            "%s embeddings: %s/%s embedded (%s%%), %s pending",
            kind.value,
            stats.embedded,
            stats.total,
            stats.percentage_complete,
            stats.pending,
        )
        if stats_only or stats.pending == 0:
            continue

        driver = BackfillDriver.from_settings(maintainer, settings)
        if mega_batch_size:
            driver.mega_batch_size = mega_batch_size
        try:
            report = await driver.run()
        except (BackfillAbortedError, PersistenceError) as exc:
            LOGGER.error("%s backfill stopped: %s", kind.value, exc)
            return 1
        LOGGER.info(
            "%s backfill done: %s rows in %s batches (%.1fs, %.1f rows/s)",
            kind.value,
            report.total_processed,
            report.batches,
            report.elapsed_seconds,
            report.throughput,
        )
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate missing embeddings in mega-batches.")
    parser.add_argument(
        "--kind",
        choices=[k.value for k in EntityKind] + ["all"],
        default="all",
        help="entity kind to backfill (default: all)",
    )
    parser.add_argument("--mega-batch-size", type=int, default=None, help="rows fetched per batch")
    parser.add_argument("--stats-only", action="store_true", help="print backlog stats and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=get_settings().log_level, format="%(asctime)s %(levelname)s %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    return asyncio.run(backfill(_kinds(args.kind), args.mega_batch_size, args.stats_only))


if __name__ == "__main__":
    sys.exit(main())
