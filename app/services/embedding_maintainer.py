"""
Embedding Maintainer

Keeps every entity's vector embedding in sync with its canonical text.
One maintainer per entity kind; the kinds differ only in how the text is built.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional

from app.core.config import Settings, get_settings
from app.core.errors import EntityNotFoundError, PersistenceError
from app.models.embedding import (
    BatchOutcome,
    EmbeddingBacklogStats,
    EmbeddingFailure,
    EmbeddingOutcome,
    EmbeddingSuccess,
)
from app.models.entity import (
    ContactRecord,
    CustomerRecord,
    EntityKind,
    ItemRecord,
    MatchableEntity,
    VectorHit,
    digits_only,
    email_domain,
)
from app.services.embedding_provider import EmbeddingProvider, get_embedding_provider
from app.services.entity_repository import EntityRepository, get_entity_repository
from app.services.resource_guard import ResourceGuard, get_resource_guard

logger = logging.getLogger(__name__)

TEXT_SEPARATOR = " | "

Sleep = Callable[[float], Awaitable[None]]


def join_parts(parts: List[Optional[str]]) -> str:
    return TEXT_SEPARATOR.join(p.strip() for p in parts if p and p.strip())


def flatten_attributes(attributes: Dict[str, object]) -> str:
    pairs = []
    for key in sorted(attributes):
        value = attributes[key]
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value if v not in (None, ""))
        if value in (None, ""):
            continue
        pairs.append(f"{key}:{value}")
    return " ".join(pairs)


class EmbeddingMaintainer(ABC):
    kind: EntityKind

    def __init__(
        self,
        repository: EntityRepository,
        provider: EmbeddingProvider,
        guard: ResourceGuard,
        *,
        pause_every: int = 10,
        pause_seconds: float = 1.0,
        provider_chunk_size: int = 100,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.guard = guard
        self.pause_every = pause_every
        self.pause_seconds = pause_seconds
        self.provider_chunk_size = provider_chunk_size
        self._sleep = sleep

    @abstractmethod
    def build_embedding_text(self, entity: MatchableEntity) -> str:
        ...

    def describe(self, entity: MatchableEntity) -> str:
        return entity.key

    async def embed(self, text: str) -> List[float]:
        return await self.provider.embed(text)

    async def update_embedding(self, entity_id: str) -> EmbeddingSuccess:
        entity = await self.repository.get(self.kind, entity_id)
        if entity is None:
            raise EntityNotFoundError(self.kind.value, entity_id)
        return await self._update(entity)

    async def _update(self, entity: MatchableEntity) -> EmbeddingSuccess:
        text = self.build_embedding_text(entity)
        vector = await self.embed(text)
        await self.repository.save_embedding(self.kind, entity.id, text, vector)
        logger.debug("Updated %s embedding id=%s dims=%s", self.kind.value, entity.id, len(vector))
        return EmbeddingSuccess(entity_id=entity.id, dimensions=len(vector))

    async def generate_missing_embeddings(self, limit: int = 50) -> BatchOutcome:
        """Embed up to ``limit`` rows one at a time; a failing row never stops the batch."""
        pending = await self.repository.list_missing_embeddings(self.kind, limit)
        logger.info("%s embeddings: %s rows without embeddings (limit=%s)", self.kind.value, len(pending), limit)

        outcomes: List[EmbeddingOutcome] = []
        succeeded = 0
        for entity in pending:
            outcome = await self._try_update(entity)
            outcomes.append(outcome)
            if isinstance(outcome, EmbeddingFailure):
                logger.error(outcome.describe())
                continue
            succeeded += 1
            if self.pause_every and succeeded % self.pause_every == 0:
                logger.info("Processed %s/%s, pausing briefly", succeeded, len(pending))
                await self._sleep(self.pause_seconds)

        result = BatchOutcome.from_outcomes(outcomes)
        logger.info(
            "%s embeddings batch complete: processed=%s/%s errors=%s",
            self.kind.value,
            result.processed,
            result.total,
            len(result.errors),
        )
        return result

    async def _try_update(self, entity: MatchableEntity) -> EmbeddingOutcome:
        try:
            return await self._update(entity)
        except PersistenceError:
            raise
        except Exception as exc:
            return EmbeddingFailure(entity_id=entity.id, label=self.describe(entity), error=str(exc))

    async def embed_missing_batch(self, limit: int) -> int:
        """
        Mega-batch path: embed up to ``limit`` rows through multi-input provider calls.

        Provider and persistence errors propagate so the caller can retry the batch.
        Returns the number of rows embedded (0 when the backlog is empty).
        """
        pending = await self.repository.list_missing_embeddings(self.kind, limit)
        if not pending:
            return 0

        texts = [self.build_embedding_text(entity) for entity in pending]
        chunk_size = self.provider_chunk_size
        done = 0
        while done < len(pending):
            if self.guard.should_pause():
                logger.warning("Memory pressure, pausing %s embedding batch", self.kind.value)
                await self._sleep(self.pause_seconds)
            chunk_size = self.guard.recommended_batch_size(chunk_size)
            chunk = pending[done : done + chunk_size]
            vectors = await self.provider.embed_many(texts[done : done + chunk_size])
            for entity, text, vector in zip(chunk, texts[done : done + chunk_size], vectors):
                await self.repository.save_embedding(self.kind, entity.id, text, vector)
            done += len(chunk)
            logger.debug("%s mega-batch progress %s/%s (chunk=%s)", self.kind.value, done, len(pending), chunk_size)

        return done

    async def get_stats(self) -> EmbeddingBacklogStats:
        total = await self.repository.count(self.kind)
        embedded = await self.repository.count_embedded(self.kind)
        return EmbeddingBacklogStats(kind=self.kind, total=total, embedded=embedded)

    async def semantic_search(self, query: str, limit: int = 10) -> List[VectorHit]:
        t0 = time.perf_counter()
        vector = await self.embed(query)
        hits = await self.repository.nearest(self.kind, vector, limit)
        logger.info(
            "%s semantic search hits=%s ms=%s",
            self.kind.value,
            len(hits),
            int((time.perf_counter() - t0) * 1000),
        )
        return hits


class CustomerEmbeddingMaintainer(EmbeddingMaintainer):
    kind = EntityKind.CUSTOMER

    def build_embedding_text(self, entity: CustomerRecord) -> str:
        address = entity.address or {}
        location = " ".join(str(address[k]).strip() for k in ("city", "state") if address.get(k))
        return join_parts(
            [
                entity.customer_number,
                entity.company_name,
                " ".join(a.strip() for a in entity.alternate_names if a and a.strip()),
                email_domain(entity.email),
                location,
                entity.phone_digits or digits_only(entity.phone),
            ]
        )

    def describe(self, entity: CustomerRecord) -> str:
        return f"{entity.company_name} ({entity.customer_number})"


class ContactEmbeddingMaintainer(EmbeddingMaintainer):
    kind = EntityKind.CONTACT

    def build_embedding_text(self, entity: ContactRecord) -> str:
        return join_parts(
            [
                entity.name,
                entity.job_title,
                entity.email,
                email_domain(entity.email),
                entity.phone,
                entity.company,
                entity.netsuite_internal_id,
            ]
        )


class ItemEmbeddingMaintainer(EmbeddingMaintainer):
    kind = EntityKind.ITEM

    def build_embedding_text(self, entity: ItemRecord) -> str:
        makers = [entity.vendor] if entity.vendor else []
        if entity.manufacturer and entity.manufacturer != entity.vendor:
            makers.append(entity.manufacturer)
        return join_parts(
            [
                entity.sku or entity.final_sku,
                entity.display_name,
                entity.description,
                entity.sub_type,
                entity.category,
                "/".join(makers),
                f"UPC:{entity.upc}" if entity.upc else None,
                f"MPN:{entity.mpn}" if entity.mpn else None,
                " ".join(entity.aliases),
                flatten_attributes(entity.attributes or {}),
            ]
        )


MAINTAINER_TYPES = {
    EntityKind.CUSTOMER: CustomerEmbeddingMaintainer,
    EntityKind.CONTACT: ContactEmbeddingMaintainer,
    EntityKind.ITEM: ItemEmbeddingMaintainer,
}


def build_maintainer(
    kind: EntityKind,
    *,
    repository: Optional[EntityRepository] = None,
    provider: Optional[EmbeddingProvider] = None,
    guard: Optional[ResourceGuard] = None,
    settings: Optional[Settings] = None,
) -> EmbeddingMaintainer:
    settings = settings or get_settings()
    return MAINTAINER_TYPES[kind](
        repository or get_entity_repository(),
        provider or get_embedding_provider(),
        guard or get_resource_guard(),
        pause_every=settings.embedding_pause_every,
        pause_seconds=settings.embedding_pause_seconds,
        provider_chunk_size=settings.embedding_provider_chunk_size,
    )


_maintainers: Dict[EntityKind, EmbeddingMaintainer] = {}


def get_embedding_maintainer(kind: EntityKind) -> EmbeddingMaintainer:
    if kind not in _maintainers:
        _maintainers[kind] = build_maintainer(kind)
    return _maintainers[kind]
