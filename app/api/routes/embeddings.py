"""
Embedding maintenance endpoints

Backlog stats, on-demand batches, single-row regeneration, semantic search,
and control of the continuous background scheduler.
"""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from app.api.errors import to_http_exception
from app.core.errors import ResolutionServiceError
from app.models.api import GenerateMissingRequest, SearchHit, SemanticSearchRequest
from app.models.entity import EntityKind
from app.services.continuous_embedding import (
    ContinuousEmbeddingService,
    get_continuous_embedding_service,
)
from app.services.embedding_maintainer import EmbeddingMaintainer, get_embedding_maintainer

router = APIRouter(prefix="/embeddings", tags=["embeddings"])


def get_maintainer(kind: EntityKind) -> EmbeddingMaintainer:
    return get_embedding_maintainer(kind)


# =============================================================================
# Continuous scheduler
# =============================================================================

@router.get("/continuous/status")
def read_continuous_status(
    service: ContinuousEmbeddingService = Depends(get_continuous_embedding_service),
) -> Dict[str, Any]:
    return service.get_status()


@router.post("/continuous/start")
async def start_continuous(
    service: ContinuousEmbeddingService = Depends(get_continuous_embedding_service),
) -> Dict[str, Any]:
    await service.start()
    return service.get_status()


@router.post("/continuous/stop")
def stop_continuous(
    service: ContinuousEmbeddingService = Depends(get_continuous_embedding_service),
) -> Dict[str, Any]:
    service.stop()
    return service.get_status()


# =============================================================================
# Per-kind maintenance
# =============================================================================

@router.get("/{kind}/stats")
async def read_stats(maintainer: EmbeddingMaintainer = Depends(get_maintainer)) -> Dict[str, Any]:
    try:
        stats = await maintainer.get_stats()
    except ResolutionServiceError as exc:
        raise to_http_exception(exc) from exc
    return stats.to_dict()


@router.post("/{kind}/generate-missing")
async def generate_missing(
    body: GenerateMissingRequest,
    maintainer: EmbeddingMaintainer = Depends(get_maintainer),
) -> Dict[str, Any]:
    try:
        outcome = await maintainer.generate_missing_embeddings(body.batch_size)
        stats = await maintainer.get_stats()
    except ResolutionServiceError as exc:
        raise to_http_exception(exc) from exc
    return {
        "processed": outcome.processed,
        "total": outcome.total,
        "errors": outcome.errors,
        "stats": stats.to_dict(),
    }


@router.post("/{kind}/{entity_id}/regenerate")
async def regenerate(
    entity_id: str,
    maintainer: EmbeddingMaintainer = Depends(get_maintainer),
) -> Dict[str, Any]:
    try:
        result = await maintainer.update_embedding(entity_id)
    except ResolutionServiceError as exc:
        raise to_http_exception(exc) from exc
    return {"id": result.entity_id, "dimensions": result.dimensions, "success": True}


@router.post("/{kind}/search", response_model=List[SearchHit])
async def semantic_search(
    body: SemanticSearchRequest,
    maintainer: EmbeddingMaintainer = Depends(get_maintainer),
) -> List[SearchHit]:
    try:
        hits = await maintainer.semantic_search(body.query, body.limit)
    except ResolutionServiceError as exc:
        raise to_http_exception(exc) from exc
    return [
        SearchHit(
            id=hit.entity.id,
            key=hit.entity.key,
            display_name=hit.entity.display_name,
            similarity=round(hit.similarity, 4),
        )
        for hit in hits
    ]
