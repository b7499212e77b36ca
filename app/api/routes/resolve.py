from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.errors import to_http_exception
from app.core.errors import ResolutionServiceError
from app.models.api import PurchaseOrderRequest, PurchaseOrderResponse, ResolveRequest, ResolveResponse
from app.models.entity import EntityKind
from app.models.matching import MatchResult
from app.services.hybrid_resolver import HybridResolver, get_hybrid_resolver

router = APIRouter(prefix="/resolve", tags=["resolve"])


def _response(resolver: HybridResolver, result: MatchResult) -> ResolveResponse:
    return ResolveResponse(
        result=result.to_dict(resolver.policy),
        decision=result.decision(resolver.policy).value,
    )


@router.post("/purchase-order", response_model=PurchaseOrderResponse)
async def resolve_purchase_order(
    body: PurchaseOrderRequest,
    resolver: HybridResolver = Depends(get_hybrid_resolver),
) -> PurchaseOrderResponse:
    """Resolve every line of one purchase order. 409 while another order is in flight."""
    queries = [line.to_query(line.kind) for line in body.lines]
    try:
        results = await resolver.resolve_purchase_order(
            queries, email=body.email, po_number=body.po_number
        )
    except ResolutionServiceError as exc:
        raise to_http_exception(exc) from exc
    return PurchaseOrderResponse(
        po_number=body.po_number,
        results=[_response(resolver, result) for result in results],
    )


@router.post("/{kind}", response_model=ResolveResponse)
async def resolve_reference(
    kind: EntityKind,
    body: ResolveRequest,
    resolver: HybridResolver = Depends(get_hybrid_resolver),
) -> ResolveResponse:
    try:
        result = await resolver.resolve(body.to_query(kind))
    except ResolutionServiceError as exc:
        raise to_http_exception(exc) from exc
    return _response(resolver, result)
