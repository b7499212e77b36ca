from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.entity import EntityKind
from app.models.matching import ResolutionQuery


class GenerateMissingRequest(BaseModel):
    batch_size: int = Field(default=50, ge=1, le=2000)


class SemanticSearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(default=10, ge=1, le=100)


class SearchHit(BaseModel):
    id: str
    key: str
    display_name: str
    similarity: float


class ResolveRequest(BaseModel):
    reference: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    customer_number: Optional[str] = None
    netsuite_id: Optional[str] = None

    def to_query(self, kind: EntityKind) -> ResolutionQuery:
        return ResolutionQuery(
            kind=kind,
            reference=self.reference,
            email=self.email,
            phone=self.phone,
            customer_number=self.customer_number,
            netsuite_id=self.netsuite_id,
        )


class PurchaseOrderLine(ResolveRequest):
    kind: EntityKind


class PurchaseOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = ""
    po_number: str = Field(default="", alias="poNumber")
    lines: List[PurchaseOrderLine] = Field(default_factory=list)


class ResolveResponse(BaseModel):
    result: Dict[str, Any]
    decision: str


class PurchaseOrderResponse(BaseModel):
    po_number: str
    results: List[ResolveResponse]
