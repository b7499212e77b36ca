from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ProcessingStatus(BaseModel):
    """Snapshot of the purchase-order resolution pipeline"""

    model_config = ConfigDict(populate_by_name=True)

    is_processing: bool = Field(False, alias="isProcessing")
    current_step: str = Field("idle", alias="currentStep")
    current_email: str = Field("", alias="currentEmail")
    current_po: str = Field("", alias="currentPO")
    item_index: int = Field(0, alias="itemIndex")
    item_total: int = Field(0, alias="itemTotal")


class MemoryStatsResponse(BaseModel):
    heap_used_mb: float = Field(..., alias="heapUsedMB")
    rss_mb: float = Field(..., alias="rssMB")
    peak_rss_mb: float = Field(..., alias="peakRssMB")
    soft_limit_mb: float = Field(..., alias="softLimitMB")
    hard_limit_mb: float = Field(..., alias="hardLimitMB")
    status: str
    timestamp: str

    model_config = ConfigDict(populate_by_name=True)
