from fastapi import APIRouter, Depends

from app.models.processing import MemoryStatsResponse
from app.services.resource_guard import ResourceGuard, get_resource_guard

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/memory", response_model=MemoryStatsResponse, response_model_by_alias=True)
def read_memory(guard: ResourceGuard = Depends(get_resource_guard)) -> MemoryStatsResponse:
    return MemoryStatsResponse(**guard.memory_stats())
