from fastapi import APIRouter, Depends

from app.models.processing import ProcessingStatus
from app.services.processing_gate import ProcessingGate, get_processing_gate

router = APIRouter(prefix="/processing", tags=["processing"])


@router.get("/status", response_model=ProcessingStatus, response_model_by_alias=True)
def read_processing_status(gate: ProcessingGate = Depends(get_processing_gate)) -> ProcessingStatus:
    """Snapshot of the purchase order currently being resolved, if any."""
    return gate.get_status()
