from fastapi import APIRouter, Depends, HTTPException

from playground.routes_shared import get_orchestrator
from playground.services.orchestrator import StreamingOrchestrator
from playground.utils import require_authenticated_user

router = APIRouter(prefix="/api/generations", tags=["generations"])


@router.get("/{generation_id}")
async def generation_status(
    generation_id: str,
    user=Depends(require_authenticated_user),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
):
    gen = orchestrator.registry.get(generation_id)
    if not gen or gen.owner_id != user.id:
        raise HTTPException(status_code=404, detail="Generation not found")
    return {"id": gen.id, "operation": gen.operation, "state": gen.state.value, "error": gen.error}


@router.post("/{generation_id}/cancel")
async def cancel_generation(
    generation_id: str,
    user=Depends(require_authenticated_user),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
):
    gen = orchestrator.registry.get(generation_id)
    if not gen or gen.owner_id != user.id:
        raise HTTPException(status_code=404, detail="Generation not found")
    if not orchestrator.cancel(generation_id):
        raise HTTPException(status_code=409, detail="Generation is already finalizing and can no longer be cancelled")
    return {"cancelled": True}


__all__ = ["router"]
