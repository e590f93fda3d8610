"""
Health and info endpoints
"""

from fastapi import APIRouter, HTTPException, Request

from media_processor.models.responses import HealthResponse, InfoResponse

router = APIRouter(tags=["health"])


def _coordinator(request: Request):
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Worker not initialised")
    return coordinator


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Liveness, queue connectivity and per-class admission state
    """
    return HealthResponse(**_coordinator(request).health())


@router.get("/info", response_model=InfoResponse)
async def info(request: Request):
    """
    Static deployment metadata
    """
    return InfoResponse(**_coordinator(request).info())
