"""
Cell inspector and health
=========================

GET /api/v1/cells?lat&lng&step -- canonical, id and the 8 neighbours of a point
GET /api/v1/health             -- simple health check
"""

from fastapi import APIRouter, Query, Request

from ridecells.api.middleware import DEFAULT_RATE, limiter
from ridecells.api.schemas import CellResponse, HealthResponse
from ridecells.config import settings
from ridecells.domain import geocell

router = APIRouter(tags=["cells"])


@router.get(
    "/cells",
    response_model=CellResponse,
    summary="Describe the cell containing a point",
)
@limiter.limit(DEFAULT_RATE)
async def describe_cell(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    step: int = Query(settings.cell_step_seconds, gt=0, le=3600),
):
    return geocell.describe_cell(lat, lng, step)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
