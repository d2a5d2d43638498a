from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tenantgate.apps.api.deps import get_services
from tenantgate.services.container import CoreServices


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    audit_buffered: int
    audit_dropped: int


@router.get("/health")
async def health(services: CoreServices = Depends(get_services)) -> HealthResponse:
    # Liveness plus audit backlog so operators notice a stuck flush.
    return HealthResponse(
        status="ok",
        audit_buffered=services.audit.buffered,
        audit_dropped=services.audit.dropped_events,
    )
