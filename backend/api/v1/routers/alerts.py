"""
Alerts Router — overutilization alert history.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.deps import get_store
from db.store import StoreAdapter

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    alert_id: UUID
    machine_id: str
    sample_id: UUID
    cycle_id: UUID
    utilization: float
    location: str | None
    created_at: datetime
    last_notified_at: datetime | None
    resolved_at: datetime | None
    resolution_reason: str | None
    is_open: bool

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[AlertResponse])
async def list_alerts(
    machine_id: str | None = None,
    open_only: bool = Query(False, alias="open"),
    limit: int = Query(50, ge=1, le=500),
    store: StoreAdapter = Depends(get_store),
):
    """List alerts, newest first. `open=true` limits to unresolved alerts."""
    return await store.list_alerts(machine_id=machine_id, open_only=open_only, limit=limit)
