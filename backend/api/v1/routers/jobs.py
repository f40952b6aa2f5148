"""
Jobs Router — scheduled job outcomes.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.deps import get_store
from db.store import StoreAdapter

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


class JobRunResponse(BaseModel):
    run_id: str
    job_name: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    duration_seconds: float | None
    summary: dict | None
    error: str | None

    model_config = {"from_attributes": True}


@router.get("/runs", response_model=list[JobRunResponse])
async def list_job_runs(
    job_name: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    store: StoreAdapter = Depends(get_store),
):
    """Recent job runs, newest first."""
    return await store.list_job_runs(job_name=job_name, limit=limit)
