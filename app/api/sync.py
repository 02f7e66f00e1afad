"""Admin sync endpoints: manual trigger, stats, source preview."""

from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from app.api.dependencies import get_sync_service, require_admin
from app.core.config import settings
from app.core.exceptions import SalesforceError, SyncFailedError
from app.services.sync_service import SyncService

router = APIRouter(prefix="/admin", tags=["sync"], dependencies=[Depends(require_admin)])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class RecordErrorResponse(BaseModel):
    external_id: str | None = None
    order_number: str | None = None
    error: str


class SyncResultResponse(BaseModel):
    outcome: str
    success: bool
    skipped: bool
    inserted: int
    updated: int
    errors: int
    total: int
    duration_ms: int
    attempts: int
    error_details: List[RecordErrorResponse] = []
    error: str | None = None
    message: str | None = None


class SyncStatsResponse(BaseModel):
    total_runs: int
    successful_runs: int
    failed_runs: int
    skipped_runs: int
    is_running: bool
    run_started_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_result: Dict[str, Any] | None = None
    next_scheduled_run: datetime | None = None


class SourceOrderResponse(BaseModel):
    external_id: str | None = None
    order_number: str | None = None
    amount: Any = None
    status: str | None = None
    last_modified: datetime | None = None


class SourcePreviewResponse(BaseModel):
    total: int
    orders: List[SourceOrderResponse]


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("/sync", response_model=SyncResultResponse)
async def trigger_sync(sync_service: SyncService = Depends(get_sync_service)):
    """Run a sync now, retrying with backoff on failure."""
    try:
        result = await sync_service.run_sync_with_retry(settings.SYNC_MAX_ATTEMPTS)
    except SyncFailedError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": str(e), "attempts": e.attempts},
        )
    return result.to_dict()


@router.get("/sync/stats", response_model=SyncStatsResponse)
def sync_stats(request: Request, sync_service: SyncService = Depends(get_sync_service)):
    stats = sync_service.get_stats()
    scheduler = getattr(request.app.state, "sync_scheduler", None)
    stats["next_scheduled_run"] = scheduler.next_run_at if scheduler else None
    return stats


@router.get("/sync/source", response_model=SourcePreviewResponse)
async def preview_source(
    limit: int = Query(20, ge=1, le=200),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Snapshot of the external source, for checking connectivity and field mapping."""
    try:
        orders = await sync_service.source.query_all()
    except SalesforceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return SourcePreviewResponse(
        total=len(orders),
        orders=[
            SourceOrderResponse(
                external_id=o.external_id,
                order_number=o.order_number,
                amount=o.amount,
                status=o.status,
                last_modified=o.last_modified,
            )
            for o in orders[:limit]
        ],
    )
