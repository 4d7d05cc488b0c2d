"""Sync management endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from leadsync.config import settings
from leadsync.models import QueueStatus, SyncLog, SyncQueueItem, SyncStatus
from leadsync.models.base import get_db
from leadsync.services.observability import build_health_report
from leadsync.services.queue_processor import (
    QueueProcessor,
    get_auto_process_enabled,
    set_auto_process_enabled,
)
from leadsync.services.reconciler import ReconcileMode, Reconciler
from leadsync.services.remote_client import build_remote_client

router = APIRouter(prefix="/api/sync", tags=["sync"])


def get_remote_client():
    """Partner client for the request, or None when no base URL is configured"""
    if not settings.remote_base_url:
        yield None
        return
    client = build_remote_client()
    try:
        yield client
    finally:
        client.close()


def _require_remote(remote):
    if remote is None:
        raise HTTPException(status_code=400, detail="Remote base URL is not configured")
    return remote


class TriggerRequest(BaseModel):
    mode: ReconcileMode = ReconcileMode.FULL


class ProcessQueueRequest(BaseModel):
    batch_size: Optional[int] = None


class AutoProcessUpdate(BaseModel):
    enabled: bool


class SyncQueueItemResponse(BaseModel):
    id: int
    entity_id: str
    operation: str
    sync_direction: str
    status: str
    retry_count: int
    last_error: Optional[str] = None
    created_at: datetime
    claimed_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncLogResponse(BaseModel):
    id: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    sync_direction: str
    records_synced: int
    records_failed: int
    processing_time_ms: Optional[int] = None
    errors: Optional[List[Any]] = None
    run_metadata: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class SyncStatusResponse(BaseModel):
    project_name: str
    last_sync_at: Optional[datetime] = None
    last_sync_success: Optional[bool] = None
    total_records: int
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.post("/trigger")
def trigger_sync(
    request: Optional[TriggerRequest] = None,
    db: Session = Depends(get_db),
    remote=Depends(get_remote_client),
):
    """Run one reconciliation pass in the requested mode"""
    remote = _require_remote(remote)
    mode = request.mode if request else ReconcileMode.FULL
    try:
        result = Reconciler(db, remote).reconcile(mode)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return result.to_dict()


@router.post("/process-queue")
def process_queue(
    request: Optional[ProcessQueueRequest] = None,
    db: Session = Depends(get_db),
    remote=Depends(get_remote_client),
):
    """Process one batch of the outbound queue"""
    remote = _require_remote(remote)
    batch_size = request.batch_size if request else None
    if batch_size is not None and batch_size < 1:
        raise HTTPException(status_code=400, detail="batch_size must be positive")
    try:
        result = QueueProcessor(db, remote).process_queue(batch_size)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return result.to_dict()


@router.post("/reset-stuck-jobs")
def reset_stuck_jobs(older_than_minutes: Optional[int] = None, db: Session = Depends(get_db)):
    """Return items stuck in processing to pending"""
    reset = QueueProcessor(db).reset_stuck_jobs(older_than_minutes)
    return {"reset": reset}


@router.post("/retry-failed")
def retry_failed(entity_id: Optional[str] = None, db: Session = Depends(get_db)):
    """Requeue permanently failed items"""
    requeued = QueueProcessor(db).retry_failed(entity_id)
    return {"requeued": requeued}


@router.get("/queue")
def get_queue(
    status: Optional[QueueStatus] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """Queue counts per status plus the most recent items"""
    query = db.query(SyncQueueItem).order_by(SyncQueueItem.created_at.desc())
    if status is not None:
        query = query.filter(SyncQueueItem.status == status.value)
    items = query.limit(limit).all()
    return {
        "counts": QueueProcessor(db).queue_counts(),
        "items": [SyncQueueItemResponse.model_validate(item) for item in items],
    }


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    limit: int = 100,
    direction: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """List sync logs"""
    query = db.query(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
    if direction:
        query = query.filter(SyncLog.sync_direction == direction)
    logs = query.limit(limit).all()
    return logs


@router.get("/status", response_model=List[SyncStatusResponse])
def list_sync_status(db: Session = Depends(get_db)):
    """Per-project sync summary"""
    return db.query(SyncStatus).order_by(SyncStatus.project_name).all()


@router.get("/auto-process")
def get_auto_process(db: Session = Depends(get_db)):
    """Current auto-processing flag"""
    return {
        "enabled": get_auto_process_enabled(db),
        "interval_seconds": settings.auto_process_interval_seconds,
    }


@router.put("/auto-process")
def update_auto_process(update: AutoProcessUpdate, db: Session = Depends(get_db)):
    """Turn auto-processing on or off (persisted across restarts)"""
    enabled = set_auto_process_enabled(db, update.enabled)
    return {
        "enabled": enabled,
        "interval_seconds": settings.auto_process_interval_seconds,
    }


@router.get("/health")
def sync_health(db: Session = Depends(get_db), remote=Depends(get_remote_client)):
    """Partner reachability, queue backlog and last-run summary"""
    return build_health_report(db, remote)
