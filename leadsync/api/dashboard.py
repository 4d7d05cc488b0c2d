"""Dashboard and statistics endpoints"""

from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from leadsync.models import Lead, SyncLog, SyncStatus
from leadsync.models.base import get_db, utcnow
from leadsync.services.observability import queue_counts
from leadsync.services.queue_processor import get_auto_process_enabled

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/stats")
def get_dashboard_stats(db: Session = Depends(get_db)):
    """Get dashboard statistics"""
    # Leads by propagation state
    total_leads = db.query(Lead).count()
    leads_by_status = {
        status: count
        for status, count in db.query(Lead.sync_status, func.count(Lead.id))
        .group_by(Lead.sync_status)
        .all()
    }

    # Recent run activity (last 24 hours)
    last_24h = utcnow() - timedelta(hours=24)
    recent = db.query(SyncLog).filter(SyncLog.started_at >= last_24h)
    recent_runs = recent.count()
    recent_failures = recent.filter(SyncLog.records_failed > 0).count()
    records_synced = (
        db.query(func.coalesce(func.sum(SyncLog.records_synced), 0))
        .filter(SyncLog.started_at >= last_24h)
        .scalar()
    )

    projects = []
    for row in db.query(SyncStatus).order_by(SyncStatus.project_name).all():
        projects.append(
            {
                "project_name": row.project_name,
                "last_sync_at": row.last_sync_at,
                "last_sync_success": row.last_sync_success,
                "total_records": row.total_records,
                "last_error": row.last_error,
            }
        )

    return {
        "total_leads": total_leads,
        "leads_by_status": leads_by_status,
        "sync_queue": queue_counts(db),
        "auto_process_enabled": get_auto_process_enabled(db),
        "recent_runs": recent_runs,
        "recent_failures": recent_failures,
        "recent_records_synced": records_synced,
        "projects": projects,
    }


@router.get("/activity")
def get_recent_activity(limit: int = 50, db: Session = Depends(get_db)):
    """Get recent sync activity"""
    logs = db.query(SyncLog).order_by(desc(SyncLog.started_at), desc(SyncLog.id)).limit(limit).all()

    activity = []
    for log in logs:
        activity.append(
            {
                "id": log.id,
                "direction": log.sync_direction,
                "started_at": log.started_at,
                "completed_at": log.completed_at,
                "running": log.is_running,
                "records_synced": log.records_synced,
                "records_failed": log.records_failed,
                "processing_time_ms": log.processing_time_ms,
                "metadata": log.run_metadata,
            }
        )

    return activity
