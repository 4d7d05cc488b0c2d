"""Sync logs, per-project status and health reporting"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from leadsync.config import settings
from leadsync.models import QueueStatus, SyncLog, SyncQueueItem, SyncStatus
from leadsync.models.base import utcnow

logger = logging.getLogger(__name__)


def cap_errors(errors: List[Any], limit: int) -> List[Any]:
    """Keep the most recent `limit` error samples."""
    if limit <= 0:
        return []
    return list(errors[-limit:])


def queue_counts(db: Session) -> Dict[str, int]:
    """Number of queue items per status (every status present, zero if none)."""
    counts = {status.value: 0 for status in QueueStatus}
    rows = (
        db.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
        .group_by(SyncQueueItem.status)
        .all()
    )
    for status, count in rows:
        counts[status] = count
    return counts


class SyncRecorder:
    """Writes SyncLog rows and keeps the SyncStatus summary current"""

    def __init__(self, db: Session, config=None):
        self.db = db
        self.config = config or settings

    def start_run(self, direction: str, metadata: Optional[Dict[str, Any]] = None) -> SyncLog:
        log = SyncLog(
            started_at=utcnow(),
            sync_direction=direction,
            records_synced=0,
            records_failed=0,
            run_metadata=dict(metadata or {}),
        )
        self.db.add(log)
        self.db.commit()
        self.db.refresh(log)
        return log

    def finish_run(
        self,
        log: SyncLog,
        *,
        synced: int,
        failed: int,
        errors: Optional[List[Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncLog:
        """Finalize a run. A finished log is never touched again."""
        if log.completed_at is not None:
            raise ValueError(f"Sync log {log.id} is already finalized")

        completed_at = utcnow()
        log.completed_at = completed_at
        log.records_synced = synced
        log.records_failed = failed
        log.processing_time_ms = int((completed_at - log.started_at).total_seconds() * 1000)
        samples = cap_errors(errors or [], self.config.error_sample_limit)
        log.errors = samples or None
        if metadata:
            merged = dict(log.run_metadata or {})
            merged.update(metadata)
            log.run_metadata = merged
        self.db.commit()
        return log

    def update_status(
        self,
        *,
        success: bool,
        total_records: int,
        last_error: Optional[str] = None,
        project_name: Optional[str] = None,
    ) -> SyncStatus:
        """Upsert the summary row for a remote project."""
        name = project_name or self.config.remote_project_name
        row = self.db.query(SyncStatus).filter(SyncStatus.project_name == name).first()
        if row is None:
            row = SyncStatus(project_name=name)
            self.db.add(row)

        now = utcnow()
        row.last_sync_at = now
        row.last_sync_success = success
        row.total_records = total_records
        # Keep the last known error until a run succeeds.
        if success:
            row.last_error = None
        elif last_error:
            row.last_error = last_error
        row.updated_at = now
        self.db.commit()
        return row


def build_health_report(db: Session, remote_client=None, config=None) -> Dict[str, Any]:
    """Summarize partner reachability, queue backlog and the last run.

    Status is "healthy", "degraded" or "down", with human-readable
    recommendations for the operator.
    """
    config = config or settings
    report: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "remote": {"project_name": config.remote_project_name, "reachable": False, "latency_ms": None},
        "sync_queue": {},
        "last_sync": None,
        "recommendations": [],
    }

    def _degrade(to: str = "degraded"):
        if report["status"] == "healthy" or to == "down":
            report["status"] = to

    # 1. Partner connectivity
    if remote_client is None:
        report["remote"]["error"] = "Remote base URL is not configured"
        report["recommendations"].append("Configure REMOTE_BASE_URL and REMOTE_API_KEY")
        _degrade()
    else:
        try:
            report["remote"]["latency_ms"] = round(remote_client.ping(), 1)
            report["remote"]["reachable"] = True
        except Exception as e:
            report["remote"]["error"] = str(e)
            report["recommendations"].append(
                f"{config.remote_project_name} is unreachable; check the URL and credentials"
            )
            _degrade("down")

    # 2. Queue backlog
    counts = queue_counts(db)
    oldest_pending = (
        db.query(func.min(SyncQueueItem.created_at))
        .filter(SyncQueueItem.status == QueueStatus.PENDING.value)
        .scalar()
    )
    stale_before = utcnow() - timedelta(minutes=config.stale_claim_minutes)
    stuck = (
        db.query(SyncQueueItem)
        .filter(
            SyncQueueItem.status == QueueStatus.PROCESSING.value,
            SyncQueueItem.claimed_at < stale_before,
        )
        .count()
    )
    report["sync_queue"] = {
        **counts,
        "stuck": stuck,
        "oldest_pending": oldest_pending.isoformat() if oldest_pending else None,
    }
    if oldest_pending is not None and utcnow() - oldest_pending > timedelta(minutes=5):
        report["recommendations"].append(
            f"{counts['pending']} item(s) pending for more than 5 minutes; check auto-processing"
        )
        _degrade()
    if counts[QueueStatus.FAILED.value]:
        report["recommendations"].append(
            f"{counts['failed']} item(s) failed permanently; inspect last_error and retry"
        )
        _degrade()
    if stuck:
        report["recommendations"].append(f"{stuck} item(s) stuck in processing; reset stuck jobs")
        _degrade()

    # 3. Last run
    status_row = (
        db.query(SyncStatus).filter(SyncStatus.project_name == config.remote_project_name).first()
    )
    if status_row is not None:
        report["last_sync"] = {
            "timestamp": status_row.last_sync_at.isoformat() if status_row.last_sync_at else None,
            "success": status_row.last_sync_success,
            "records": status_row.total_records,
            "last_error": status_row.last_error,
        }
        if status_row.last_sync_success is False:
            report["recommendations"].append("Last sync run reported failures")
            _degrade()

    return report
