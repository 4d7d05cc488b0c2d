"""Batch runner for the outbound sync queue"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from leadsync.config import settings
from leadsync.models import QueueStatus, SyncDirection, SyncQueueItem, SyncSetting
from leadsync.models.base import utcnow
from leadsync.models.sync_setting import AUTO_PROCESS_ENABLED
from leadsync.services.dispatcher import Dispatcher
from leadsync.services.observability import SyncRecorder, queue_counts
from leadsync.services.remote_client import RemoteClient

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Aggregate outcome of one process_queue run"""

    succeeded: int = 0
    failed: int = 0
    retried: int = 0  # subset of `failed` returned to pending
    failed_permanently: int = 0  # subset of `failed` now in status failed
    claimed: int = 0
    processed: int = 0
    deadline_exceeded: bool = False
    processing_time_ms: int = 0
    log_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QueueProcessor:
    """Claims pending queue items and hands them to the Dispatcher"""

    def __init__(
        self,
        db: Session,
        remote: Optional[RemoteClient] = None,
        *,
        dispatcher: Optional[Dispatcher] = None,
        deadline_seconds: Optional[int] = None,
        config=None,
    ):
        self.db = db
        self.config = config or settings
        self.remote = remote
        if dispatcher is None and remote is not None:
            dispatcher = Dispatcher(db, remote, config=self.config)
        self.dispatcher = dispatcher
        self.deadline_seconds = (
            self.config.batch_deadline_seconds if deadline_seconds is None else deadline_seconds
        )
        self.recorder = SyncRecorder(db, self.config)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------
    def _candidate_items(self, batch_size: int) -> List[SyncQueueItem]:
        now = utcnow()
        busy_entities = select(SyncQueueItem.entity_id).where(
            SyncQueueItem.status == QueueStatus.PROCESSING.value
        )
        return (
            self.db.query(SyncQueueItem)
            .filter(
                SyncQueueItem.status == QueueStatus.PENDING.value,
                or_(SyncQueueItem.next_attempt_at.is_(None), SyncQueueItem.next_attempt_at <= now),
                SyncQueueItem.entity_id.notin_(busy_entities),
            )
            .order_by(SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
            .limit(batch_size)
            .all()
        )

    def claim_batch(self, batch_size: int) -> List[SyncQueueItem]:
        """Atomically move up to `batch_size` pending items to processing.

        Each claim is a conditional `pending -> processing` update; an item
        another runner claimed first matches zero rows and is skipped.
        """
        claimed_ids: List[int] = []
        for item in self._candidate_items(batch_size):
            if SyncQueueItem.transition(
                self.db,
                item.id,
                QueueStatus.PENDING,
                QueueStatus.PROCESSING,
                claimed_at=utcnow(),
            ):
                claimed_ids.append(item.id)
        self.db.commit()

        if not claimed_ids:
            return []
        return (
            self.db.query(SyncQueueItem)
            .filter(SyncQueueItem.id.in_(claimed_ids))
            .populate_existing()
            .order_by(SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
            .all()
        )

    # ------------------------------------------------------------------
    # Batch run
    # ------------------------------------------------------------------
    def process_queue(self, batch_size: Optional[int] = None) -> BatchResult:
        """Drain up to `batch_size` eligible items, oldest first."""
        if self.dispatcher is None:
            raise ValueError("Remote base URL is not configured; cannot process the sync queue")

        batch_size = batch_size or self.config.batch_size
        started = time.monotonic()
        result = BatchResult()

        items = self.claim_batch(batch_size)
        result.claimed = len(items)
        if not items:
            logger.info("No pending sync queue items to process")
            return result

        logger.info(f"Processing {len(items)} sync queue item(s)")
        log = self.recorder.start_run(
            SyncDirection.TO_REMOTE.value,
            {"mode": "queue", "batch_size": batch_size, "claimed": len(items)},
        )
        errors: List[Dict[str, Any]] = []
        deadline = started + self.deadline_seconds if self.deadline_seconds else None

        # Items arrive oldest first, so same-entity items keep their order and
        # are dispatched one after another.
        for item in items:
            if deadline is not None and time.monotonic() >= deadline:
                result.deadline_exceeded = True
                logger.warning(
                    f"Batch deadline of {self.deadline_seconds}s reached; "
                    f"{len(items) - result.processed} claimed item(s) left in processing"
                )
                break

            outcome = self.dispatcher.dispatch(item)
            result.processed += 1
            if outcome.ok:
                result.succeeded += 1
                continue

            result.failed += 1
            if outcome.status == QueueStatus.PENDING:
                result.retried += 1
            else:
                result.failed_permanently += 1
            errors.append(
                {"item_id": outcome.item_id, "entity_id": outcome.entity_id, "error": outcome.error}
            )

        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        self.recorder.finish_run(
            log,
            synced=result.succeeded,
            failed=result.failed,
            errors=errors,
            metadata={
                "retried": result.retried,
                "failed_permanently": result.failed_permanently,
                "deadline_exceeded": result.deadline_exceeded,
            },
        )
        self.recorder.update_status(
            success=result.failed == 0 and not result.deadline_exceeded,
            total_records=result.processed,
            last_error=errors[-1]["error"] if errors else None,
        )
        result.log_id = log.id

        logger.info(f"Sync queue batch completed: {result.to_dict()}")
        return result

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def reset_stuck_jobs(self, older_than_minutes: Optional[int] = None) -> int:
        """Return items stuck in processing longer than the threshold to pending."""
        minutes = self.config.stale_claim_minutes if older_than_minutes is None else older_than_minutes
        threshold = utcnow() - timedelta(minutes=minutes)
        stuck = (
            self.db.query(SyncQueueItem.id)
            .filter(
                SyncQueueItem.status == QueueStatus.PROCESSING.value,
                or_(SyncQueueItem.claimed_at.is_(None), SyncQueueItem.claimed_at <= threshold),
            )
            .all()
        )
        reset = 0
        for (item_id,) in stuck:
            if SyncQueueItem.transition(
                self.db,
                item_id,
                QueueStatus.PROCESSING,
                QueueStatus.PENDING,
                claimed_at=None,
                next_attempt_at=None,
                last_error=f"Reset after being stuck in processing for more than {minutes} minutes",
            ):
                reset += 1
        self.db.commit()
        logger.info(f"Reset {reset} stuck sync queue item(s)")
        return reset

    def retry_failed(self, entity_id: Optional[str] = None) -> int:
        """Requeue failed items with a fresh retry budget."""
        query = self.db.query(SyncQueueItem.id).filter(
            SyncQueueItem.status == QueueStatus.FAILED.value
        )
        if entity_id is not None:
            query = query.filter(SyncQueueItem.entity_id == entity_id)
        requeued = 0
        for (item_id,) in query.all():
            if SyncQueueItem.transition(
                self.db,
                item_id,
                QueueStatus.FAILED,
                QueueStatus.PENDING,
                retry_count=0,
                next_attempt_at=None,
                claimed_at=None,
            ):
                requeued += 1
        self.db.commit()
        logger.info(f"Requeued {requeued} failed sync queue item(s)")
        return requeued

    def pending_count(self) -> int:
        return (
            self.db.query(SyncQueueItem)
            .filter(SyncQueueItem.status == QueueStatus.PENDING.value)
            .count()
        )

    def queue_counts(self) -> Dict[str, int]:
        return queue_counts(self.db)


def get_auto_process_enabled(db: Session, default: Optional[bool] = None) -> bool:
    """Read the persisted auto-process flag (falls back to the configured default)."""
    row = db.query(SyncSetting).filter(SyncSetting.key == AUTO_PROCESS_ENABLED).first()
    if row is None or row.value is None:
        return settings.auto_process_default if default is None else default
    return row.value.strip().lower() in ("1", "true", "yes", "on")


def set_auto_process_enabled(db: Session, enabled: bool) -> bool:
    row = db.query(SyncSetting).filter(SyncSetting.key == AUTO_PROCESS_ENABLED).first()
    if row is None:
        row = SyncSetting(key=AUTO_PROCESS_ENABLED)
        db.add(row)
    row.value = "true" if enabled else "false"
    row.updated_at = utcnow()
    db.commit()
    logger.info(f"Auto-processing {'enabled' if enabled else 'disabled'}")
    return enabled
