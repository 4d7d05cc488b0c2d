"""Outbound delivery of claimed queue items to the partner"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from leadsync.config import settings
from leadsync.models import Lead, LeadSyncState, QueueOperation, QueueStatus, SyncQueueItem
from leadsync.models.base import utcnow
from leadsync.services.remote_client import PermanentRemoteError, RemoteClient, TransientRemoteError

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    """Result of one delivery attempt"""

    item_id: int
    entity_id: str
    ok: bool
    status: QueueStatus
    error: Optional[str] = None
    permanent: bool = False
    skipped: bool = False  # record vanished; nothing was sent


def backoff_delay(retry_count: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Exponential backoff for the n-th failed attempt (1-based)."""
    if base_seconds <= 0 or retry_count <= 0:
        return timedelta(0)
    return timedelta(seconds=min(base_seconds * (2 ** (retry_count - 1)), max_seconds))


class Dispatcher:
    """Delivers one queue item at a time and records the outcome on the item"""

    def __init__(
        self,
        db: Session,
        remote: RemoteClient,
        *,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[int] = None,
        backoff_max_seconds: Optional[int] = None,
        config=None,
    ):
        self.db = db
        self.remote = remote
        config = config or settings
        self.max_retries = config.max_retries if max_retries is None else max_retries
        self.backoff_seconds = (
            config.retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.backoff_max_seconds = (
            config.retry_backoff_max_seconds
            if backoff_max_seconds is None
            else backoff_max_seconds
        )

    def build_record(self, item: SyncQueueItem) -> Optional[Dict[str, Any]]:
        """Current state of the entity, re-read at send time.

        Deletes send a tombstone. For inserts/updates of a row that no longer
        exists, returns None: a later delete item carries that change.
        """
        if item.operation == QueueOperation.DELETE.value:
            return {
                "id": item.entity_id,
                "updated_at": (item.created_at or utcnow()).isoformat(),
                "deleted": True,
            }

        # Bypass the identity map so rapid successive edits coalesce into the latest state.
        lead = (
            self.db.query(Lead)
            .filter(Lead.id == item.entity_id)
            .populate_existing()
            .first()
        )
        if lead is None:
            return None
        return lead.to_record()

    def dispatch(self, item: SyncQueueItem) -> DispatchOutcome:
        """Deliver a claimed (processing) item and move it to its next status."""
        try:
            record = self.build_record(item)
            if record is None:
                logger.info(
                    f"Lead {item.entity_id} no longer exists; completing queue item {item.id} "
                    f"({item.operation}) without sending"
                )
                self._complete(item)
                return DispatchOutcome(
                    item.id, item.entity_id, True, QueueStatus.COMPLETED, skipped=True
                )
            self.remote.push(record, item.operation)
        except PermanentRemoteError as e:
            return self._fail(item, str(e), permanent=True)
        except TransientRemoteError as e:
            return self._retry_or_fail(item, str(e))
        except Exception as e:
            # Unclassified local failure; the retry budget still bounds it.
            self.db.rollback()
            logger.error(f"Unexpected error dispatching queue item {item.id}: {e}")
            return self._retry_or_fail(item, f"{type(e).__name__}: {e}")

        self._complete(item, pushed_updated_at=record.get("updated_at"))
        return DispatchOutcome(item.id, item.entity_id, True, QueueStatus.COMPLETED)

    def _complete(self, item: SyncQueueItem, pushed_updated_at: Optional[str] = None):
        now = utcnow()
        moved = SyncQueueItem.transition(
            self.db,
            item.id,
            QueueStatus.PROCESSING,
            QueueStatus.COMPLETED,
            processed_at=now,
            last_error=None,
            next_attempt_at=None,
        )
        if not moved:
            logger.warning(f"Queue item {item.id} was no longer processing when it completed")
        if pushed_updated_at and item.operation != QueueOperation.DELETE.value:
            self._mark_lead(item.entity_id, LeadSyncState.SYNCED, now, pushed_updated_at)
        self.db.commit()

    def _retry_or_fail(self, item: SyncQueueItem, error: str) -> DispatchOutcome:
        retry_count = (item.retry_count or 0) + 1
        if retry_count >= self.max_retries:
            logger.warning(
                f"Queue item {item.id} for lead {item.entity_id} failed after {retry_count} attempts: {error}"
            )
            return self._fail(item, error, permanent=False)

        next_attempt_at = utcnow() + backoff_delay(
            retry_count, self.backoff_seconds, self.backoff_max_seconds
        )
        moved = SyncQueueItem.transition(
            self.db,
            item.id,
            QueueStatus.PROCESSING,
            QueueStatus.PENDING,
            retry_count=retry_count,
            last_error=error,
            next_attempt_at=next_attempt_at,
            processed_at=utcnow(),
        )
        if not moved:
            logger.warning(f"Queue item {item.id} was no longer processing when scheduling a retry")
        self.db.commit()
        logger.warning(
            f"Queue item {item.id} for lead {item.entity_id} failed (attempt {retry_count}/"
            f"{self.max_retries}), retry after {next_attempt_at.isoformat()}: {error}"
        )
        return DispatchOutcome(item.id, item.entity_id, False, QueueStatus.PENDING, error=error)

    def _fail(self, item: SyncQueueItem, error: str, *, permanent: bool) -> DispatchOutcome:
        now = utcnow()
        moved = SyncQueueItem.transition(
            self.db,
            item.id,
            QueueStatus.PROCESSING,
            QueueStatus.FAILED,
            retry_count=(item.retry_count or 0) + 1,
            last_error=error,
            next_attempt_at=None,
            processed_at=now,
        )
        if not moved:
            logger.warning(f"Queue item {item.id} was no longer processing when marking it failed")
        if item.operation != QueueOperation.DELETE.value:
            self._mark_lead(item.entity_id, LeadSyncState.ERROR, None)
        self.db.commit()
        if permanent:
            logger.warning(f"Queue item {item.id} for lead {item.entity_id} rejected by remote: {error}")
        return DispatchOutcome(
            item.id, item.entity_id, False, QueueStatus.FAILED, error=error, permanent=permanent
        )

    def _mark_lead(
        self,
        entity_id: str,
        state: LeadSyncState,
        synced_at: Optional[datetime],
        only_if_updated_at: Optional[str] = None,
    ):
        """Write sync metadata with a Core update so change capture does not fire."""
        table = Lead.__table__
        values: Dict[str, Any] = {"sync_status": state.value}
        if synced_at is not None:
            values["last_synced_at"] = synced_at
        stmt = update(table).where(table.c.id == entity_id)
        if only_if_updated_at:
            # A newer local edit is still queued; leave it marked pending.
            stmt = stmt.where(table.c.updated_at == datetime.fromisoformat(only_if_updated_at))
        self.db.execute(stmt.values(**values))
