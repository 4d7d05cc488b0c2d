"""Change capture for the lead mirror table.

Runs inline with every ORM flush that touches a `Lead`: decides whether the
write originated locally (must propagate) or came from the partner (must not),
and inserts a `sync_queue` row on the flush's own connection so the queue entry
commits or rolls back together with the write. Nothing here talks to the
network.
"""

import logging
from typing import Optional

from sqlalchemy import event, inspect

from leadsync.config import settings
from leadsync.models.base import utcnow
from leadsync.models.lead import Lead, LeadSyncState
from leadsync.models.sync_queue import QueueOperation, QueueStatus, SyncDirection, SyncQueueItem

logger = logging.getLogger(__name__)

# Columns whose change counts as a business mutation. Sync metadata
# (sync_status, last_synced_at) is written by the engine itself and must not
# re-trigger capture.
_TRACKED_COLUMNS = ("payload", "updated_at")


class ChangeCaptureError(RuntimeError):
    """Enqueue failed; the originating write must fail with it."""


def should_enqueue(sync_source: Optional[str], partner_tag: str) -> bool:
    """Loop prevention: rows last written by the partner never propagate back."""
    return sync_source != partner_tag


def _has_business_changes(target: Lead) -> bool:
    state = inspect(target)
    return any(state.attrs[name].history.has_changes() for name in _TRACKED_COLUMNS)


def _insert_queue_row(connection, entity_id: str, operation: QueueOperation) -> None:
    connection.execute(
        SyncQueueItem.__table__.insert().values(
            entity_id=str(entity_id),
            operation=operation.value,
            sync_direction=SyncDirection.TO_REMOTE.value,
            status=QueueStatus.PENDING.value,
            retry_count=0,
            created_at=utcnow(),
        )
    )


def enqueue_change(connection, entity_id: str, operation: QueueOperation) -> None:
    """Insert one pending to_remote queue item, raising ChangeCaptureError on failure."""
    try:
        _insert_queue_row(connection, entity_id, operation)
    except Exception as e:
        logger.error(f"Failed to enqueue {operation.value} for lead {entity_id}: {e}")
        raise ChangeCaptureError(
            f"Could not enqueue {operation.value} for lead {entity_id}: {e}"
        ) from e
    logger.debug(f"Enqueued {operation.value} for lead {entity_id}")


@event.listens_for(Lead, "before_insert")
def _mark_pending_before_insert(mapper, connection, target):
    if should_enqueue(target.sync_source, settings.remote_source_tag):
        target.sync_status = LeadSyncState.PENDING.value


@event.listens_for(Lead, "before_update")
def _mark_pending_before_update(mapper, connection, target):
    if _has_business_changes(target) and should_enqueue(
        target.sync_source, settings.remote_source_tag
    ):
        target.sync_status = LeadSyncState.PENDING.value


@event.listens_for(Lead, "after_insert")
def _capture_insert(mapper, connection, target):
    if should_enqueue(target.sync_source, settings.remote_source_tag):
        enqueue_change(connection, target.id, QueueOperation.INSERT)


@event.listens_for(Lead, "after_update")
def _capture_update(mapper, connection, target):
    if not _has_business_changes(target):
        return
    if should_enqueue(target.sync_source, settings.remote_source_tag):
        enqueue_change(connection, target.id, QueueOperation.UPDATE)


@event.listens_for(Lead, "after_delete")
def _capture_delete(mapper, connection, target):
    if should_enqueue(target.sync_source, settings.remote_source_tag):
        enqueue_change(connection, target.id, QueueOperation.DELETE)
