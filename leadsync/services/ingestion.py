"""Application of changes pushed by the partner system"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from leadsync.config import settings
from leadsync.models import Lead, LeadSyncState, QueueOperation
from leadsync.models.base import utcnow
from leadsync.services.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

# Keys of a flat wire record that are sync metadata, not business payload.
_META_KEYS = {"id", "payload", "updated_at", "sync_source", "sync_status", "last_synced_at", "deleted"}


class IngestRejected(Exception):
    """The pushed change is malformed or not allowed; the sender must not retry it."""

    def __init__(self, message: str, status_code: int = 422):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class IngestResult:
    status: str  # applied | skipped | ignored | deleted
    id: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IngestionService:
    """Applies remote records with last-write-wins on `updated_at`"""

    def __init__(self, db: Session, config=None):
        self.db = db
        self.config = config or settings

    @staticmethod
    def _extract_payload(record: Dict[str, Any]) -> Dict[str, Any]:
        payload = record.get("payload")
        if payload is None:
            # Flat record: every non-metadata key is a business field.
            return {k: v for k, v in record.items() if k not in _META_KEYS}
        if not isinstance(payload, dict):
            raise IngestRejected("record.payload must be an object")
        return dict(payload)

    def ingest(self, body: Dict[str, Any]) -> IngestResult:
        """Validate and apply one `{record, source, operation}` push."""
        if not isinstance(body, dict):
            raise IngestRejected("Request body must be a JSON object", status_code=400)

        # Older senders still use the "ficha" (or "lead") key for the record.
        record = body.get("record") or body.get("ficha") or body.get("lead")
        source = body.get("source")
        operation = body.get("operation") or QueueOperation.UPDATE.value

        if not isinstance(record, dict):
            raise IngestRejected("Missing record")
        record_id = record.get("id")
        if record_id in (None, ""):
            raise IngestRejected("record.id is required")
        record_id = str(record_id)
        if not source:
            raise IngestRejected("source is required")
        try:
            operation = QueueOperation(operation)
        except ValueError:
            raise IngestRejected(f"Unsupported operation: {operation!r}")

        if source == self.config.system_tag:
            logger.info(f"Ignoring push for lead {record_id}: source is this system ({source})")
            return IngestResult("ignored", record_id, f"Ignored - source is {source}")
        if source != self.config.remote_source_tag:
            raise IngestRejected(f"Unknown source {source!r}", status_code=403)

        try:
            updated_at = parse_timestamp(record.get("updated_at"))
        except ValueError as e:
            raise IngestRejected(f"Invalid record.updated_at: {e}")
        if updated_at is None:
            raise IngestRejected("record.updated_at is required")

        if operation == QueueOperation.DELETE or record.get("deleted"):
            return self.apply_delete(record_id, updated_at)
        return self.apply_record(
            record_id, self._extract_payload(record), updated_at, source_tag=source
        )

    def apply_record(
        self,
        record_id: str,
        payload: Dict[str, Any],
        updated_at: datetime,
        *,
        source_tag: str,
    ) -> IngestResult:
        """Write a remote state locally unless the local copy is at least as new.

        Re-applying the same or an older state is a no-op, which makes repeated
        delivery safe. The row is stamped with the writer's tag so change
        capture does not send it back.
        """
        lead = self.db.query(Lead).filter(Lead.id == record_id).first()
        if lead is not None and lead.updated_at is not None and lead.updated_at >= updated_at:
            logger.info(
                f"Skipping lead {record_id}: incoming {updated_at.isoformat()} is not newer "
                f"than local {lead.updated_at.isoformat()}"
            )
            return IngestResult("skipped", record_id, "Skipped - local version is newer or equal")

        now = utcnow()
        if lead is None:
            lead = Lead(id=record_id, created_at=now)
            self.db.add(lead)
        lead.payload = payload
        lead.updated_at = updated_at
        lead.sync_source = source_tag
        lead.sync_status = LeadSyncState.SYNCED.value
        lead.last_synced_at = now
        self.db.commit()
        logger.info(f"Applied lead {record_id} from {source_tag} ({updated_at.isoformat()})")
        return IngestResult("applied", record_id, "Applied")

    def apply_delete(self, record_id: str, updated_at: datetime) -> IngestResult:
        """Delete the local row unless it was modified after the remote delete."""
        lead = self.db.query(Lead).filter(Lead.id == record_id).first()
        if lead is None:
            return IngestResult("skipped", record_id, "Skipped - already absent")
        if lead.updated_at is not None and lead.updated_at > updated_at:
            logger.info(f"Skipping delete of lead {record_id}: local copy is newer")
            return IngestResult("skipped", record_id, "Skipped - local version is newer")

        # Core delete: a partner-originated delete must not be captured and sent back.
        self.db.expunge(lead)
        self.db.execute(delete(Lead.__table__).where(Lead.__table__.c.id == record_id))
        self.db.commit()
        logger.info(f"Deleted lead {record_id} on behalf of the remote system")
        return IngestResult("deleted", record_id, "Deleted")
