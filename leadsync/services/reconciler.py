"""Pull-based reconciliation between the local mirror table and the partner.

The queue only carries changes that happened while this service was watching.
Reconciliation compares both sides directly and repairs whatever drift the
queue could not (exhausted retries, long outages, first-time seeding).
"""

import enum
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import update
from sqlalchemy.orm import Session

from leadsync.config import settings
from leadsync.models import (
    Lead,
    LeadSyncState,
    QueueOperation,
    QueueStatus,
    SyncDirection,
    SyncQueueItem,
)
from leadsync.models.base import utcnow
from leadsync.services.ingestion import IngestionService
from leadsync.services.observability import SyncRecorder, cap_errors
from leadsync.services.remote_client import RemoteClient
from leadsync.services.timestamps import parse_timestamp

logger = logging.getLogger(__name__)


class ReconcileMode(str, enum.Enum):
    FULL = "full"
    RECENT = "recent"
    ACTIVE_ONLY = "active_only"


@dataclass
class ReconcileResult:
    mode: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deferred: int = 0  # subset of `unchanged` skipped because a queued change is still open
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None  # run-level failure (e.g. partner unreachable)
    processing_time_ms: int = 0
    log_id: Optional[int] = None

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconciliationStrategy:
    """One reconciliation mode. Subclasses implement `run`."""

    mode: ReconcileMode

    def __init__(self, reconciler: "Reconciler"):
        self.reconciler = reconciler
        self.db = reconciler.db
        self.remote = reconciler.remote
        self.config = reconciler.config

    def run(self, result: ReconcileResult) -> None:
        raise NotImplementedError

    def defer(self, result: ReconcileResult, record_id: str) -> None:
        """Leave a record with an undelivered local change to the queue."""
        logger.debug(f"Reconciliation ({self.mode.value}): lead {record_id} has a queued change; deferring")
        result.unchanged += 1
        result.deferred += 1

    def record_failure(self, result: ReconcileResult, record_id: Optional[str], error: Exception):
        self.db.rollback()
        logger.warning(f"Reconciliation ({self.mode.value}) failed for lead {record_id}: {error}")
        result.failed += 1
        result.errors.append({"id": record_id, "error": str(error)})
        # Bounded memory for huge runs; the log stores an even smaller sample.
        result.errors = cap_errors(result.errors, self.config.error_sample_limit)


class _TimestampReconciliation(ReconciliationStrategy):
    """Last-write-wins comparison of whole records on both sides."""

    def since(self) -> Optional[datetime]:
        """Lower bound on updated_at, or None for every record."""
        return None

    def _local_records(self, since: Optional[datetime]) -> Dict[str, Lead]:
        query = self.db.query(Lead)
        if since is not None:
            query = query.filter(Lead.updated_at >= since)
        return {lead.id: lead for lead in query.all()}

    def _remote_records(self, since: Optional[datetime]) -> Dict[str, Dict[str, Any]]:
        records = self.remote.list_records(
            updated_after=since, page_size=self.config.reconcile_page_size
        )
        return {str(r["id"]): r for r in records if r.get("id") not in (None, "")}

    def run(self, result: ReconcileResult) -> None:
        since = self.since()
        local = self._local_records(since)
        remote = self._remote_records(since)
        logger.info(
            f"Reconciliation ({self.mode.value}): {len(local)} local, {len(remote)} remote candidate(s)"
        )

        open_ids = self.reconciler.open_entity_ids()
        for record_id in sorted(set(local) | set(remote)):
            if record_id in open_ids:
                self.defer(result, record_id)
                continue
            try:
                local_lead = local.get(record_id)
                remote_record = remote.get(record_id)
                if since is not None:
                    # A record changed on one side only may still exist, unchanged, on the other.
                    if local_lead is None:
                        local_lead = self.db.query(Lead).filter(Lead.id == record_id).first()
                    if remote_record is None:
                        remote_record = self.remote.get_record(record_id)
                self.reconcile_one(record_id, local_lead, remote_record, result)
            except Exception as e:
                self.record_failure(result, record_id, e)

    def reconcile_one(
        self,
        record_id: str,
        local_lead: Optional[Lead],
        remote_record: Optional[Dict[str, Any]],
        result: ReconcileResult,
    ) -> None:
        if local_lead is None and remote_record is None:
            result.unchanged += 1
            return
        if remote_record is None:
            self.reconciler.push_local(local_lead, QueueOperation.INSERT)
            result.created += 1
            return
        if local_lead is None:
            self.reconciler.pull_remote(remote_record)
            result.created += 1
            return

        local_ts = local_lead.updated_at
        remote_ts = parse_timestamp(remote_record.get("updated_at"))
        if remote_ts is None or (local_ts is not None and local_ts > remote_ts):
            self.reconciler.push_local(local_lead, QueueOperation.UPDATE)
            result.updated += 1
        elif local_ts is None or remote_ts > local_ts:
            self.reconciler.pull_remote(remote_record)
            result.updated += 1
        else:
            # Equal timestamps: no winner, leave both sides alone.
            result.unchanged += 1


class FullReconciliation(_TimestampReconciliation):
    mode = ReconcileMode.FULL


class RecentReconciliation(_TimestampReconciliation):
    mode = ReconcileMode.RECENT

    def since(self) -> Optional[datetime]:
        return utcnow() - timedelta(hours=self.config.reconcile_recent_hours)


class ActiveOnlyReconciliation(ReconciliationStrategy):
    """Refresh only the status field of records still in flight.

    The row keeps its own `updated_at` and `sync_source`: only one field of the
    newer remote version is copied, so a later full or recent pass still sees
    the partner copy as newer and pulls the rest of it.
    """

    mode = ReconcileMode.ACTIVE_ONLY

    def run(self, result: ReconcileResult) -> None:
        status_field = self.config.active_status_field
        active = set(self.config.active_status_list())
        # Payload is opaque JSON; filter in Python to stay dialect-agnostic.
        candidates = [
            lead for lead in self.db.query(Lead).all()
            if (lead.payload or {}).get(status_field) in active
        ]
        logger.info(f"Reconciliation (active_only): {len(candidates)} active lead(s)")

        open_ids = self.reconciler.open_entity_ids()
        for lead in candidates:
            lead_id = lead.id
            if lead_id in open_ids:
                self.defer(result, lead_id)
                continue
            try:
                remote_record = self.remote.get_record(lead_id)
                if remote_record is None:
                    raise LookupError(f"Lead {lead_id} not found on the remote system")

                remote_value = IngestionService._extract_payload(remote_record).get(status_field)
                remote_ts = parse_timestamp(remote_record.get("updated_at"))
                local_payload = dict(lead.payload or {})
                local_value = local_payload.get(status_field)

                # Ties and older remote versions are left alone.
                if remote_value == local_value or remote_ts is None or (
                    lead.updated_at is not None and remote_ts <= lead.updated_at
                ):
                    result.unchanged += 1
                    continue

                local_payload[status_field] = remote_value
                table = Lead.__table__
                # Core update: a partner-originated field refresh must not be captured.
                refreshed = self.db.execute(
                    update(table)
                    .where(table.c.id == lead_id, table.c.updated_at == lead.updated_at)
                    .values(payload=local_payload)
                )
                self.db.commit()
                if refreshed.rowcount != 1:
                    # A local write landed in between; it wins and is already queued.
                    result.unchanged += 1
                    continue
                logger.info(f"Lead {lead_id}: {status_field} {local_value!r} -> {remote_value!r}")
                result.updated += 1
            except Exception as e:
                self.record_failure(result, lead_id, e)


class Reconciler:
    """Runs one reconciliation pass in the requested mode"""

    STRATEGIES = {
        ReconcileMode.FULL: FullReconciliation,
        ReconcileMode.RECENT: RecentReconciliation,
        ReconcileMode.ACTIVE_ONLY: ActiveOnlyReconciliation,
    }

    def __init__(self, db: Session, remote: RemoteClient, config=None):
        self.db = db
        self.remote = remote
        self.config = config or settings
        self.ingestion = IngestionService(db, self.config)
        self.recorder = SyncRecorder(db, self.config)

    def open_entity_ids(self) -> Set[str]:
        """Ids with a queued change not yet delivered; those sides are still converging."""
        rows = (
            self.db.query(SyncQueueItem.entity_id)
            .filter(
                SyncQueueItem.status.in_(
                    [QueueStatus.PENDING.value, QueueStatus.PROCESSING.value]
                )
            )
            .distinct()
            .all()
        )
        return {row[0] for row in rows}

    def push_local(self, lead: Lead, operation: QueueOperation) -> None:
        """Overwrite the partner's copy with ours."""
        record = lead.to_record()
        self.remote.push(record, operation.value)
        table = Lead.__table__
        self.db.execute(
            update(table)
            .where(table.c.id == lead.id, table.c.updated_at == lead.updated_at)
            .values(sync_status=LeadSyncState.SYNCED.value, last_synced_at=utcnow())
        )
        self.db.commit()

    def pull_remote(self, record: Dict[str, Any]) -> None:
        """Overwrite our copy with the partner's, tagged as partner-originated."""
        updated_at = parse_timestamp(record.get("updated_at"))
        if updated_at is None:
            raise ValueError(f"Remote lead {record.get('id')} has no updated_at")
        self.ingestion.apply_record(
            str(record["id"]),
            IngestionService._extract_payload(record),
            updated_at,
            source_tag=self.config.remote_source_tag,
        )

    def reconcile(self, mode) -> ReconcileResult:
        """Run one pass and persist a `reconciliation` SyncLog."""
        mode = ReconcileMode(mode)
        strategy = self.STRATEGIES[mode](self)
        result = ReconcileResult(mode=mode.value)
        started = time.monotonic()

        logger.info(f"Starting reconciliation in {mode.value} mode")
        log = self.recorder.start_run(SyncDirection.RECONCILIATION.value, {"mode": mode.value})
        try:
            strategy.run(result)
        except Exception as e:
            # Run-level failure (listing the partner failed, ...). Per-record
            # failures never get here.
            self.db.rollback()
            logger.error(f"Reconciliation ({mode.value}) failed: {e}")
            result.error = str(e)
            result.errors.append({"id": None, "error": str(e)})

        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        self.recorder.finish_run(
            log,
            synced=result.created + result.updated,
            failed=result.failed,
            errors=result.errors,
            metadata={
                "created": result.created,
                "updated": result.updated,
                "unchanged": result.unchanged,
                "failed": result.failed,
                "error": result.error,
            },
        )
        last_error = result.error or (result.errors[-1]["error"] if result.errors else None)
        self.recorder.update_status(
            success=result.error is None and result.failed == 0,
            total_records=result.total,
            last_error=last_error,
        )
        result.log_id = log.id
        logger.info(
            f"Reconciliation ({mode.value}) completed: created={result.created} "
            f"updated={result.updated} unchanged={result.unchanged} failed={result.failed}"
        )
        return result
