"""Shared helpers for the test suite: in-memory database and a fake partner"""
from datetime import datetime

from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leadsync.config import settings
from leadsync.models import Lead, SyncQueueItem
from leadsync.models.base import init_db, utcnow
from leadsync.services.timestamps import parse_timestamp

T0 = datetime(2024, 5, 1, 12, 0, 0)


def make_session_factory():
    """Fresh in-memory SQLite database with the full schema."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def make_config(**overrides):
    return settings.model_copy(update=overrides)


def add_lead(db, lead_id, payload=None, updated_at=T0, source=None):
    """Insert a lead through the ORM (change capture applies)."""
    lead = Lead(
        id=str(lead_id),
        payload=dict(payload or {}),
        created_at=updated_at,
        updated_at=updated_at,
        sync_source=source or settings.local_source_tag,
    )
    db.add(lead)
    db.commit()
    return lead


def settle_queue(db):
    """Mark every open queue item delivered, as if the dispatcher had already run."""
    table = SyncQueueItem.__table__
    db.execute(
        update(table)
        .where(table.c.status.in_(("pending", "processing")))
        .values(status="completed", processed_at=utcnow())
    )
    db.commit()


def queue_items(db, **filters):
    query = db.query(SyncQueueItem)
    for name, value in filters.items():
        query = query.filter(getattr(SyncQueueItem, name) == value)
    return query.order_by(SyncQueueItem.id).all()


def remote_record(lead_id, payload=None, updated_at=T0):
    return {
        "id": str(lead_id),
        "payload": dict(payload or {}),
        "updated_at": updated_at.isoformat(),
        "sync_source": settings.system_tag,
    }


class FakePartner:
    """In-memory stand-in for the partner's sync endpoints.

    Applies pushes with the same last-write-wins rule as the real ingestion
    endpoint. `failures` is consumed one exception per push call.
    """

    def __init__(self, records=None, failures=None):
        self.records = {str(r["id"]): dict(r) for r in records or []}
        self.failures = list(failures or [])
        self.pushes = []
        self.list_error = None
        self.ping_error = None
        self.closed = False

    def push(self, record, operation):
        self.pushes.append((dict(record), operation))
        if self.failures:
            raise self.failures.pop(0)

        record_id = str(record["id"])
        incoming = parse_timestamp(record.get("updated_at"))
        current = self.records.get(record_id)
        current_ts = parse_timestamp(current.get("updated_at")) if current is not None else None
        if operation == "delete" or record.get("deleted"):
            # Deletes lose only to a strictly newer copy.
            if current_ts is not None and current_ts > incoming:
                return {"status": "skipped", "id": record_id}
            self.records.pop(record_id, None)
            return {"status": "deleted", "id": record_id}
        if current_ts is not None and current_ts >= incoming:
            return {"status": "skipped", "id": record_id}
        self.records[record_id] = dict(record)
        return {"status": "applied", "id": record_id}

    def list_records(self, *, updated_after=None, page_size=500):
        if self.list_error is not None:
            raise self.list_error
        records = list(self.records.values())
        if updated_after is not None:
            records = [r for r in records if parse_timestamp(r["updated_at"]) >= updated_after]
        return [dict(r) for r in records]

    def get_record(self, record_id):
        record = self.records.get(str(record_id))
        return dict(record) if record is not None else None

    def ping(self):
        if self.ping_error is not None:
            raise self.ping_error
        return 1.5

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
