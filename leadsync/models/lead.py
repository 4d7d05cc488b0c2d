"""Lead (mirror table) model"""

import enum

from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.ext.mutable import MutableDict

from leadsync.models.base import Base, utcnow


class LeadSyncState(str, enum.Enum):
    """Per-row propagation state shown to operators"""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class Lead(Base):
    """Local copy of the shared lead entity.

    Business fields live in `payload` and are opaque to the sync engine.
    `sync_source` names the last writer: the local tag for writes made by this
    system's own business logic, or the partner's tag for rows applied by the
    ingestion endpoint / reconciler. Writers must always set it explicitly.
    """

    __tablename__ = "leads"

    id = Column(String, primary_key=True, index=True)
    payload = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Sync metadata
    sync_source = Column(String, nullable=False, default="local", index=True)
    sync_status = Column(String, nullable=False, default=LeadSyncState.PENDING.value)
    last_synced_at = Column(DateTime, nullable=True)

    def to_record(self) -> dict:
        """Wire representation used for pushes and record exports."""
        return {
            "id": self.id,
            "payload": dict(self.payload or {}),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "sync_source": self.sync_source,
        }

    def __repr__(self):
        return f"<Lead(id='{self.id}', sync_source='{self.sync_source}', sync_status='{self.sync_status}')>"
