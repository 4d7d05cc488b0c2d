"""Sync log model"""
from sqlalchemy import JSON, Column, DateTime, Integer, String

from leadsync.models.base import Base, utcnow


class SyncLog(Base):
    """One row per queue batch or reconciliation run.

    Created when the run starts and finalized once when it ends.
    """

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    started_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)  # NULL while the run is in progress

    sync_direction = Column(String, nullable=False)
    records_synced = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    processing_time_ms = Column(Integer, nullable=True)

    errors = Column(JSON, nullable=True)  # capped list of error samples
    # `metadata` is reserved on declarative classes.
    run_metadata = Column("metadata", JSON, nullable=True)

    @property
    def is_running(self) -> bool:
        return self.completed_at is None

    def __repr__(self):
        return (
            f"<SyncLog(direction={self.sync_direction}, synced={self.records_synced}, "
            f"failed={self.records_failed})>"
        )
