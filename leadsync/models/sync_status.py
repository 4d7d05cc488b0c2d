"""Sync status summary model"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from leadsync.models.base import Base, utcnow


class SyncStatus(Base):
    """Aggregated health of one remote integration (one row per project)"""

    __tablename__ = "sync_status"

    id = Column(Integer, primary_key=True, index=True)
    project_name = Column(String, unique=True, nullable=False, index=True)

    last_sync_at = Column(DateTime, nullable=True)
    last_sync_success = Column(Boolean, nullable=True)  # NULL = never ran
    total_records = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncStatus(project='{self.project_name}', success={self.last_sync_success})>"
