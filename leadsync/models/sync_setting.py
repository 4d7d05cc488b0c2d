"""Persisted runtime settings model"""
from sqlalchemy import Column, DateTime, String

from leadsync.models.base import Base, utcnow

AUTO_PROCESS_ENABLED = "auto_process_enabled"


class SyncSetting(Base):
    """Operator-toggled configuration that must survive restarts"""

    __tablename__ = "sync_settings"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncSetting({self.key}={self.value!r})>"
