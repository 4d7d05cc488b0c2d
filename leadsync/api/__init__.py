"""API routes"""

from leadsync.api import dashboard, ingest, leads, sync

__all__ = ["ingest", "leads", "sync", "dashboard"]
