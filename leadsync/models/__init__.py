"""Database models"""

from leadsync.models.base import Base
from leadsync.models.lead import Lead, LeadSyncState
from leadsync.models.sync_log import SyncLog
from leadsync.models.sync_queue import (
    QueueOperation,
    QueueStatus,
    SyncDirection,
    SyncQueueItem,
)
from leadsync.models.sync_setting import SyncSetting
from leadsync.models.sync_status import SyncStatus

__all__ = [
    "Base",
    "Lead",
    "LeadSyncState",
    "SyncQueueItem",
    "QueueStatus",
    "QueueOperation",
    "SyncDirection",
    "SyncLog",
    "SyncStatus",
    "SyncSetting",
]
