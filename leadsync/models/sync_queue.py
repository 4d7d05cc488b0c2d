"""Sync queue model and its status state machine"""

import enum
from typing import Dict, FrozenSet

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, update
from sqlalchemy.orm import Session

from leadsync.models.base import Base, utcnow


class QueueStatus(str, enum.Enum):
    """Queue item status"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueOperation(str, enum.Enum):
    """Mutation carried by a queue item"""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class SyncDirection(str, enum.Enum):
    """Direction of a queue item or a sync run"""

    TO_REMOTE = "to_remote"
    FROM_REMOTE = "from_remote"
    RECONCILIATION = "reconciliation"


# processing -> pending covers both a transient retry and the stale-claim sweep.
# failed -> pending is the operator "retry failed" action.
ALLOWED_TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.PROCESSING: frozenset(
        {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.PENDING}
    ),
    QueueStatus.FAILED: frozenset({QueueStatus.PENDING}),
    QueueStatus.COMPLETED: frozenset(),
}


class InvalidQueueTransition(ValueError):
    """Raised when code asks for a status change the state machine forbids."""

    def __init__(self, current: QueueStatus, target: QueueStatus):
        super().__init__(f"Illegal sync queue transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return QueueStatus(target) in ALLOWED_TRANSITIONS[QueueStatus(current)]


class SyncQueueItem(Base):
    """Durable record of one pending/failed propagation attempt"""

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_status_created_at", "status", "created_at"),
        Index("ix_sync_queue_status_claimed_at", "status", "claimed_at"),
    )

    id = Column(Integer, primary_key=True, index=True)

    entity_id = Column(String, nullable=False, index=True)
    operation = Column(String, nullable=False)
    sync_direction = Column(String, nullable=False, default=SyncDirection.TO_REMOTE.value)

    status = Column(String, nullable=False, default=QueueStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    claimed_at = Column(DateTime, nullable=True)  # last pending -> processing
    next_attempt_at = Column(DateTime, nullable=True)  # backoff gate; NULL = eligible now
    processed_at = Column(DateTime, nullable=True)

    @classmethod
    def transition(
        cls,
        db: Session,
        item_id: int,
        current: QueueStatus,
        target: QueueStatus,
        **values,
    ) -> bool:
        """Move one item from `current` to `target` if it is still in `current`.

        Returns False when another worker changed the row first (0 rows matched).
        Does not commit.
        """
        current = QueueStatus(current)
        target = QueueStatus(target)
        if not can_transition(current, target):
            raise InvalidQueueTransition(current, target)

        stmt = (
            update(cls)
            .where(cls.id == item_id, cls.status == current.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        return result.rowcount == 1

    def __repr__(self):
        return (
            f"<SyncQueueItem(id={self.id}, entity_id='{self.entity_id}', "
            f"operation={self.operation}, status={self.status}, retry_count={self.retry_count})>"
        )
