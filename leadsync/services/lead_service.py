"""Local write path for leads.

Host-application code (forms, jobs, CRM hooks) writes leads through here so
every write is stamped as locally originated; change capture then queues it
for the partner.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from leadsync.config import settings
from leadsync.models import Lead
from leadsync.models.base import utcnow

logger = logging.getLogger(__name__)


class LeadService:
    """Create, update and delete leads as local writes"""

    def __init__(self, db: Session, config=None):
        self.db = db
        self.config = config or settings

    def get(self, lead_id: str) -> Optional[Lead]:
        return self.db.query(Lead).filter(Lead.id == str(lead_id)).first()

    def _stamp_local(self, lead: Lead):
        lead.updated_at = utcnow()
        lead.sync_source = self.config.local_source_tag

    def create(self, lead_id: str, payload: Dict[str, Any]) -> Lead:
        if self.get(lead_id) is not None:
            raise ValueError(f"Lead {lead_id} already exists")
        lead = Lead(id=str(lead_id), payload=dict(payload or {}), created_at=utcnow())
        self._stamp_local(lead)
        self.db.add(lead)
        self._commit()
        self.db.refresh(lead)
        return lead

    def update(self, lead_id: str, payload: Dict[str, Any], *, replace: bool = False) -> Lead:
        """Merge (or replace) business fields of an existing lead."""
        lead = self.get(lead_id)
        if lead is None:
            raise LookupError(f"Lead {lead_id} not found")
        if replace:
            lead.payload = dict(payload or {})
        else:
            merged = dict(lead.payload or {})
            merged.update(payload or {})
            lead.payload = merged
        self._stamp_local(lead)
        self._commit()
        self.db.refresh(lead)
        return lead

    def delete(self, lead_id: str) -> None:
        lead = self.get(lead_id)
        if lead is None:
            raise LookupError(f"Lead {lead_id} not found")
        # A delete is a local mutation even when a partner wrote the row last.
        lead.sync_source = self.config.local_source_tag
        self.db.delete(lead)
        self._commit()

    def _commit(self):
        """Commit; a change capture failure rolls the write back and propagates."""
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Local lead write failed: {e}")
            raise
