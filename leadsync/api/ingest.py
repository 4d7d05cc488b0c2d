"""Partner-facing sync endpoints (bearer token auth)"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from leadsync.models import Lead
from leadsync.models.base import get_db
from leadsync.security import require_partner_token
from leadsync.services.ingestion import IngestionService, IngestRejected
from leadsync.services.timestamps import normalize_utc_naive

logger = logging.getLogger(__name__)

router = APIRouter(tags=["partner"], dependencies=[Depends(require_partner_token)])

MAX_PAGE_SIZE = 1000


@router.post("/sync-ingest")
def sync_ingest(body: Any = Body(...), db: Session = Depends(get_db)):
    """Apply one change pushed by the partner (last write wins)"""
    try:
        result = IngestionService(db).ingest(body)
    except IngestRejected as e:
        logger.warning(f"Rejected partner push: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.error(f"Partner push failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return result.to_dict()


@router.get("/sync-records")
def list_sync_records(
    updated_after: Optional[datetime] = None,
    limit: int = 500,
    offset: int = 0,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Page through local records for the partner's reconciler"""
    if limit < 1 or offset < 0:
        raise HTTPException(status_code=400, detail="limit must be positive and offset non-negative")
    limit = min(limit, MAX_PAGE_SIZE)

    query = db.query(Lead)
    if updated_after is not None:
        query = query.filter(Lead.updated_at >= normalize_utc_naive(updated_after))
    total = query.count()
    leads = query.order_by(Lead.updated_at.asc(), Lead.id.asc()).offset(offset).limit(limit).all()
    return {
        "records": [lead.to_record() for lead in leads],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/sync-records/{record_id}")
def get_sync_record(record_id: str, db: Session = Depends(get_db)):
    """Fetch one local record by its cross-system id"""
    lead = db.query(Lead).filter(Lead.id == record_id).first()
    if not lead:
        raise HTTPException(status_code=404, detail="Record not found")
    return {"record": lead.to_record()}
