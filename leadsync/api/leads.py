"""Local lead management endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from leadsync.config import settings
from leadsync.models import Lead
from leadsync.models.base import get_db
from leadsync.scheduler import scheduler
from leadsync.services.change_capture import ChangeCaptureError
from leadsync.services.lead_service import LeadService

router = APIRouter(prefix="/api/leads", tags=["leads"])


class LeadCreate(BaseModel):
    id: str
    payload: Dict[str, Any] = {}


class LeadUpdate(BaseModel):
    payload: Dict[str, Any]
    replace: bool = False


class LeadResponse(BaseModel):
    id: str
    payload: Dict[str, Any]
    created_at: Optional[datetime] = None
    updated_at: datetime
    sync_source: str
    sync_status: str
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


def _after_local_write():
    if settings.immediate_push:
        scheduler.request_immediate_push()


@router.get("/", response_model=List[LeadResponse])
def list_leads(
    sync_status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    """List leads, most recently updated first"""
    query = db.query(Lead).order_by(Lead.updated_at.desc())
    if sync_status:
        query = query.filter(Lead.sync_status == sync_status)
    return query.offset(offset).limit(limit).all()


@router.post("/", response_model=LeadResponse)
def create_lead(lead: LeadCreate, db: Session = Depends(get_db)):
    """Create a lead (queued for the partner)"""
    try:
        created = LeadService(db).create(lead.id, lead.payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChangeCaptureError as e:
        raise HTTPException(status_code=500, detail=str(e))
    _after_local_write()
    return created


@router.get("/{lead_id}", response_model=LeadResponse)
def get_lead(lead_id: str, db: Session = Depends(get_db)):
    """Get a specific lead"""
    lead = LeadService(db).get(lead_id)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


@router.put("/{lead_id}", response_model=LeadResponse)
def update_lead(lead_id: str, update: LeadUpdate, db: Session = Depends(get_db)):
    """Update a lead's business fields (merged unless `replace` is set)"""
    try:
        lead = LeadService(db).update(lead_id, update.payload, replace=update.replace)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ChangeCaptureError as e:
        raise HTTPException(status_code=500, detail=str(e))
    _after_local_write()
    return lead


@router.delete("/{lead_id}")
def delete_lead(lead_id: str, db: Session = Depends(get_db)):
    """Delete a lead (the delete is propagated to the partner)"""
    try:
        LeadService(db).delete(lead_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ChangeCaptureError as e:
        raise HTTPException(status_code=500, detail=str(e))
    _after_local_write()
    return {"message": "Lead deleted successfully"}
