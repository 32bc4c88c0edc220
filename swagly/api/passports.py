"""
Passports Router - Event registration, passport reads and sync
"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from swagly.dependencies import get_db, verify_admin_key
from swagly.services.passport_service import passport_service

router = APIRouter()


class CreatePassportRequest(BaseModel):
    userId: str
    eventId: str


class SyncPassportsRequest(BaseModel):
    passportId: Optional[str] = None
    eventId: Optional[str] = None


@router.post("", status_code=201)
def create_passport(
    request: CreatePassportRequest,
    db: Session = Depends(get_db)
):
    """Register a user for an event; one pending entry per event activity"""
    passport = passport_service.create_passport(db, request.userId, request.eventId)
    return {"success": True, "passport": passport_service.serialize_passport(passport)}


@router.post("/sync", dependencies=[Depends(verify_admin_key)])
def sync_passports(
    request: Optional[SyncPassportsRequest] = None,
    db: Session = Depends(get_db)
):
    """
    Add activities missing from passports and recompute progress.

    Scope: one passport (passportId), all passports of an event (eventId),
    or every passport when the body is empty.
    """
    request = request or SyncPassportsRequest()
    result = passport_service.sync_passports(
        db,
        passport_id=request.passportId,
        event_id=request.eventId
    )
    return {"success": True, **result}


@router.post("/fix-requires-proof", dependencies=[Depends(verify_admin_key)])
def fix_requires_proof(db: Session = Depends(get_db)):
    result = passport_service.refresh_requires_proof(db)
    return {"success": True, **result}


@router.get("/{user_id}")
def get_user_passports(
    user_id: str,
    db: Session = Depends(get_db)
):
    return {"passports": passport_service.list_user_passports(db, user_id)}
