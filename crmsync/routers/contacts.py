"""Contact routes - manual entry, restore, suppression lists."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.contact import CHANNEL_MANUAL
from ..schemas.contact import (
    ContactCreate,
    ContactResponse,
    SuppressionEntry,
    SuppressionSetResponse,
)
from ..services import contact_svc

router = APIRouter(prefix="/contacts", tags=["contacts"])


@router.get("")
async def list_contacts(
    status: str = "active",
    offset: int = 0,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    contacts, total = await contact_svc.list_contacts(
        db, status=status or None, offset=offset, limit=min(limit, 500)
    )
    return {
        "total": total,
        "contacts": [ContactResponse.model_validate(c) for c in contacts],
    }


@router.post("", status_code=201, response_model=ContactResponse)
async def create_contact(body: ContactCreate, db: AsyncSession = Depends(get_db)):
    """Manual entry. Re-submitting the same email updates the earlier entry."""
    contact, _created = await contact_svc.ingest_contact(
        db, body.model_dump(exclude_none=True), channel=CHANNEL_MANUAL
    )
    return contact


@router.get("/suppression/{tag}", response_model=SuppressionSetResponse)
async def suppression_set(tag: str, db: AsyncSession = Depends(get_db)):
    contacts = await contact_svc.list_suppression_set(db, tag)
    return SuppressionSetResponse(
        tag=tag,
        count=len(contacts),
        contacts=[SuppressionEntry.model_validate(c) for c in contacts],
    )


@router.get("/{contact_id}", response_model=ContactResponse)
async def get_contact(contact_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    contact = await contact_svc.get_contact(db, contact_id)
    if not contact:
        raise HTTPException(status_code=404, detail="Contact not found")
    return contact


@router.post("/{contact_id}/restore", response_model=ContactResponse)
async def restore_contact(contact_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    contact = await contact_svc.restore_contact(db, contact_id)
    if not contact:
        raise HTTPException(status_code=404, detail="Contact not found")
    return contact
