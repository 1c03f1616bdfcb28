from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from relaydesk.database import get_db
from relaydesk.schemas.presence import PresenceOut, PresenceUpdateRequest, TeammatesResponse
from relaydesk.services.presence_service import PresenceError, PresenceRegistry

router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("", response_model=TeammatesResponse)
def list_teammates(company_id: UUID, user_id: Optional[str] = None, db: Session = Depends(get_db)):
    """Online and busy colleagues, excluding the caller."""
    teammates = PresenceRegistry(db).list_teammates(company_id, user_id)
    return TeammatesResponse(
        teammates=[PresenceOut.model_validate(p) for p in teammates],
        online=sum(1 for p in teammates if p.status == "online"),
        busy=sum(1 for p in teammates if p.status == "busy"),
    )


@router.get("/{user_id}", response_model=PresenceOut)
def get_presence(user_id: str, company_id: Optional[UUID] = None, db: Session = Depends(get_db)):
    presence = PresenceRegistry(db).get_status(user_id, company_id)
    db.commit()
    return presence


@router.put("/{user_id}", response_model=PresenceOut)
def update_presence(user_id: str, request: PresenceUpdateRequest, db: Session = Depends(get_db)):
    try:
        presence = PresenceRegistry(db).set_status(
            user_id,
            status=request.status,
            max_concurrent_chats=request.max_concurrent_chats,
            company_id=request.company_id,
        )
    except PresenceError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=e.message)

    db.commit()
    return presence


@router.post("/{user_id}/heartbeat", response_model=PresenceOut)
def heartbeat(user_id: str, db: Session = Depends(get_db)):
    presence = PresenceRegistry(db).heartbeat(user_id)
    db.commit()
    return presence
