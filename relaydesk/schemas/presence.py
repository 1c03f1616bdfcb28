from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

PresenceStatus = Literal["online", "busy", "away", "invisible", "offline"]


class PresenceUpdateRequest(BaseModel):
    status: Optional[PresenceStatus] = None
    max_concurrent_chats: Optional[int] = None
    company_id: Optional[UUID] = None


class PresenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    company_id: Optional[UUID] = None
    status: str
    max_concurrent_chats: int
    current_chat_count: int
    last_status_change: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None


class TeammatesResponse(BaseModel):
    teammates: list[PresenceOut]
    online: int
    busy: int
