from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel


class WebhookAck(BaseModel):
    status: Literal["accepted", "duplicate", "ignored", "ok"]
    conversation_id: Optional[UUID] = None
    conversation_status: Optional[str] = None
    escalation_id: Optional[UUID] = None
