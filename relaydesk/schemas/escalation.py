from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class EscalationActionRequest(BaseModel):
    action: Literal["accept", "resolve", "return_to_ai", "transfer"]
    user_id: str
    resolution: Optional[str] = None
    return_to_ai: bool = False
    target_user_id: Optional[str] = None  # transfer only
    reason: Optional[str] = None


class EscalationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    company_id: UUID
    status: str
    priority: str
    trigger_type: str
    reason: str
    created_at: datetime
    notified_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    first_response_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    returned_to_ai: bool = False
    transferred_from: Optional[str] = None
    transfer_reason: Optional[str] = None
    queue_position: Optional[int] = None  # pending only


class EscalationActionResponse(BaseModel):
    success: bool
    action: str
    escalation_id: UUID
    error: Optional[str] = None
    error_code: Optional[str] = None
    conversation_status: Optional[str] = None
    escalation: Optional[EscalationOut] = None


class EscalationStatsOut(BaseModel):
    company_id: UUID
    since: Optional[datetime] = None
    total: int
    by_status: dict[str, int]
    by_trigger_type: dict[str, int]
    average_wait_seconds: Optional[float] = None
    average_first_response_seconds: Optional[float] = None
    average_resolution_seconds: Optional[float] = None
    return_to_ai_rate: float
    notified: int
    transferred: int
