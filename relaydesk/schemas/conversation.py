from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    end_user_id: UUID
    agent_id: Optional[UUID] = None
    channel: str
    status: str
    assigned_user_id: Optional[str] = None
    message_count: int
    sentiment: float
    tags: list[str] = Field(default_factory=list)
    last_message_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


class AgentEventRequest(BaseModel):
    """An event from the automated-agent stream (thinking, tool_call, delta, complete, error)."""

    type: Literal["thinking", "tool_call", "delta", "complete", "error"]
    data: dict[str, Any] = Field(default_factory=dict)


class HumanMessageRequest(BaseModel):
    user_id: str
    content: str


class ConversationActionResponse(BaseModel):
    success: bool
    conversation_id: UUID
    conversation_status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    escalation_id: Optional[UUID] = None
