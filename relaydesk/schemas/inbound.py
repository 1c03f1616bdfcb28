from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

ContentType = Literal["text", "image", "video", "audio", "file"]


class Attachment(BaseModel):
    type: Literal["image", "video", "audio", "file"]
    url: Optional[str] = None
    file_id: Optional[str] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


class InboundMessage(BaseModel):
    """Canonical message produced by a channel adapter."""

    sender_id: str
    sender_name: Optional[str] = None
    external_id: str
    content: str = ""
    content_type: ContentType = "text"
    attachments: list[Attachment] = Field(default_factory=list)
    reply_to_id: Optional[str] = None
    timestamp: datetime
    raw_metadata: dict[str, Any] = Field(default_factory=dict)


class VerificationResponse(BaseModel):
    status_code: int
    body: str
