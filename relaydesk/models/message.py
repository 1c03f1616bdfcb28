import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from relaydesk.database import Base, JSONType


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    company_id = Column(Uuid, nullable=False)
    role = Column(Text, nullable=False)  # user, assistant, human_agent, system
    content = Column(Text, nullable=False)
    content_type = Column(Text, nullable=False, default="text")  # text, image, video, audio, file
    attachments = Column(JSONType, nullable=False, default=list)
    external_id = Column(Text)
    reply_to_id = Column(Text)
    author_id = Column(Text)  # support agent id for human_agent messages
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
