import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from relaydesk.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_lookup", "company_id", "end_user_id", "channel", "agent_id"),
        Index("ix_conversations_status_last_message", "status", "last_message_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=False)
    end_user_id = Column(Uuid, ForeignKey("end_users.id"), nullable=False)
    agent_id = Column(Uuid)  # automated agent
    channel = Column(Text, nullable=False)  # web, whatsapp, telegram, messenger, instagram, slack, teams, custom
    status = Column(Text, nullable=False, default="active")  # active, waiting_human, with_human, resolved, abandoned
    assigned_user_id = Column(Text)
    message_count = Column(Integer, nullable=False, default=0)
    turns_since_human = Column(Integer, nullable=False, default=0)
    agent_failure_count = Column(Integer, nullable=False, default=0)
    sentiment = Column(Float, nullable=False, default=0.0)
    tags = Column(JSONType, nullable=False, default=list)
    conversation_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_message_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))

    end_user = relationship("EndUser", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")
    escalations = relationship("Escalation", back_populates="conversation")
