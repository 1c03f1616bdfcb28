import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, Uuid, text
from sqlalchemy.orm import relationship

from relaydesk.database import Base

OPEN_ESCALATION_FILTER = text("status IN ('pending', 'accepted')")


class Escalation(Base):
    __tablename__ = "escalations"
    __table_args__ = (
        # At most one open escalation per conversation.
        Index(
            "uq_escalations_open_conversation",
            "conversation_id",
            unique=True,
            postgresql_where=OPEN_ESCALATION_FILTER,
            sqlite_where=OPEN_ESCALATION_FILTER,
        ),
        Index("ix_escalations_company_status", "company_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    company_id = Column(Uuid, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, accepted, resolved, returned
    priority = Column(Text, nullable=False, default="normal")  # normal, high, urgent
    trigger_type = Column(Text, nullable=False)  # explicit_request, agent_failure, sentiment, frustration, keyword, turn_limit, manual
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    notified_at = Column(DateTime(timezone=True))
    accepted_by = Column(Text)
    accepted_at = Column(DateTime(timezone=True))
    first_response_at = Column(DateTime(timezone=True))
    resolved_by = Column(Text)
    resolved_at = Column(DateTime(timezone=True))
    resolution = Column(Text)
    returned_to_ai = Column(Boolean, nullable=False, default=False)
    transferred_from = Column(Text)
    transfer_reason = Column(Text)

    conversation = relationship("Conversation", back_populates="escalations")
