import uuid

from sqlalchemy import Column, DateTime, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from relaydesk.database import Base, JSONType


class EndUser(Base):
    __tablename__ = "end_users"
    __table_args__ = (UniqueConstraint("company_id", "channel", "channel_user_id", name="uq_end_users_channel_user"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=False)
    channel = Column(Text, nullable=False)
    channel_user_id = Column(Text, nullable=False)
    name = Column(Text)
    user_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_active_at = Column(DateTime(timezone=True))

    conversations = relationship("Conversation", back_populates="end_user")
