import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from relaydesk.database import Base, JSONType


class ChannelIntegration(Base):
    __tablename__ = "channel_integrations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=False)
    agent_id = Column(Uuid)
    channel = Column(Text, nullable=False)
    webhook_secret = Column(Text)
    verify_token = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, inactive
    config = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True))
