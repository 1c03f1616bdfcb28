import uuid

from sqlalchemy import Column, DateTime, Text, UniqueConstraint, Uuid

from relaydesk.database import Base


class InboundEvent(Base):
    """One row per provider event already processed; backs webhook idempotency."""

    __tablename__ = "inbound_events"
    __table_args__ = (UniqueConstraint("company_id", "channel", "external_id", name="uq_inbound_events_external"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=False)
    channel = Column(Text, nullable=False)
    external_id = Column(Text, nullable=False)
    conversation_id = Column(Uuid)
    received_at = Column(DateTime(timezone=True), nullable=False)
