from sqlalchemy import Column, DateTime, Integer, Text, Uuid

from relaydesk.database import Base


class AgentPresence(Base):
    __tablename__ = "agent_presence"

    user_id = Column(Text, primary_key=True)
    company_id = Column(Uuid, index=True)
    status = Column(Text, nullable=False, default="offline")  # online, busy, away, invisible, offline
    max_concurrent_chats = Column(Integer, nullable=False, default=5)
    current_chat_count = Column(Integer, nullable=False, default=0)
    last_status_change = Column(DateTime(timezone=True))
    last_activity_at = Column(DateTime(timezone=True))
