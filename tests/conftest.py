import os
from datetime import datetime, timezone
from uuid import uuid4

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEP_WORKER_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from relaydesk.database import Base, create_db_engine, get_db
from relaydesk.main import app
from relaydesk.models import ChannelIntegration
from relaydesk.schemas.inbound import InboundMessage
from relaydesk.services.presence_service import PresenceRegistry


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so threads in concurrency tests share one database."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'relaydesk.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def company_id():
    return uuid4()


@pytest.fixture
def make_integration(db, company_id):
    def _make(channel="custom", webhook_secret=None, verify_token=None, config=None, status="active"):
        integration = ChannelIntegration(
            company_id=company_id,
            channel=channel,
            webhook_secret=webhook_secret,
            verify_token=verify_token,
            status=status,
            config=config or {},
            created_at=datetime.now(timezone.utc),
        )
        db.add(integration)
        db.commit()
        return integration

    return _make


@pytest.fixture
def integration(make_integration):
    return make_integration()


@pytest.fixture
def make_message():
    counter = {"n": 0}

    def _make(content="Hello", sender_id="end-user-1", external_id=None, **kwargs):
        counter["n"] += 1
        return InboundMessage(
            sender_id=sender_id,
            external_id=external_id or f"msg-{counter['n']}",
            content=content,
            timestamp=datetime.now(timezone.utc),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_agent(db, company_id):
    """Put a support agent online with the given capacity and current load."""

    def _make(user_id="agent-1", max_chats=5, current=0, status="online"):
        presence = PresenceRegistry(db).set_status(
            user_id, status=status, max_concurrent_chats=max_chats, company_id=company_id
        )
        presence.current_chat_count = current
        db.commit()
        return presence

    return _make


@pytest.fixture
def client(session_factory):
    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
