from uuid import uuid4

import pytest

from relaydesk.config import Settings
from relaydesk.services.escalation_workflow import EscalationWorkflow
from relaydesk.services.router import ConversationRouter


@pytest.fixture
def router():
    return ConversationRouter(config=Settings(auto_assign_enabled=False))


class TestConversationsApi:
    def test_get_conversation(self, client, db, router, integration, make_message):
        outcome = router.handle_inbound(db, integration, make_message("Hi"))

        response = client.get(f"/conversations/{outcome.conversation_id}")

        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert response.json()["message_count"] == 1
        assert client.get(f"/conversations/{uuid4()}").status_code == 404

    def test_agent_complete_event(self, client, db, router, integration, make_message):
        outcome = router.handle_inbound(db, integration, make_message("Hi"))

        response = client.post(
            f"/conversations/{outcome.conversation_id}/agent-events",
            json={"type": "complete", "data": {"content": "Hello! How can I help?"}},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["conversation_status"] == "active"

    def test_agent_event_for_unknown_conversation(self, client):
        response = client.post(f"/conversations/{uuid4()}/agent-events", json={"type": "complete", "data": {}})
        assert response.status_code == 404

    def test_human_message_requires_assignment(self, client, db, router, integration, make_message):
        outcome = router.handle_inbound(db, integration, make_message("talk to a human"))

        response = client.post(
            f"/conversations/{outcome.conversation_id}/human-messages",
            json={"user_id": "agent-1", "content": "Hi"},
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "not_accepted"

    def test_human_message_from_assigned_agent(self, client, db, router, integration, make_message, make_agent):
        outcome = router.handle_inbound(db, integration, make_message("talk to a human"))
        make_agent("agent-1")
        EscalationWorkflow(db).accept(outcome.escalation_id, "agent-1")
        db.commit()

        response = client.post(
            f"/conversations/{outcome.conversation_id}/human-messages",
            json={"user_id": "agent-1", "content": "Hi, this is Sam"},
        )

        assert response.status_code == 200
        assert response.json()["conversation_status"] == "with_human"

    def test_close(self, client, db, router, integration, make_message):
        outcome = router.handle_inbound(db, integration, make_message("Hi"))

        response = client.post(f"/conversations/{outcome.conversation_id}/close")

        assert response.json()["conversation_status"] == "abandoned"
        assert client.post(f"/conversations/{uuid4()}/close").status_code == 404
