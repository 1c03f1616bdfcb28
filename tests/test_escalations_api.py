from uuid import uuid4

import pytest

from relaydesk.config import Settings
from relaydesk.services.router import ConversationRouter


@pytest.fixture
def escalation_id(db, integration, make_message):
    router = ConversationRouter(config=Settings(auto_assign_enabled=False))
    return router.handle_inbound(db, integration, make_message("talk to a human")).escalation_id


def _act(client, escalation_id, **body):
    return client.post(f"/escalations/{escalation_id}/actions", json=body)


class TestQueue:
    def test_pending_queue_for_company(self, client, escalation_id, company_id):
        response = client.get("/escalations", params={"company_id": str(company_id)})

        assert response.status_code == 200
        items = response.json()
        assert [item["id"] for item in items] == [str(escalation_id)]
        assert items[0]["priority"] == "high"

    def test_filter_by_status(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        assert client.get("/escalations").json() == []
        accepted = client.get("/escalations", params={"status": "accepted"}).json()
        assert accepted[0]["accepted_by"] == "agent-1"

    def test_get_escalation(self, client, escalation_id):
        assert client.get(f"/escalations/{escalation_id}").json()["status"] == "pending"
        assert client.get(f"/escalations/{uuid4()}").status_code == 404


class TestActions:
    def test_accept(self, client, escalation_id, make_agent):
        make_agent("agent-1")

        response = _act(client, escalation_id, action="accept", user_id="agent-1")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["conversation_status"] == "with_human"
        assert data["escalation"]["accepted_by"] == "agent-1"

    def test_second_accept_conflicts(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        make_agent("agent-2")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        response = _act(client, escalation_id, action="accept", user_id="agent-2")

        assert response.status_code == 409
        assert response.json()["error_code"] == "already_accepted"
        assert response.json()["error"] == "This conversation was just claimed by someone else"

    def test_accept_without_capacity(self, client, escalation_id, make_agent):
        make_agent("agent-1", max_chats=1, current=1)

        response = _act(client, escalation_id, action="accept", user_id="agent-1")

        assert response.status_code == 409
        assert response.json()["error_code"] == "capacity_exceeded"

    def test_resolve_requires_resolution(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        response = _act(client, escalation_id, action="resolve", user_id="agent-1")

        assert response.status_code == 400
        assert response.json()["error_code"] == "resolution_required"

    def test_resolve(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        response = _act(client, escalation_id, action="resolve", user_id="agent-1", resolution="Order re-sent")

        assert response.status_code == 200
        assert response.json()["conversation_status"] == "resolved"
        assert response.json()["escalation"]["resolution"] == "Order re-sent"
        assert client.get("/presence/agent-1").json()["current_chat_count"] == 0

    def test_resolve_returning_to_automation(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        response = _act(
            client, escalation_id, action="resolve", user_id="agent-1", resolution="Answered", return_to_ai=True
        )

        assert response.json()["conversation_status"] == "active"

    def test_return_to_ai(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        response = _act(client, escalation_id, action="return_to_ai", user_id="agent-1")

        assert response.status_code == 200
        assert response.json()["escalation"]["status"] == "returned"

    def test_unknown_escalation(self, client):
        response = _act(client, uuid4(), action="accept", user_id="agent-1")
        assert response.status_code == 404

    def test_unknown_action(self, client, escalation_id):
        assert _act(client, escalation_id, action="skip", user_id="agent-1").status_code == 422

    def test_transfer(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        make_agent("agent-2")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        response = _act(
            client, escalation_id, action="transfer", user_id="agent-1", target_user_id="agent-2", reason="Shift end"
        )

        assert response.status_code == 200
        data = response.json()
        assert data["conversation_status"] == "with_human"
        assert data["escalation"]["accepted_by"] == "agent-2"
        assert data["escalation"]["transferred_from"] == "agent-1"
        assert client.get("/presence/agent-1").json()["current_chat_count"] == 0
        assert client.get("/presence/agent-2").json()["current_chat_count"] == 1

    def test_transfer_without_target(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        response = _act(client, escalation_id, action="transfer", user_id="agent-1")

        assert response.status_code == 400
        assert response.json()["error_code"] == "target_required"

    def test_transfer_to_full_agent(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        make_agent("agent-2", max_chats=2, current=2)
        _act(client, escalation_id, action="accept", user_id="agent-1")

        response = _act(client, escalation_id, action="transfer", user_id="agent-1", target_user_id="agent-2")

        assert response.status_code == 409
        assert response.json()["error_code"] == "capacity_exceeded"
        assert client.get(f"/escalations/{escalation_id}").json()["accepted_by"] == "agent-1"


class TestQueuePositionApi:
    def test_queue_and_detail_carry_position(self, client, escalation_id, company_id):
        items = client.get("/escalations", params={"company_id": str(company_id)}).json()

        assert items[0]["queue_position"] == 1
        assert client.get(f"/escalations/{escalation_id}").json()["queue_position"] == 1

    def test_accepted_escalation_has_no_position(self, client, escalation_id, make_agent):
        make_agent("agent-1")
        _act(client, escalation_id, action="accept", user_id="agent-1")

        assert client.get(f"/escalations/{escalation_id}").json()["queue_position"] is None


class TestStatsApi:
    def test_stats_for_company(self, client, escalation_id, company_id, make_agent):
        make_agent("agent-1")
        _act(client, escalation_id, action="accept", user_id="agent-1")
        _act(client, escalation_id, action="return_to_ai", user_id="agent-1")

        response = client.get("/escalations/stats", params={"company_id": str(company_id)})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["by_status"]["returned"] == 1
        assert data["by_trigger_type"] == {"explicit_request": 1}
        assert data["return_to_ai_rate"] == 1.0
        assert data["average_wait_seconds"] is not None

    def test_stats_requires_company(self, client):
        assert client.get("/escalations/stats").status_code == 422
