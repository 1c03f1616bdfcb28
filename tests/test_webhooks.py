import hashlib
import hmac
import json
from unittest.mock import patch
from uuid import UUID, uuid4

from sqlalchemy.exc import OperationalError

from relaydesk.models import Conversation, Message
from relaydesk.routers import webhooks as webhooks_router


def _custom_body(message_id="c-1", content="Hello", sender_id="visitor-1"):
    return json.dumps(
        {"eventType": "message", "messageId": message_id, "senderId": sender_id, "content": content}
    ).encode()


def _sign(secret, body):
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestHealth:
    def test_health_lists_channels(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert "whatsapp" in response.json()["channels"]


class TestReceiveWebhook:
    def test_unknown_integration(self, client):
        response = client.post(f"/webhooks/{uuid4()}", content=_custom_body())
        assert response.status_code == 404

    def test_inactive_integration(self, client, make_integration):
        integration = make_integration(status="inactive")
        response = client.post(f"/webhooks/{integration.id}", content=_custom_body())
        assert response.status_code == 404

    def test_invalid_signature_is_rejected(self, client, make_integration, db):
        integration = make_integration(webhook_secret="hook-secret")

        missing = client.post(f"/webhooks/{integration.id}", content=_custom_body())
        wrong = client.post(
            f"/webhooks/{integration.id}",
            content=_custom_body(),
            headers={"X-Webhook-Signature": _sign("other-secret", _custom_body())},
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert db.query(Message).count() == 0

    def test_signed_message_is_accepted_once(self, client, make_integration, db):
        integration = make_integration(webhook_secret="hook-secret")
        body = _custom_body()
        headers = {"X-Webhook-Signature": _sign("hook-secret", body)}

        first = client.post(f"/webhooks/{integration.id}", content=body, headers=headers)
        retry = client.post(f"/webhooks/{integration.id}", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["status"] == "accepted"
        assert first.json()["conversation_status"] == "active"
        assert retry.status_code == 200
        assert retry.json()["status"] == "duplicate"
        assert db.query(Message).count() == 1

    def test_malformed_json(self, client, integration):
        response = client.post(f"/webhooks/{integration.id}", content=b"{not json")
        assert response.status_code == 400

    def test_out_of_range_timestamp_is_accepted(self, client, integration, db):
        body = json.dumps(
            {"eventType": "message", "messageId": "c-9", "senderId": "visitor-1", "content": "Hi", "timestamp": 10**25}
        ).encode()

        response = client.post(f"/webhooks/{integration.id}", content=body)

        assert response.status_code == 200
        assert response.json()["status"] == "accepted"
        assert db.query(Message).count() == 1

    def test_non_message_event_is_ignored(self, client, integration):
        body = json.dumps({"eventType": "typing", "messageId": "t-1", "senderId": "visitor-1"}).encode()
        response = client.post(f"/webhooks/{integration.id}", content=body)
        assert response.json() == {
            "status": "ignored",
            "conversation_id": None,
            "conversation_status": None,
            "escalation_id": None,
        }

    def test_escalating_message(self, client, integration, db):
        response = client.post(f"/webhooks/{integration.id}", content=_custom_body(content="I want a human now"))

        data = response.json()
        assert data["conversation_status"] == "waiting_human"
        assert data["escalation_id"] is not None
        assert db.get(Conversation, UUID(data["conversation_id"])).status == "waiting_human"

    def test_agent_dispatch_runs_after_response(self, client, integration):
        with patch.object(webhooks_router, "dispatch_to_agent") as mock_dispatch:
            response = client.post(f"/webhooks/{integration.id}", content=_custom_body(content="Where is my order?"))

        conversation_id = response.json()["conversation_id"]
        mock_dispatch.assert_called_once()
        assert str(mock_dispatch.call_args[0][0]) == conversation_id
        assert mock_dispatch.call_args[0][1] == "Where is my order?"

    def test_escalation_notification_is_scheduled(self, client, integration):
        with patch.object(webhooks_router, "notify_escalation_by_id") as mock_notify, patch.object(
            webhooks_router, "dispatch_to_agent"
        ) as mock_dispatch:
            response = client.post(f"/webhooks/{integration.id}", content=_custom_body(content="talk to a human"))

        assert str(mock_notify.call_args[0][0]) == response.json()["escalation_id"]
        mock_dispatch.assert_not_called()

    def test_storage_failure_returns_503(self, client, integration):
        error = OperationalError("INSERT", {}, Exception("database is locked"))
        with patch.object(webhooks_router, "_ingest", side_effect=error):
            response = client.post(f"/webhooks/{integration.id}", content=_custom_body())

        assert response.status_code == 503

    def test_slack_url_verification(self, client, make_integration):
        integration = make_integration(channel="slack")
        body = json.dumps({"type": "url_verification", "challenge": "3eZbrw1aBm2rZgRNFdxV2595E9CY3gmdALWMmHkvFXO7tYXAYM8P"})

        response = client.post(f"/webhooks/{integration.id}", content=body)

        assert response.json() == {"challenge": "3eZbrw1aBm2rZgRNFdxV2595E9CY3gmdALWMmHkvFXO7tYXAYM8P"}


class TestVerifyWebhook:
    def test_meta_challenge(self, client, make_integration):
        integration = make_integration(channel="whatsapp", verify_token="verify-me")

        response = client.get(
            f"/webhooks/{integration.id}",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
        )

        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_meta_wrong_token(self, client, make_integration):
        integration = make_integration(channel="messenger", verify_token="verify-me")

        response = client.get(
            f"/webhooks/{integration.id}",
            params={"hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "1"},
        )

        assert response.status_code == 403

    def test_channel_without_handshake(self, client, make_integration):
        integration = make_integration(channel="telegram")
        assert client.get(f"/webhooks/{integration.id}").json() == {"status": "ok"}
