from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch
from uuid import uuid4

import httpx

from relaydesk.models import Escalation
from relaydesk.services.notification_service import (
    escalation_payload,
    notify_escalation_by_id,
    notify_escalation_created,
    send_notification,
)
from relaydesk.services.router import ConversationRouter


def _escalation():
    return SimpleNamespace(
        id=uuid4(),
        priority="high",
        trigger_type="explicit_request",
        reason="Customer requested to speak with a human agent",
        status="pending",
        accepted_by=None,
        notified_at=None,
    )


def _conversation():
    return SimpleNamespace(id=uuid4(), company_id=uuid4(), channel="whatsapp")


class TestSendNotification:
    @patch("relaydesk.services.notification_service.settings.notification_webhook_url", None)
    def test_returns_false_when_not_configured(self):
        assert send_notification("escalation.created", {}) is False

    @patch("relaydesk.services.notification_service.httpx.Client")
    def test_posts_event_envelope(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(is_success=True, status_code=200)

        result = send_notification("escalation.created", {"escalation_id": "e-1"}, url="https://hooks.example/notify")

        assert result is True
        call_args = mock_client.post.call_args
        assert call_args[0][0] == "https://hooks.example/notify"
        body = call_args[1]["json"]
        assert body["event"] == "escalation.created"
        assert body["data"] == {"escalation_id": "e-1"}
        assert "sent_at" in body

    @patch("relaydesk.services.notification_service.httpx.Client")
    def test_rejected_status_returns_false(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(is_success=False, status_code=500)

        assert send_notification("escalation.created", {}, url="https://hooks.example/notify") is False

    @patch("relaydesk.services.notification_service.httpx.Client")
    def test_transport_error_is_swallowed(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ConnectError("refused")

        assert send_notification("escalation.created", {}, url="https://hooks.example/notify") is False


class TestNotifyEscalation:
    def test_payload_fields(self):
        escalation, conversation = _escalation(), _conversation()

        payload = escalation_payload(escalation, conversation)

        assert payload["escalation_id"] == str(escalation.id)
        assert payload["conversation_id"] == str(conversation.id)
        assert payload["channel"] == "whatsapp"
        assert payload["priority"] == "high"

    @patch("relaydesk.services.notification_service.send_notification", return_value=True)
    def test_success_stamps_notified_at(self, mock_send):
        escalation = _escalation()

        assert notify_escalation_created(escalation, _conversation()) is True
        assert escalation.notified_at is not None
        assert mock_send.call_args[0][0] == "escalation.created"

    @patch("relaydesk.services.notification_service.send_notification", return_value=False)
    def test_failure_leaves_notified_at_empty(self, mock_send):
        escalation = _escalation()

        assert notify_escalation_created(escalation, _conversation()) is False
        assert escalation.notified_at is None

    @patch("relaydesk.services.notification_service.settings.notification_webhook_url", "https://hooks.example/notify")
    @patch("relaydesk.services.notification_service.send_notification", return_value=True)
    def test_by_id_loads_and_commits(self, mock_send, db, integration, make_message, session_factory):
        router = ConversationRouter()
        outcome = router.handle_inbound(db, integration, make_message("talk to a human"))

        assert notify_escalation_by_id(outcome.escalation_id, session_factory=session_factory) is True

        check = session_factory()
        try:
            assert check.get(Escalation, outcome.escalation_id).notified_at is not None
        finally:
            check.close()

    @patch("relaydesk.services.notification_service.settings.notification_webhook_url", None)
    def test_by_id_skips_when_not_configured(self):
        session_factory = Mock()
        assert notify_escalation_by_id(uuid4(), session_factory=session_factory) is False
        session_factory.assert_not_called()
