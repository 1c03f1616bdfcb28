from unittest.mock import MagicMock, Mock, patch
from uuid import uuid4

import httpx

from relaydesk.config import Settings
from relaydesk.models import Escalation
from relaydesk.services.agent_runtime import AgentRuntimeClient, _parse_event_line, dispatch_to_agent
from relaydesk.services.router import ConversationRouter, RouteOutcome


def _client(events=None, error=None):
    client = Mock()
    client.configured = True
    if error is not None:
        client.send_message_stream.side_effect = error
    else:
        client.send_message_stream.return_value = iter(events or [])
    return client


class TestParseEventLine:
    def test_ndjson_line(self):
        assert _parse_event_line('{"type": "delta", "data": {"text": "Hel"}}') == {"type": "delta", "data": {"text": "Hel"}}

    def test_sse_data_line(self):
        assert _parse_event_line('data: {"type": "complete", "data": {}}')["type"] == "complete"

    def test_blank_done_and_garbage_lines(self):
        assert _parse_event_line("") is None
        assert _parse_event_line("data: [DONE]") is None
        assert _parse_event_line("not json") is None
        assert _parse_event_line('{"no_type": true}') is None


class TestAgentRuntimeClient:
    def test_not_configured_without_url(self):
        assert AgentRuntimeClient(base_url="").configured is False

    @patch("relaydesk.services.agent_runtime.httpx.Client")
    def test_streams_events(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        response = MagicMock()
        response.iter_lines.return_value = [
            '{"type": "thinking", "data": {}}',
            "",
            'data: {"type": "complete", "data": {"content": "Hi!"}}',
        ]
        mock_client.stream.return_value.__enter__.return_value = response
        conversation_id = uuid4()

        client = AgentRuntimeClient(base_url="https://agents.example/", timeout=5)
        events = list(client.send_message_stream(conversation_id, "Hello"))

        assert [event["type"] for event in events] == ["thinking", "complete"]
        method, url = mock_client.stream.call_args[0]
        assert method == "POST"
        assert url == f"https://agents.example/conversations/{conversation_id}/messages"
        assert mock_client.stream.call_args[1]["json"] == {"content": "Hello", "metadata": {}}


class TestDispatchToAgent:
    def test_not_configured_is_noop(self):
        router = Mock()
        client = Mock(configured=False)

        assert dispatch_to_agent(uuid4(), "Hi", router=router, client=client) is None
        router.handle_agent_event.assert_not_called()

    def test_terminal_event_is_fed_back(self):
        router = Mock()
        session = Mock()
        conversation_id = uuid4()
        client = _client(
            [
                {"type": "thinking", "data": {}},
                {"type": "delta", "data": {"text": "Hi"}},
                {"type": "complete", "data": {"content": "Hi there"}},
            ]
        )

        result = dispatch_to_agent(conversation_id, "Hello", router=router, client=client, session_factory=lambda: session)

        assert result == "complete"
        router.handle_agent_event.assert_called_once_with(session, conversation_id, "complete", {"content": "Hi there"})
        session.close.assert_called_once()

    def test_transport_error_becomes_retryable_error_event(self):
        router = Mock()
        client = _client(error=httpx.ConnectError("refused"))

        result = dispatch_to_agent(uuid4(), "Hello", router=router, client=client, session_factory=Mock())

        assert result == "error"
        event_type, data = router.handle_agent_event.call_args[0][2:]
        assert event_type == "error"
        assert data["retryable"] is True

    def test_stream_without_terminal_event(self):
        router = Mock()
        client = _client([{"type": "thinking", "data": {}}])

        assert dispatch_to_agent(uuid4(), "Hello", router=router, client=client, session_factory=Mock()) == "error"

    @patch("relaydesk.services.agent_runtime.notify_escalation_by_id")
    def test_escalation_from_agent_event_is_notified(self, mock_notify):
        escalation_id = uuid4()
        router = Mock()
        router.handle_agent_event.return_value = RouteOutcome(
            status="accepted", escalation_id=escalation_id, escalation_created=True
        )
        session_factory = Mock()
        client = _client([{"type": "error", "data": {"retryable": False}}])

        dispatch_to_agent(uuid4(), "Hello", router=router, client=client, session_factory=session_factory)

        mock_notify.assert_called_once_with(escalation_id, session_factory=session_factory)

    @patch("relaydesk.services.agent_runtime.notify_escalation_by_id")
    def test_no_notification_without_escalation(self, mock_notify):
        router = Mock()
        router.handle_agent_event.return_value = RouteOutcome(status="accepted")
        client = _client([{"type": "complete", "data": {"content": "Done"}}])

        dispatch_to_agent(uuid4(), "Hello", router=router, client=client, session_factory=Mock())

        mock_notify.assert_not_called()

    @patch("relaydesk.services.notification_service.settings.notification_webhook_url", "https://hooks.example/notify")
    @patch("relaydesk.services.notification_service.send_notification", return_value=True)
    def test_unrecoverable_agent_error_notifies_agents(
        self, mock_send, db, session_factory, integration, make_message
    ):
        router = ConversationRouter(config=Settings(auto_assign_enabled=False))
        inbound = router.handle_inbound(db, integration, make_message("Where is my order?"))
        client = _client([{"type": "error", "data": {"retryable": False}}])

        dispatch_to_agent(inbound.conversation_id, "Where is my order?", router=router, client=client, session_factory=session_factory)

        db.expire_all()
        escalation = db.query(Escalation).filter(Escalation.conversation_id == inbound.conversation_id).one()
        mock_send.assert_called_once()
        event, payload = mock_send.call_args[0]
        assert event == "escalation.created"
        assert payload["escalation_id"] == str(escalation.id)
        assert payload["trigger_type"] == "agent_failure"
        assert escalation.notified_at is not None
