"""Client for the automated-agent runtime and the background dispatch that feeds it."""

import json
from typing import Iterator, Optional
from uuid import UUID

import httpx

from relaydesk.config import settings
from relaydesk.database import SessionLocal
from relaydesk.logging_config import get_logger
from relaydesk.services.notification_service import notify_escalation_by_id
from relaydesk.services.router import conversation_router

logger = get_logger("agent_runtime")

TERMINAL_EVENTS = ("complete", "error")


class AgentRuntimeClient:
    """Streams ``{type, data}`` events (thinking, tool_call, delta, complete, error)."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.agent_runtime_url or "").rstrip("/")
        self.timeout = timeout or settings.agent_runtime_timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def send_message_stream(self, conversation_id: UUID, content: str, metadata: Optional[dict] = None) -> Iterator[dict]:
        url = f"{self.base_url}/conversations/{conversation_id}/messages"
        body = {"content": content, "metadata": metadata or {}}
        with httpx.Client(timeout=self.timeout) as client:
            with client.stream("POST", url, json=body) as response:
                response.raise_for_status()
                for line in response.iter_lines():
                    event = _parse_event_line(line)
                    if event is not None:
                        yield event


def _parse_event_line(line: str) -> Optional[dict]:
    """Accepts NDJSON lines and SSE ``data:`` lines."""
    line = (line or "").strip()
    if line.startswith("data:"):
        line = line[len("data:"):].strip()
    if not line or line == "[DONE]":
        return None
    try:
        event = json.loads(line)
    except ValueError:
        logger.warning("Unparseable agent event line", extra={"context": {"line": line[:200]}})
        return None
    if not isinstance(event, dict) or "type" not in event:
        return None
    return event


def dispatch_to_agent(
    conversation_id: UUID,
    content: str,
    router=None,
    client: Optional[AgentRuntimeClient] = None,
    session_factory=SessionLocal,
) -> Optional[str]:
    """Run one automated-agent turn and feed its terminal event back into the router.

    Returns the terminal event type that was applied, or None.
    """
    router = router or conversation_router
    client = client or AgentRuntimeClient()
    if not client.configured:
        logger.debug("Agent runtime not configured", extra={"context": {"conversation_id": str(conversation_id)}})
        return None

    terminal = None
    try:
        for event in client.send_message_stream(conversation_id, content):
            if event["type"] in TERMINAL_EVENTS:
                terminal = event
                break
    except httpx.HTTPError as e:
        logger.error(
            f"Agent runtime request failed: {e}",
            extra={"context": {"conversation_id": str(conversation_id)}},
        )
        terminal = {"type": "error", "data": {"retryable": True, "message": str(e)}}

    if terminal is None:
        terminal = {"type": "error", "data": {"retryable": True, "message": "stream ended without a result"}}

    db = session_factory()
    try:
        outcome = router.handle_agent_event(db, conversation_id, terminal["type"], terminal.get("data") or {})
    finally:
        db.close()

    if outcome.escalation_created:
        notify_escalation_by_id(outcome.escalation_id, session_factory=session_factory)
    return terminal["type"]
