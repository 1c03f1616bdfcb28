"""Fan-out of escalation events to the notification webhook."""

from datetime import datetime, timezone
from typing import Optional

import httpx

from relaydesk.config import settings
from relaydesk.database import SessionLocal
from relaydesk.logging_config import get_logger
from relaydesk.models import Escalation

logger = get_logger("notification_service")


def send_notification(event: str, payload: dict, url: Optional[str] = None) -> bool:
    """POST an event to the notification webhook.

    Args:
        event: Event name, e.g. ``escalation.created``
        payload: JSON-serialisable body
        url: Override for ``NOTIFICATION_WEBHOOK_URL``

    Returns:
        True if the webhook answered with a 2xx status
    """
    url = url or settings.notification_webhook_url
    if not url:
        logger.warning(f"Notification not configured: {event}")
        return False

    body = {"event": event, "sent_at": datetime.now(timezone.utc).isoformat(), "data": payload}
    try:
        with httpx.Client(timeout=settings.notification_timeout_seconds) as client:
            response = client.post(url, json=body)
            if response.is_success:
                return True
            logger.warning(
                "Notification rejected",
                extra={"context": {"event": event, "status_code": response.status_code}},
            )
            return False
    except httpx.HTTPError as e:
        logger.error(f"Failed to send notification: {e}", extra={"context": {"event": event}})
        return False


def escalation_payload(escalation, conversation) -> dict:
    return {
        "escalation_id": str(escalation.id),
        "conversation_id": str(conversation.id),
        "company_id": str(conversation.company_id),
        "channel": conversation.channel,
        "priority": escalation.priority,
        "trigger_type": escalation.trigger_type,
        "reason": escalation.reason,
        "status": escalation.status,
        "accepted_by": escalation.accepted_by,
    }


def notify_escalation_created(escalation, conversation) -> bool:
    """Alert eligible support agents about a new escalation; failures are logged only."""
    sent = send_notification("escalation.created", escalation_payload(escalation, conversation))
    if sent:
        escalation.notified_at = datetime.now(timezone.utc)
    return sent


def notify_escalation_by_id(escalation_id, session_factory=SessionLocal) -> bool:
    """Background-task entry point: load the escalation in a fresh session and notify."""
    if not settings.notification_webhook_url:
        logger.warning(f"Notification not configured: escalation.created {escalation_id}")
        return False

    db = session_factory()
    try:
        escalation = db.query(Escalation).filter(Escalation.id == escalation_id).first()
        if escalation is None or escalation.conversation is None:
            logger.warning(f"Escalation {escalation_id} vanished before notification")
            return False
        sent = notify_escalation_created(escalation, escalation.conversation)
        if sent:
            db.commit()
        return sent
    finally:
        db.close()
