"""Periodic maintenance: abandon idle conversations, expire unaccepted escalations, age presence."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from relaydesk.config import settings
from relaydesk.logging_config import get_logger
from relaydesk.models import Conversation, Escalation
from relaydesk.services.conversation_store import ensure_timezone
from relaydesk.services.escalation_workflow import EscalationWorkflow
from relaydesk.services.presence_service import PresenceRegistry
from relaydesk.services.state_machine import OPEN_ESCALATION_STATUSES, ConversationStatus, EscalationStatus

logger = get_logger("sweep_service")


def abandon_inactive_conversations(db: Session, now: Optional[datetime] = None) -> dict:
    """Abandon conversations with no activity for ABANDON_AFTER_MINUTES and no open escalation."""
    now = now or datetime.now(timezone.utc)
    window_minutes = settings.abandon_after_minutes
    if window_minutes <= 0:
        return {"abandoned": 0, "items": []}

    cutoff = now - timedelta(minutes=window_minutes)
    open_escalations = select(Escalation.conversation_id).where(
        Escalation.status.in_([status.value for status in OPEN_ESCALATION_STATUSES])
    )
    candidates = (
        db.query(Conversation)
        .filter(
            Conversation.status == ConversationStatus.ACTIVE.value,
            Conversation.last_message_at < cutoff,
            Conversation.id.notin_(open_escalations),
        )
        .order_by(Conversation.last_message_at)
        .limit(settings.sweep_batch_size)
        .all()
    )

    workflow = EscalationWorkflow(db)
    abandoned = []
    for conversation in candidates:
        db.refresh(conversation)
        if ensure_timezone(conversation.last_message_at) >= cutoff:
            continue
        idle_minutes = int((now - ensure_timezone(conversation.last_message_at)).total_seconds() / 60)
        result = workflow.close_conversation(
            conversation.id,
            closed_by="system",
            note=f"No activity for {idle_minutes} min",
        )
        if not result.ok:
            # touched by a newer event since the scan
            continue
        abandoned.append({"conversation_id": str(conversation.id), "idle_minutes": idle_minutes})

    if abandoned:
        logger.info(f"Abandoned inactive conversations: {len(abandoned)}")
    return {"abandoned": len(abandoned), "items": abandoned}


def expire_unaccepted_escalations(db: Session, now: Optional[datetime] = None) -> dict:
    """Close pending escalations older than ESCALATION_TIMEOUT_MINUTES; the conversation is abandoned."""
    now = now or datetime.now(timezone.utc)
    timeout_minutes = settings.escalation_timeout_minutes
    if timeout_minutes <= 0:
        return {"expired": 0, "items": []}

    cutoff = now - timedelta(minutes=timeout_minutes)
    stale = (
        db.query(Escalation)
        .filter(Escalation.status == EscalationStatus.PENDING.value, Escalation.created_at < cutoff)
        .order_by(Escalation.created_at)
        .limit(settings.sweep_batch_size)
        .all()
    )

    workflow = EscalationWorkflow(db)
    expired = []
    for escalation in stale:
        minutes_waiting = int((now - ensure_timezone(escalation.created_at)).total_seconds() / 60)
        result = workflow.close_conversation(
            escalation.conversation_id,
            closed_by="system",
            note=f"Auto-closed after {minutes_waiting} min without an agent",
        )
        if not result.ok:
            continue
        expired.append(
            {
                "escalation_id": str(escalation.id),
                "conversation_id": str(escalation.conversation_id),
                "minutes_waiting": minutes_waiting,
            }
        )

    if expired:
        logger.warning(f"Expired unaccepted escalations: {len(expired)}")
    return {"expired": len(expired), "items": expired}


def run_sweep(db: Session, now: Optional[datetime] = None) -> dict:
    """One maintenance pass; commits once at the end."""
    now = now or datetime.now(timezone.utc)
    try:
        summary = {
            "presence": PresenceRegistry(db).expire_stale(now),
            "expired": expire_unaccepted_escalations(db, now)["expired"],
            "abandoned": abandon_inactive_conversations(db, now)["abandoned"],
        }
        if settings.auto_assign_enabled:
            summary["assigned"] = EscalationWorkflow(db).assign_waiting(limit=settings.sweep_batch_size)["assigned"]
        db.commit()
    except Exception:
        db.rollback()
        raise
    return summary
