"""Per-channel webhook endpoints: provider handshakes and inbound message ingestion."""

import json
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relaydesk.channels import ChannelAdapter, get_adapter
from relaydesk.database import get_db
from relaydesk.logging_config import get_logger
from relaydesk.models import ChannelIntegration
from relaydesk.schemas.webhook import WebhookAck
from relaydesk.services.agent_runtime import dispatch_to_agent
from relaydesk.services.notification_service import notify_escalation_by_id
from relaydesk.services.router import RouteOutcome, conversation_router

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger("webhooks")


def _load_integration(db: Session, integration_id: UUID) -> tuple[ChannelIntegration, ChannelAdapter]:
    integration = (
        db.query(ChannelIntegration)
        .filter(ChannelIntegration.id == integration_id, ChannelIntegration.status == "active")
        .first()
    )
    if integration is None:
        raise HTTPException(status_code=404, detail="Integration not found")
    try:
        adapter = get_adapter(integration.channel)
    except KeyError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return integration, adapter


@router.get("/{integration_id}")
def verify_webhook(integration_id: UUID, request: Request, db: Session = Depends(get_db)):
    """Provider verification handshake (e.g. Meta hub.challenge)."""
    integration, adapter = _load_integration(db, integration_id)
    response = adapter.handle_verification(dict(request.query_params), integration.verify_token)
    if response is None:
        return {"status": "ok"}

    logger.info(
        "Webhook verification",
        extra={"context": {"integration_id": str(integration_id), "status_code": response.status_code}},
    )
    return PlainTextResponse(response.body, status_code=response.status_code)


def _ingest(db: Session, integration: ChannelIntegration, messages) -> list[RouteOutcome]:
    return [conversation_router.handle_inbound(db, integration, message) for message in messages]


@router.post("/{integration_id}")
async def receive_webhook(
    integration_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Validate, normalize and route an inbound provider event.

    State is committed before the response so provider retries are
    idempotent; automated-agent turns and notifications run afterwards.
    """
    integration, adapter = _load_integration(db, integration_id)
    raw_body = await request.body()

    if integration.webhook_secret:
        signature = request.headers.get(adapter.signature_header) if adapter.signature_header else None
        timestamp = request.headers.get(adapter.timestamp_header) if adapter.timestamp_header else None
        if not adapter.validate_signature(raw_body, signature, integration.webhook_secret, timestamp=timestamp):
            logger.warning(
                "Invalid webhook signature",
                extra={"context": {"integration_id": str(integration_id), "channel": integration.channel}},
            )
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed JSON payload")

    challenge = adapter.handle_challenge(payload)
    if challenge is not None:
        return challenge

    messages = adapter.parse_messages(payload)
    if not messages:
        return WebhookAck(status="ignored")

    try:
        outcomes = await run_in_threadpool(_ingest, db, integration, messages)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Webhook ingestion failed",
            extra={"context": {"integration_id": str(integration_id), "error": str(e)}},
        )
        return JSONResponse(status_code=503, content={"detail": "Temporarily unavailable"})

    for outcome in outcomes:
        if outcome.escalation_created:
            background_tasks.add_task(notify_escalation_by_id, outcome.escalation_id)
        if outcome.dispatch_to_agent:
            background_tasks.add_task(dispatch_to_agent, outcome.conversation_id, outcome.content or "")

    accepted = [outcome for outcome in outcomes if outcome.status == "accepted"]
    if not accepted:
        return WebhookAck(status="duplicate")
    last = accepted[-1]
    return WebhookAck(
        status="accepted",
        conversation_id=last.conversation_id,
        conversation_status=last.conversation_status,
        escalation_id=last.escalation_id,
    )
