from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from relaydesk.database import get_db
from relaydesk.schemas.conversation import (
    AgentEventRequest,
    ConversationActionResponse,
    ConversationOut,
    HumanMessageRequest,
)
from relaydesk.services.conversation_store import ConversationStore
from relaydesk.services.notification_service import notify_escalation_by_id
from relaydesk.services.result import ErrorCode
from relaydesk.services.router import conversation_router

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _failure(conversation_id: UUID, result) -> JSONResponse:
    status_code = 404 if result.error_code == ErrorCode.NOT_FOUND.value else 409
    response = ConversationActionResponse(
        success=False,
        conversation_id=conversation_id,
        error=result.error,
        error_code=result.error_code,
    )
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


@router.get("/{conversation_id}", response_model=ConversationOut)
def get_conversation(conversation_id: UUID, db: Session = Depends(get_db)):
    conversation = ConversationStore(db).get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.post("/{conversation_id}/close", response_model=ConversationActionResponse)
def close_conversation(conversation_id: UUID, closed_by: str = "system", db: Session = Depends(get_db)):
    result = conversation_router.close(db, conversation_id, closed_by=closed_by)
    if not result.ok:
        return _failure(conversation_id, result)
    return ConversationActionResponse(
        success=True,
        conversation_id=conversation_id,
        conversation_status=result.value.status,
    )


@router.post("/{conversation_id}/agent-events", response_model=ConversationActionResponse)
def receive_agent_event(
    conversation_id: UUID,
    event: AgentEventRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Automated-agent results re-entering the router."""
    if ConversationStore(db).get(conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    outcome = conversation_router.handle_agent_event(db, conversation_id, event.type, event.data)
    if outcome.escalation_created:
        background_tasks.add_task(notify_escalation_by_id, outcome.escalation_id)
    return ConversationActionResponse(
        success=outcome.status == "accepted",
        conversation_id=conversation_id,
        conversation_status=outcome.conversation_status,
        escalation_id=outcome.escalation_id,
    )


@router.post("/{conversation_id}/human-messages", response_model=ConversationActionResponse)
def post_human_message(conversation_id: UUID, request: HumanMessageRequest, db: Session = Depends(get_db)):
    result = conversation_router.record_human_reply(db, conversation_id, request.user_id, request.content)
    if not result.ok:
        return _failure(conversation_id, result)
    return ConversationActionResponse(
        success=True,
        conversation_id=conversation_id,
        conversation_status="with_human",
    )
