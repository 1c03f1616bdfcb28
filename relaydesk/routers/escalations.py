from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from relaydesk.database import get_db
from relaydesk.models import Escalation
from relaydesk.schemas.escalation import (
    EscalationActionRequest,
    EscalationActionResponse,
    EscalationOut,
    EscalationStatsOut,
)
from relaydesk.services.escalation_workflow import EscalationWorkflow
from relaydesk.services.result import ErrorCode

router = APIRouter(prefix="/escalations", tags=["escalations"])

ERROR_STATUS = {
    ErrorCode.NOT_FOUND.value: 404,
    ErrorCode.RESOLUTION_REQUIRED.value: 400,
    ErrorCode.TARGET_REQUIRED.value: 400,
    ErrorCode.ALREADY_ACCEPTED.value: 409,
    ErrorCode.CAPACITY_EXCEEDED.value: 409,
    ErrorCode.NOT_ACCEPTED.value: 409,
    ErrorCode.STATE_CONFLICT.value: 409,
}


@router.get("", response_model=list[EscalationOut])
def list_escalations(
    company_id: Optional[UUID] = None,
    status: str = "pending",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """Escalation queue; pending items come most urgent and oldest first."""
    workflow = EscalationWorkflow(db)
    if status == "pending":
        # positions count within each company's queue
        positions = {}
        items = []
        for escalation in workflow.pending_queue(company_id, limit):
            positions[escalation.company_id] = positions.get(escalation.company_id, 0) + 1
            item = EscalationOut.model_validate(escalation)
            item.queue_position = positions[escalation.company_id]
            items.append(item)
        return items

    query = db.query(Escalation).filter(Escalation.status == status)
    if company_id is not None:
        query = query.filter(Escalation.company_id == company_id)
    return query.order_by(Escalation.created_at.desc()).limit(limit).all()


@router.get("/stats", response_model=EscalationStatsOut)
def escalation_stats(company_id: UUID, since: Optional[datetime] = None, db: Session = Depends(get_db)):
    """Counts by status and trigger, average wait/response/resolution times, return-to-AI rate."""
    stats = EscalationWorkflow(db).stats(company_id, since=since)
    return EscalationStatsOut(company_id=company_id, since=since, **stats)


@router.get("/{escalation_id}", response_model=EscalationOut)
def get_escalation(escalation_id: UUID, db: Session = Depends(get_db)):
    workflow = EscalationWorkflow(db)
    escalation = workflow.get(escalation_id)
    if escalation is None:
        raise HTTPException(status_code=404, detail="Escalation not found")
    item = EscalationOut.model_validate(escalation)
    item.queue_position = workflow.queue_position(escalation_id)
    return item


@router.post("/{escalation_id}/actions", response_model=EscalationActionResponse)
def handle_escalation_action(
    escalation_id: UUID,
    request: EscalationActionRequest,
    db: Session = Depends(get_db),
):
    """Support agent action on an escalation (accept/resolve/return_to_ai/transfer)."""
    workflow = EscalationWorkflow(db)

    if request.action == "accept":
        result = workflow.accept(escalation_id, request.user_id)
    elif request.action == "resolve":
        result = workflow.resolve(
            escalation_id,
            resolution=request.resolution,
            resolved_by=request.user_id,
            return_to_ai=request.return_to_ai,
        )
    elif request.action == "transfer":
        result = workflow.transfer(
            escalation_id,
            from_user=request.user_id,
            to_user=request.target_user_id,
            reason=request.reason,
        )
    else:
        result = workflow.return_to_ai(escalation_id, request.user_id)

    if not result.ok:
        db.rollback()
        response = EscalationActionResponse(
            success=False,
            action=request.action,
            escalation_id=escalation_id,
            error=result.error,
            error_code=result.error_code,
        )
        return JSONResponse(
            status_code=ERROR_STATUS.get(result.error_code, 400),
            content=response.model_dump(mode="json"),
        )

    db.commit()
    escalation = result.value
    return EscalationActionResponse(
        success=True,
        action=request.action,
        escalation_id=escalation.id,
        conversation_status=escalation.conversation.status if escalation.conversation else None,
        escalation=EscalationOut.model_validate(escalation),
    )
