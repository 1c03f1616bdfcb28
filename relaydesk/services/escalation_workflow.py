"""Accept / resolve / return-to-automation / transfer actions on escalations, plus queue reporting.

Every action runs as a short sequence of conditional updates inside the
caller's transaction: claim capacity, move the escalation, move the
conversation. When a later step loses its compare-and-swap, the earlier
steps are compensated before the failure is returned, so a failed action
never leaves a capacity slot or a half-moved escalation behind.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.orm import Session

from relaydesk.logging_config import get_logger
from relaydesk.models import Conversation, Escalation
from relaydesk.services import state_machine
from relaydesk.services.conversation_store import ConversationStore, StateConflictError, ensure_timezone
from relaydesk.services.escalation_policy import EscalationDecision
from relaydesk.services.presence_service import PresenceRegistry
from relaydesk.services.result import ErrorCode, Result
from relaydesk.services.state_machine import (
    OPEN_ESCALATION_STATUSES,
    ConversationStatus,
    EscalationStatus,
    InvalidTransitionError,
    can_transition_escalation,
    is_terminal,
)

logger = get_logger("escalation_workflow")

QUEUE_RANK = {"urgent": 0, "high": 1}

PRIORITY_ORDER = case(
    (Escalation.priority == "urgent", QUEUE_RANK["urgent"]),
    (Escalation.priority == "high", QUEUE_RANK["high"]),
    else_=2,
)


def _average(values: list[float]) -> Optional[float]:
    return round(sum(values) / len(values), 1) if values else None


class EscalationWorkflow:
    def __init__(
        self,
        db: Session,
        store: Optional[ConversationStore] = None,
        presence: Optional[PresenceRegistry] = None,
    ):
        self.db = db
        self.store = store or ConversationStore(db)
        self.presence = presence or PresenceRegistry(db)

    def get(self, escalation_id: UUID) -> Optional[Escalation]:
        return self.db.query(Escalation).filter(Escalation.id == escalation_id).first()

    def get_open(self, conversation_id: UUID) -> Optional[Escalation]:
        return (
            self.db.query(Escalation)
            .filter(
                Escalation.conversation_id == conversation_id,
                Escalation.status.in_([status.value for status in OPEN_ESCALATION_STATUSES]),
            )
            .first()
        )

    def pending_queue(self, company_id: Optional[UUID] = None, limit: Optional[int] = None) -> list[Escalation]:
        """Pending escalations, most urgent and oldest first."""
        query = self.db.query(Escalation).filter(Escalation.status == EscalationStatus.PENDING.value)
        if company_id is not None:
            query = query.filter(Escalation.company_id == company_id)
        query = query.order_by(PRIORITY_ORDER, Escalation.created_at, Escalation.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    def queue_position(self, escalation_id: UUID) -> Optional[int]:
        """1-based place in the company's pending queue; None once the escalation has left it."""
        escalation = self.get(escalation_id)
        if escalation is None or escalation.status != EscalationStatus.PENDING.value:
            return None

        rank = QUEUE_RANK.get(escalation.priority, 2)
        ahead = (
            self.db.query(func.count(Escalation.id))
            .filter(
                Escalation.company_id == escalation.company_id,
                Escalation.status == EscalationStatus.PENDING.value,
                or_(
                    PRIORITY_ORDER < rank,
                    and_(PRIORITY_ORDER == rank, Escalation.created_at < escalation.created_at),
                    and_(
                        PRIORITY_ORDER == rank,
                        Escalation.created_at == escalation.created_at,
                        Escalation.id < escalation.id,
                    ),
                ),
            )
            .scalar()
        )
        return ahead + 1

    def stats(self, company_id: UUID, since: Optional[datetime] = None) -> dict:
        """Escalation counts and timings for a company.

        Wait is creation to first accept, first response is creation to the
        first human reply, resolution is creation to close for escalations a
        human handled. Times are in seconds.
        """
        query = self.db.query(
            Escalation.status,
            Escalation.trigger_type,
            Escalation.returned_to_ai,
            Escalation.transferred_from,
            Escalation.created_at,
            Escalation.notified_at,
            Escalation.accepted_at,
            Escalation.first_response_at,
            Escalation.resolved_at,
        ).filter(Escalation.company_id == company_id)
        if since is not None:
            query = query.filter(Escalation.created_at >= since)

        by_status = {status.value: 0 for status in EscalationStatus}
        by_trigger_type = {}
        waits, first_responses, resolutions = [], [], []
        returned = notified = transferred = 0

        for row in query.all():
            by_status[row.status] = by_status.get(row.status, 0) + 1
            by_trigger_type[row.trigger_type] = by_trigger_type.get(row.trigger_type, 0) + 1
            created_at = ensure_timezone(row.created_at)
            if row.accepted_at is not None:
                waits.append((ensure_timezone(row.accepted_at) - created_at).total_seconds())
                if row.resolved_at is not None:
                    resolutions.append((ensure_timezone(row.resolved_at) - created_at).total_seconds())
            if row.first_response_at is not None:
                first_responses.append((ensure_timezone(row.first_response_at) - created_at).total_seconds())
            returned += 1 if row.returned_to_ai else 0
            notified += 1 if row.notified_at is not None else 0
            transferred += 1 if row.transferred_from is not None else 0

        total = sum(by_status.values())
        return {
            "total": total,
            "by_status": by_status,
            "by_trigger_type": by_trigger_type,
            "average_wait_seconds": _average(waits),
            "average_first_response_seconds": _average(first_responses),
            "average_resolution_seconds": _average(resolutions),
            "return_to_ai_rate": round(returned / total, 4) if total else 0.0,
            "notified": notified,
            "transferred": transferred,
        }

    def create_escalation(self, conversation: Conversation, decision: EscalationDecision) -> Result[Escalation]:
        """Open an escalation and move the conversation to waiting_human.

        Returns the already-open escalation instead of creating a second one.
        """
        existing = self.get_open(conversation.id)
        if existing:
            return Result.success(existing)

        try:
            self.store.set_status(
                conversation.id, ConversationStatus.ACTIVE, state_machine.escalate(ConversationStatus.ACTIVE)
            )
        except (StateConflictError, InvalidTransitionError) as e:
            existing = self.get_open(conversation.id)
            if existing:
                return Result.success(existing)
            return Result.failure(str(e), ErrorCode.STATE_CONFLICT)

        escalation = Escalation(
            conversation_id=conversation.id,
            company_id=conversation.company_id,
            status=EscalationStatus.PENDING.value,
            priority=decision.priority.value,
            trigger_type=decision.trigger_type or "manual",
            reason=decision.reason or "Escalated to a human agent",
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(escalation)
        self.db.flush()

        logger.info(
            "Escalation created",
            extra={
                "context": {
                    "escalation_id": str(escalation.id),
                    "conversation_id": str(conversation.id),
                    "priority": escalation.priority,
                    "trigger_type": escalation.trigger_type,
                }
            },
        )
        return Result.success(escalation)

    def accept(self, escalation_id: UUID, user_id: str) -> Result[Escalation]:
        escalation = self.get(escalation_id)
        if escalation is None:
            return Result.failure("Escalation not found", ErrorCode.NOT_FOUND)

        if escalation.status == EscalationStatus.ACCEPTED.value:
            if escalation.accepted_by == user_id:
                return Result.success(escalation)
            return Result.failure("This conversation was just claimed by someone else", ErrorCode.ALREADY_ACCEPTED)
        if escalation.status != EscalationStatus.PENDING.value:
            return Result.failure(f"Escalation is already {escalation.status}", ErrorCode.STATE_CONFLICT)

        if not self.presence.try_claim(user_id):
            return Result.failure(
                "Agent is unavailable or has no free chat slots", ErrorCode.CAPACITY_EXCEEDED
            )

        try:
            now = datetime.now(timezone.utc)
            if not self._swap_escalation(
                escalation.id,
                EscalationStatus.PENDING,
                EscalationStatus.ACCEPTED,
                accepted_by=user_id,
                accepted_at=now,
            ):
                self.presence.release(user_id)
                self.db.refresh(escalation)
                if escalation.status == EscalationStatus.ACCEPTED.value and escalation.accepted_by == user_id:
                    return Result.success(escalation)
                if escalation.status == EscalationStatus.ACCEPTED.value:
                    return Result.failure(
                        "This conversation was just claimed by someone else", ErrorCode.ALREADY_ACCEPTED
                    )
                return Result.failure(f"Escalation is already {escalation.status}", ErrorCode.STATE_CONFLICT)

            try:
                self.store.set_status(
                    escalation.conversation_id,
                    ConversationStatus.WAITING_HUMAN,
                    state_machine.accept(ConversationStatus.WAITING_HUMAN),
                    assigned_user_id=user_id,
                )
            except (StateConflictError, InvalidTransitionError) as e:
                self._restore_escalation(escalation.id, status=EscalationStatus.PENDING.value, accepted_by=None, accepted_at=None)
                self.presence.release(user_id)
                self.db.refresh(escalation)
                logger.warning(
                    "Accept rolled back",
                    extra={"context": {"escalation_id": str(escalation.id), "user_id": user_id, "error": str(e)}},
                )
                return Result.failure(str(e), ErrorCode.STATE_CONFLICT)
        except Exception:
            # The claim must not outlive a failed accept.
            self.db.rollback()
            raise

        self.db.refresh(escalation)
        logger.info(
            "Escalation accepted",
            extra={"context": {"escalation_id": str(escalation.id), "user_id": user_id}},
        )
        self._audit(escalation.conversation_id, "accept")
        return Result.success(escalation)

    def resolve(
        self,
        escalation_id: UUID,
        resolution: Optional[str],
        resolved_by: str,
        return_to_ai: bool = False,
    ) -> Result[Escalation]:
        """Close an accepted escalation; the conversation ends or goes back to automation."""
        if not resolution or not resolution.strip():
            return Result.failure("Resolution is required", ErrorCode.RESOLUTION_REQUIRED)

        escalation = self.get(escalation_id)
        if escalation is None:
            return Result.failure("Escalation not found", ErrorCode.NOT_FOUND)

        if escalation.status == EscalationStatus.RESOLVED.value and escalation.resolved_by == resolved_by:
            return Result.success(escalation)
        if escalation.status != EscalationStatus.ACCEPTED.value:
            return Result.failure("Escalation is not accepted", ErrorCode.NOT_ACCEPTED)
        if escalation.accepted_by != resolved_by:
            return Result.failure("Escalation was accepted by another agent", ErrorCode.NOT_ACCEPTED)

        previous = self._snapshot(escalation)
        now = datetime.now(timezone.utc)
        if not self._swap_escalation(
            escalation.id,
            EscalationStatus.ACCEPTED,
            EscalationStatus.RESOLVED,
            accepted_by=resolved_by,
            resolved_by=resolved_by,
            resolved_at=now,
            resolution=resolution.strip(),
            returned_to_ai=return_to_ai,
        ):
            self.db.refresh(escalation)
            if escalation.status == EscalationStatus.RESOLVED.value and escalation.resolved_by == resolved_by:
                return Result.success(escalation)
            return Result.failure("Escalation is not accepted", ErrorCode.NOT_ACCEPTED)

        if return_to_ai:
            target = state_machine.return_to_automation(ConversationStatus.WITH_HUMAN)
        else:
            target = state_machine.resolve(ConversationStatus.WITH_HUMAN)
        changes = {"assigned_user_id": None}
        if return_to_ai:
            changes.update(turns_since_human=0, agent_failure_count=0)
        try:
            self.store.set_status(escalation.conversation_id, ConversationStatus.WITH_HUMAN, target, **changes)
        except (StateConflictError, InvalidTransitionError) as e:
            self._restore_escalation(escalation.id, **previous)
            self.db.refresh(escalation)
            return Result.failure(str(e), ErrorCode.STATE_CONFLICT)

        self.presence.release(resolved_by)
        self.db.refresh(escalation)
        logger.info(
            "Escalation resolved",
            extra={
                "context": {
                    "escalation_id": str(escalation.id),
                    "resolved_by": resolved_by,
                    "return_to_ai": return_to_ai,
                }
            },
        )
        self._audit(escalation.conversation_id, "resolve")
        return Result.success(escalation)

    def return_to_ai(self, escalation_id: UUID, user_id: str) -> Result[Escalation]:
        escalation = self.get(escalation_id)
        if escalation is None:
            return Result.failure("Escalation not found", ErrorCode.NOT_FOUND)

        if escalation.status == EscalationStatus.RETURNED.value and escalation.accepted_by == user_id:
            return Result.success(escalation)
        if escalation.status != EscalationStatus.ACCEPTED.value or escalation.accepted_by != user_id:
            return Result.failure("Escalation was not accepted by this agent", ErrorCode.NOT_ACCEPTED)

        previous = self._snapshot(escalation)
        if not self._swap_escalation(
            escalation.id,
            EscalationStatus.ACCEPTED,
            EscalationStatus.RETURNED,
            accepted_by=user_id,
            resolved_by=user_id,
            resolved_at=datetime.now(timezone.utc),
            returned_to_ai=True,
        ):
            self.db.refresh(escalation)
            if escalation.status == EscalationStatus.RETURNED.value and escalation.accepted_by == user_id:
                return Result.success(escalation)
            return Result.failure("Escalation was not accepted by this agent", ErrorCode.NOT_ACCEPTED)

        try:
            self.store.set_status(
                escalation.conversation_id,
                ConversationStatus.WITH_HUMAN,
                state_machine.return_to_automation(ConversationStatus.WITH_HUMAN),
                assigned_user_id=None,
                turns_since_human=0,
                agent_failure_count=0,
            )
        except (StateConflictError, InvalidTransitionError) as e:
            self._restore_escalation(escalation.id, **previous)
            self.db.refresh(escalation)
            return Result.failure(str(e), ErrorCode.STATE_CONFLICT)

        self.presence.release(user_id)
        self.db.refresh(escalation)
        logger.info(
            "Escalation returned to automation",
            extra={"context": {"escalation_id": str(escalation.id), "user_id": user_id}},
        )
        self._audit(escalation.conversation_id, "return_to_ai")
        return Result.success(escalation)

    def transfer(
        self,
        escalation_id: UUID,
        from_user: str,
        to_user: str,
        reason: Optional[str] = None,
    ) -> Result[Escalation]:
        """Hand an accepted escalation to another support agent.

        The target's slot is claimed first. The source's slot is released only
        after both the escalation and the conversation point at the target.
        """
        if not to_user or to_user == from_user:
            return Result.failure("Transfer needs a different target agent", ErrorCode.TARGET_REQUIRED)

        escalation = self.get(escalation_id)
        if escalation is None:
            return Result.failure("Escalation not found", ErrorCode.NOT_FOUND)

        if (
            escalation.status == EscalationStatus.ACCEPTED.value
            and escalation.accepted_by == to_user
            and escalation.transferred_from == from_user
        ):
            return Result.success(escalation)
        if escalation.status != EscalationStatus.ACCEPTED.value or escalation.accepted_by != from_user:
            return Result.failure("Escalation was not accepted by this agent", ErrorCode.NOT_ACCEPTED)

        if not self.presence.try_claim(to_user):
            return Result.failure(
                "Target agent is unavailable or has no free chat slots", ErrorCode.CAPACITY_EXCEEDED
            )

        previous = self._snapshot(escalation)
        try:
            moved = self.db.execute(
                update(Escalation)
                .where(
                    Escalation.id == escalation.id,
                    Escalation.status == EscalationStatus.ACCEPTED.value,
                    Escalation.accepted_by == from_user,
                )
                .values(
                    accepted_by=to_user,
                    transferred_from=from_user,
                    transfer_reason=reason,
                )
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                self.presence.release(to_user)
                self.db.refresh(escalation)
                return Result.failure("Escalation is no longer held by this agent", ErrorCode.NOT_ACCEPTED)

            try:
                self.store.assign(escalation.conversation_id, to_user, from_user_id=from_user)
            except StateConflictError as e:
                self._restore_escalation(escalation.id, **previous)
                self.presence.release(to_user)
                self.db.refresh(escalation)
                logger.warning(
                    "Transfer rolled back",
                    extra={
                        "context": {
                            "escalation_id": str(escalation.id),
                            "from_user": from_user,
                            "to_user": to_user,
                            "error": str(e),
                        }
                    },
                )
                return Result.failure(str(e), ErrorCode.STATE_CONFLICT)
        except Exception:
            self.db.rollback()
            raise

        self.presence.release(from_user)
        self.db.refresh(escalation)
        logger.info(
            "Escalation transferred",
            extra={
                "context": {
                    "escalation_id": str(escalation.id),
                    "from_user": from_user,
                    "to_user": to_user,
                    "reason": reason,
                }
            },
        )
        self._audit(escalation.conversation_id, "transfer")
        return Result.success(escalation)

    def auto_assign(self, escalation: Escalation) -> Result[Escalation]:
        """Offer the escalation to eligible agents, best candidate first."""
        tried = []
        for candidate in self.presence.select_candidates(escalation.company_id):
            tried.append(candidate.user_id)
            result = self.accept(escalation.id, candidate.user_id)
            if result.ok or result.error_code != ErrorCode.CAPACITY_EXCEEDED.value:
                return result

        logger.info(
            "No agent available for escalation",
            extra={"context": {"escalation_id": str(escalation.id), "tried": tried}},
        )
        return Result.failure("No support agent has free capacity", ErrorCode.CAPACITY_EXCEEDED)

    def assign_waiting(self, company_id: Optional[UUID] = None, limit: Optional[int] = None) -> dict:
        """Drain the pending queue while agents have capacity."""
        assigned = []
        for escalation in self.pending_queue(company_id, limit):
            result = self.auto_assign(escalation)
            if result.ok:
                assigned.append({"escalation_id": str(escalation.id), "user_id": result.value.accepted_by})
            elif result.error_code == ErrorCode.CAPACITY_EXCEEDED.value and company_id is not None:
                break
        return {"assigned": len(assigned), "items": assigned}

    def record_first_response(self, conversation: Conversation) -> Optional[Escalation]:
        """Stamp the first human reply on the accepted escalation."""
        escalation = self.get_open(conversation.id)
        if escalation is None or escalation.status != EscalationStatus.ACCEPTED.value:
            return None
        if escalation.first_response_at is None:
            escalation.first_response_at = datetime.now(timezone.utc)
            self.db.flush()
        return escalation

    def close_conversation(
        self,
        conversation_id: UUID,
        closed_by: str = "system",
        note: Optional[str] = None,
    ) -> Result[Conversation]:
        """Move a non-terminal conversation to abandoned, closing its open escalation."""
        conversation = self.store.get(conversation_id)
        if conversation is None:
            return Result.failure("Conversation not found", ErrorCode.NOT_FOUND)
        if is_terminal(conversation.status):
            if conversation.status == ConversationStatus.ABANDONED.value:
                return Result.success(conversation)
            return Result.failure(f"Conversation is already {conversation.status}", ErrorCode.STATE_CONFLICT)

        from_status = conversation.status
        escalation = self.get_open(conversation_id)
        previous = self._snapshot(escalation) if escalation else None
        released_user = None
        if escalation is not None:
            now = datetime.now(timezone.utc)
            if not self._swap_escalation(
                escalation.id,
                EscalationStatus(escalation.status),
                EscalationStatus.RESOLVED,
                resolved_by=closed_by,
                resolved_at=now,
                resolution=note or f"Closed by {closed_by}",
            ):
                return Result.failure("Escalation changed concurrently", ErrorCode.STATE_CONFLICT)
            if previous["status"] == EscalationStatus.ACCEPTED.value:
                released_user = previous["accepted_by"]

        try:
            conversation = self.store.set_status(
                conversation_id,
                from_status,
                state_machine.abandon(from_status),
                assigned_user_id=None,
            )
        except (StateConflictError, InvalidTransitionError) as e:
            if escalation is not None:
                self._restore_escalation(escalation.id, **previous)
            return Result.failure(str(e), ErrorCode.STATE_CONFLICT)

        if released_user:
            self.presence.release(released_user)

        logger.info(
            "Conversation closed",
            extra={
                "context": {
                    "conversation_id": str(conversation_id),
                    "from_status": from_status,
                    "closed_by": closed_by,
                }
            },
        )
        self._audit(conversation_id, "close")
        return Result.success(conversation)

    def _swap_escalation(
        self,
        escalation_id: UUID,
        from_status: EscalationStatus,
        to_status: EscalationStatus,
        accepted_by: Optional[str] = None,
        **values,
    ) -> bool:
        """Conditional escalation status update; `accepted_by` narrows the match when moving out of accepted."""
        if not can_transition_escalation(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

        criteria = [Escalation.id == escalation_id, Escalation.status == from_status.value]
        if from_status == EscalationStatus.ACCEPTED and accepted_by is not None:
            criteria.append(Escalation.accepted_by == accepted_by)
        elif accepted_by is not None:
            values["accepted_by"] = accepted_by

        result = self.db.execute(
            update(Escalation)
            .where(*criteria)
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _audit(self, conversation_id: UUID, action: str) -> list[str]:
        """Log any conversation/escalation invariant broken after `action`."""
        conversation = self.store.get(conversation_id)
        if conversation is None:
            return []
        self.db.refresh(conversation)
        escalation = self.get_open(conversation_id)
        if escalation is not None:
            self.db.refresh(escalation)

        violations = state_machine.check_invariants(conversation, escalation)
        if violations:
            logger.error(
                "Conversation invariants violated",
                extra={
                    "context": {
                        "conversation_id": str(conversation_id),
                        "action": action,
                        "violations": violations,
                    }
                },
            )
        return violations

    def _restore_escalation(self, escalation_id: UUID, **values) -> None:
        """Compensation: write back the columns captured before the action."""
        self.db.execute(
            update(Escalation)
            .where(Escalation.id == escalation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _snapshot(escalation: Escalation) -> dict:
        return {
            "status": escalation.status,
            "accepted_by": escalation.accepted_by,
            "accepted_at": ensure_timezone(escalation.accepted_at),
            "resolved_by": escalation.resolved_by,
            "resolved_at": ensure_timezone(escalation.resolved_at),
            "resolution": escalation.resolution,
            "returned_to_ai": bool(escalation.returned_to_ai),
            "transferred_from": escalation.transferred_from,
            "transfer_reason": escalation.transfer_reason,
        }
