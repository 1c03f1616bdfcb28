"""Conversation router: ties channel input to the store, policy and escalation workflow."""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from relaydesk.config import Settings, settings
from relaydesk.database import dialect_insert
from relaydesk.logging_config import conversation_logger, get_logger
from relaydesk.models import ChannelIntegration, Conversation, InboundEvent, Message
from relaydesk.schemas.inbound import InboundMessage
from relaydesk.services import sentiment
from relaydesk.services.conversation_store import ConversationStore
from relaydesk.services.escalation_policy import AgentSignal, EscalationDecision, EscalationPolicy, PolicyConfig
from relaydesk.services.escalation_workflow import EscalationWorkflow
from relaydesk.services.result import ErrorCode, Result
from relaydesk.services.state_machine import ConversationStatus

logger = get_logger("router")


class KeyedLock:
    """In-process mutex per key; entries are dropped when nobody holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class RouteOutcome:
    status: str  # accepted, duplicate, ignored
    conversation_id: Optional[UUID] = None
    conversation_status: Optional[str] = None
    message_id: Optional[UUID] = None
    escalation_id: Optional[UUID] = None
    escalation_created: bool = False
    assigned_to: Optional[str] = None
    dispatch_to_agent: bool = False
    content: Optional[str] = None


class ConversationRouter:
    def __init__(self, config: Optional[Settings] = None, locks: Optional[KeyedLock] = None):
        self.config = config or settings
        self.locks = locks or KeyedLock()

    def handle_inbound(
        self,
        db: Session,
        integration: ChannelIntegration,
        message: InboundMessage,
        signal: Optional[AgentSignal] = None,
    ) -> RouteOutcome:
        """Apply one inbound message and commit before returning.

        Events from the same end user on the same channel are serialized;
        a repeated ``(channel, external_id)`` is reported as a duplicate
        without touching any state.
        """
        key = (str(integration.company_id), integration.channel, message.sender_id)
        with self.locks.hold(key):
            try:
                outcome = self._ingest(db, integration, message, signal)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return outcome

    def handle_agent_event(self, db: Session, conversation_id: UUID, event_type: str, data: Optional[dict] = None) -> RouteOutcome:
        """Apply a terminal event from the automated-agent stream."""
        data = data or {}
        conversation = ConversationStore(db).get(conversation_id)
        if conversation is None:
            return RouteOutcome(status="ignored", conversation_id=conversation_id)

        with self.locks.hold(self._conversation_key(conversation)):
            try:
                outcome = self._apply_agent_event(db, conversation, event_type, data)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return outcome

    def record_human_reply(self, db: Session, conversation_id: UUID, user_id: str, content: str) -> Result[Message]:
        store = ConversationStore(db)
        conversation = store.get(conversation_id)
        if conversation is None:
            return Result.failure("Conversation not found", ErrorCode.NOT_FOUND)

        with self.locks.hold(self._conversation_key(conversation)):
            db.refresh(conversation)
            if (
                conversation.status != ConversationStatus.WITH_HUMAN.value
                or conversation.assigned_user_id != user_id
            ):
                return Result.failure("Conversation is not assigned to this agent", ErrorCode.NOT_ACCEPTED)
            try:
                message = store.append_reply(conversation.id, "human_agent", content, author_id=user_id)
                EscalationWorkflow(db, store).record_first_response(conversation)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return Result.success(message)

    def close(self, db: Session, conversation_id: UUID, closed_by: str = "system") -> Result[Conversation]:
        """Explicit closure: any non-terminal conversation becomes abandoned."""
        store = ConversationStore(db)
        conversation = store.get(conversation_id)
        if conversation is None:
            return Result.failure("Conversation not found", ErrorCode.NOT_FOUND)

        with self.locks.hold(self._conversation_key(conversation)):
            try:
                result = EscalationWorkflow(db, store).close_conversation(conversation_id, closed_by=closed_by)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return result

    def policy_for(self, integration: Optional[ChannelIntegration]) -> EscalationPolicy:
        overrides = None
        if integration is not None and isinstance(integration.config, dict):
            overrides = integration.config.get("escalation")
        return EscalationPolicy(PolicyConfig.from_settings(self.config, overrides))

    def _ingest(
        self,
        db: Session,
        integration: ChannelIntegration,
        message: InboundMessage,
        signal: Optional[AgentSignal],
    ) -> RouteOutcome:
        if not self._record_event(db, integration, message):
            logger.info(
                "Duplicate inbound event",
                extra={"context": {"channel": integration.channel, "external_id": message.external_id}},
            )
            return RouteOutcome(status="duplicate")

        store = ConversationStore(db)
        end_user = store.get_or_create_end_user(
            integration.company_id, integration.channel, message.sender_id, message.sender_name
        )
        conversation = store.get_or_create(
            integration.company_id, end_user.id, integration.channel, integration.agent_id
        )
        log = conversation_logger(logger, conversation)

        record = store.append_message(conversation.id, message)
        score = sentiment.analyze(message.content)
        if score.magnitude > 0:
            conversation.sentiment = sentiment.rolling_sentiment(
                conversation.sentiment, score.score, self.config.sentiment_smoothing
            )
            record.message_metadata = {**(record.message_metadata or {}), "sentiment": round(score.score, 3)}
        db.flush()

        db.execute(
            update(InboundEvent)
            .where(
                InboundEvent.company_id == integration.company_id,
                InboundEvent.channel == integration.channel,
                InboundEvent.external_id == message.external_id,
            )
            .values(conversation_id=conversation.id)
            .execution_options(synchronize_session=False)
        )

        outcome = RouteOutcome(
            status="accepted",
            conversation_id=conversation.id,
            message_id=record.id,
            content=message.content,
        )

        if conversation.status == ConversationStatus.ACTIVE.value:
            decision = self.policy_for(integration).evaluate(conversation, message, signal)
            if decision.should_escalate:
                self._escalate(db, store, conversation, decision, outcome)
            else:
                outcome.dispatch_to_agent = True

        outcome.conversation_status = conversation.status
        log.info(
            "Inbound message routed",
            context={
                "external_id": message.external_id,
                "status": conversation.status,
                "escalation_id": str(outcome.escalation_id) if outcome.escalation_id else None,
            },
        )
        return outcome

    def _apply_agent_event(self, db: Session, conversation: Conversation, event_type: str, data: dict) -> RouteOutcome:
        store = ConversationStore(db)
        outcome = RouteOutcome(status="accepted", conversation_id=conversation.id)

        if event_type == "complete":
            if conversation.status != ConversationStatus.ACTIVE.value:
                # a human took over while the agent was still answering
                outcome.status = "ignored"
            else:
                content = data.get("content") or data.get("text")
                if content:
                    record = store.append_reply(conversation.id, "assistant", content, metadata=data.get("metadata"))
                    outcome.message_id = record.id
                conversation.agent_failure_count = 0
                if data.get("cannot_help"):
                    self._evaluate_signal(db, store, conversation, AgentSignal(cannot_help=True), outcome)
        elif event_type == "error":
            conversation.agent_failure_count = (conversation.agent_failure_count or 0) + 1
            db.flush()
            signal = AgentSignal(
                unrecoverable_error=not data.get("retryable", False),
                failure_count=conversation.agent_failure_count,
            )
            logger.warning(
                "Automated agent error",
                extra={
                    "context": {
                        "conversation_id": str(conversation.id),
                        "failure_count": conversation.agent_failure_count,
                        "retryable": bool(data.get("retryable", False)),
                        "error": data.get("message"),
                    }
                },
            )
            self._evaluate_signal(db, store, conversation, signal, outcome)
        else:
            outcome.status = "ignored"

        outcome.conversation_status = conversation.status
        return outcome

    def _evaluate_signal(self, db, store, conversation, signal, outcome) -> None:
        if conversation.status != ConversationStatus.ACTIVE.value:
            return
        integration = (
            db.query(ChannelIntegration)
            .filter(
                ChannelIntegration.company_id == conversation.company_id,
                ChannelIntegration.channel == conversation.channel,
            )
            .first()
        )
        decision = self.policy_for(integration).evaluate(conversation, None, signal)
        if decision.should_escalate:
            self._escalate(db, store, conversation, decision, outcome)

    def _escalate(
        self,
        db: Session,
        store: ConversationStore,
        conversation: Conversation,
        decision: EscalationDecision,
        outcome: RouteOutcome,
    ) -> None:
        workflow = EscalationWorkflow(db, store)
        is_new = workflow.get_open(conversation.id) is None
        result = workflow.create_escalation(conversation, decision)
        db.refresh(conversation)
        if not result.ok:
            logger.warning(
                "Escalation not created",
                extra={"context": {"conversation_id": str(conversation.id), "error": result.error}},
            )
            return

        escalation = result.value
        outcome.escalation_id = escalation.id
        outcome.escalation_created = is_new
        if not (is_new and self.config.auto_assign_enabled):
            return

        assigned = workflow.auto_assign(escalation)
        db.refresh(conversation)
        if assigned.ok:
            outcome.assigned_to = assigned.value.accepted_by
        else:
            # stays waiting_human for manual accept or the sweep's queue pass
            logger.info(
                "Auto-assignment deferred",
                extra={"context": {"escalation_id": str(escalation.id), "reason": assigned.error_code}},
            )

    def _record_event(self, db: Session, integration: ChannelIntegration, message: InboundMessage) -> bool:
        result = db.execute(
            dialect_insert(db, InboundEvent)
            .values(
                company_id=integration.company_id,
                channel=integration.channel,
                external_id=message.external_id,
                received_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["company_id", "channel", "external_id"])
        )
        return result.rowcount == 1

    @staticmethod
    def _conversation_key(conversation: Conversation) -> tuple:
        sender_id = conversation.end_user.channel_user_id if conversation.end_user else str(conversation.end_user_id)
        return (str(conversation.company_id), conversation.channel, sender_id)


conversation_router = ConversationRouter()
