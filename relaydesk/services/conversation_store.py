"""Durable conversation state with compare-and-swap status transitions."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from relaydesk.logging_config import get_logger
from relaydesk.models import Conversation, EndUser, Message
from relaydesk.schemas.inbound import InboundMessage
from relaydesk.services.state_machine import TERMINAL_STATUSES, ConversationStatus, transition

logger = get_logger("conversation_store")


class StateConflictError(Exception):
    """Conditional status update matched no row."""

    def __init__(self, conversation_id, expected: str, actual: Optional[str]):
        self.conversation_id = conversation_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Conversation {conversation_id} is {actual}, expected {expected}")


def ensure_timezone(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _status_value(status) -> str:
    return ConversationStatus(status).value


class ConversationStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, conversation_id: UUID) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def get_or_create_end_user(
        self,
        company_id: UUID,
        channel: str,
        sender_id: str,
        name: Optional[str] = None,
    ) -> EndUser:
        now = datetime.now(timezone.utc)
        end_user = (
            self.db.query(EndUser)
            .filter(
                EndUser.company_id == company_id,
                EndUser.channel == channel,
                EndUser.channel_user_id == sender_id,
            )
            .first()
        )
        if end_user:
            end_user.last_active_at = now
            if name and not end_user.name:
                end_user.name = name
            return end_user

        end_user = EndUser(
            company_id=company_id,
            channel=channel,
            channel_user_id=sender_id,
            name=name,
            user_metadata={},
            created_at=now,
            last_active_at=now,
        )
        self.db.add(end_user)
        self.db.flush()
        return end_user

    def get_or_create(
        self,
        company_id: UUID,
        end_user_id: UUID,
        channel: str,
        agent_id: Optional[UUID] = None,
    ) -> Conversation:
        """Return the open conversation for the pair, or start a new active one."""
        query = self.db.query(Conversation).filter(
            Conversation.company_id == company_id,
            Conversation.end_user_id == end_user_id,
            Conversation.channel == channel,
            Conversation.status.notin_([status.value for status in TERMINAL_STATUSES]),
        )
        if agent_id is None:
            query = query.filter(Conversation.agent_id.is_(None))
        else:
            query = query.filter(Conversation.agent_id == agent_id)

        conversation = query.order_by(Conversation.created_at.desc()).first()
        if conversation:
            return conversation

        conversation = Conversation(
            company_id=company_id,
            end_user_id=end_user_id,
            agent_id=agent_id,
            channel=channel,
            status=ConversationStatus.ACTIVE.value,
            message_count=0,
            turns_since_human=0,
            agent_failure_count=0,
            sentiment=0.0,
            tags=[],
            conversation_metadata={},
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(conversation)
        self.db.flush()
        logger.info(
            "Conversation created",
            extra={"context": {"conversation_id": str(conversation.id), "channel": channel}},
        )
        return conversation

    def append_message(self, conversation_id: UUID, message: InboundMessage) -> Message:
        """Store an end-user message and bump the conversation counters."""
        conversation = self._require(conversation_id)
        record = Message(
            conversation_id=conversation.id,
            company_id=conversation.company_id,
            role="user",
            content=message.content,
            content_type=message.content_type,
            attachments=[attachment.model_dump() for attachment in message.attachments],
            external_id=message.external_id,
            reply_to_id=message.reply_to_id,
            message_metadata=message.raw_metadata,
            created_at=message.timestamp,
        )
        self.db.add(record)
        self._touch(conversation, user_turn=True)
        return record

    def append_reply(
        self,
        conversation_id: UUID,
        role: str,
        content: str,
        author_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Message:
        """Store an outbound turn (assistant, human_agent or system)."""
        conversation = self._require(conversation_id)
        record = Message(
            conversation_id=conversation.id,
            company_id=conversation.company_id,
            role=role,
            content=content,
            content_type="text",
            attachments=[],
            author_id=author_id,
            message_metadata=metadata or {},
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(record)
        self._touch(conversation, user_turn=False, human_turn=role == "human_agent")
        return record

    def set_status(self, conversation_id: UUID, from_status, to_status, **changes) -> Conversation:
        """Move the conversation from `from_status` to `to_status` atomically.

        Extra column values in `changes` are written in the same statement.
        Raises InvalidTransitionError for transitions the state machine
        forbids, and StateConflictError when the stored status is not
        `from_status`.
        """
        transition(from_status, to_status)
        values = {"status": _status_value(to_status), **changes}
        if ConversationStatus(to_status) in TERMINAL_STATUSES:
            values.setdefault("closed_at", datetime.now(timezone.utc))

        result = self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.status == _status_value(from_status))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.db.query(Conversation.status).filter(Conversation.id == conversation_id).scalar()
            raise StateConflictError(conversation_id, _status_value(from_status), current)

        return self._reload(conversation_id)

    def assign(self, conversation_id: UUID, user_id: str, from_user_id: Optional[str] = None) -> Conversation:
        """Point a claimed conversation at another support agent.

        With `from_user_id`, only a conversation still held by that agent moves.
        """
        criteria = [Conversation.id == conversation_id, Conversation.status == ConversationStatus.WITH_HUMAN.value]
        if from_user_id is not None:
            criteria.append(Conversation.assigned_user_id == from_user_id)
        result = self.db.execute(
            update(Conversation)
            .where(*criteria)
            .values(assigned_user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.db.query(Conversation.status).filter(Conversation.id == conversation_id).scalar()
            raise StateConflictError(conversation_id, ConversationStatus.WITH_HUMAN.value, current)
        return self._reload(conversation_id)

    def unassign(self, conversation_id: UUID) -> Conversation:
        self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(assigned_user_id=None)
            .execution_options(synchronize_session=False)
        )
        return self._reload(conversation_id)

    def _require(self, conversation_id: UUID) -> Conversation:
        conversation = self.get(conversation_id)
        if conversation is None:
            raise LookupError(f"Conversation {conversation_id} not found")
        return conversation

    def _reload(self, conversation_id: UUID) -> Conversation:
        conversation = self.db.get(Conversation, conversation_id)
        if conversation is not None:
            self.db.refresh(conversation)
        return conversation

    def _touch(self, conversation: Conversation, user_turn: bool, human_turn: bool = False) -> None:
        values = {
            "message_count": Conversation.message_count + 1,
            "last_message_at": datetime.now(timezone.utc),
        }
        if human_turn:
            values["turns_since_human"] = 0
        elif user_turn:
            values["turns_since_human"] = Conversation.turns_since_human + 1

        self.db.flush()
        self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(conversation)
