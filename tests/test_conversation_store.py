from uuid import uuid4

import pytest

from relaydesk.services.conversation_store import ConversationStore, StateConflictError
from relaydesk.services.state_machine import ConversationStatus, InvalidTransitionError


@pytest.fixture
def store(db):
    return ConversationStore(db)


@pytest.fixture
def conversation(store, company_id):
    end_user = store.get_or_create_end_user(company_id, "whatsapp", "15550001", "Ann")
    conversation = store.get_or_create(company_id, end_user.id, "whatsapp")
    store.db.commit()
    return conversation


class TestGetOrCreate:
    def test_creates_active_conversation(self, conversation):
        assert conversation.status == "active"
        assert conversation.message_count == 0
        assert conversation.assigned_user_id is None

    def test_returns_existing_open_conversation(self, store, conversation, company_id):
        again = store.get_or_create(company_id, conversation.end_user_id, "whatsapp")
        assert again.id == conversation.id

    def test_agent_id_scopes_conversation(self, store, conversation, company_id):
        other = store.get_or_create(company_id, conversation.end_user_id, "whatsapp", agent_id=uuid4())
        assert other.id != conversation.id

    def test_terminal_conversation_starts_a_new_one(self, store, conversation, company_id):
        store.set_status(conversation.id, "active", "abandoned")
        fresh = store.get_or_create(company_id, conversation.end_user_id, "whatsapp")
        assert fresh.id != conversation.id
        assert fresh.status == "active"

    def test_end_user_is_reused_and_named(self, store, company_id):
        first = store.get_or_create_end_user(company_id, "telegram", "42")
        second = store.get_or_create_end_user(company_id, "telegram", "42", "Ann")
        assert first.id == second.id
        assert second.name == "Ann"


class TestMessages:
    def test_append_message_counts_user_turns(self, store, conversation, make_message):
        record = store.append_message(conversation.id, make_message("Hello", external_id="wamid.1"))

        assert record.role == "user"
        assert record.external_id == "wamid.1"
        assert conversation.message_count == 1
        assert conversation.turns_since_human == 1
        assert conversation.last_message_at is not None

    def test_human_reply_resets_turns(self, store, conversation, make_message):
        store.append_message(conversation.id, make_message("one"))
        store.append_message(conversation.id, make_message("two"))
        store.append_reply(conversation.id, "assistant", "answer")
        assert conversation.turns_since_human == 2

        reply = store.append_reply(conversation.id, "human_agent", "Hi, I'm here", author_id="agent-1")

        assert reply.author_id == "agent-1"
        assert conversation.message_count == 4
        assert conversation.turns_since_human == 0

    def test_append_to_missing_conversation(self, store, make_message):
        with pytest.raises(LookupError):
            store.append_message(uuid4(), make_message())


class TestSetStatus:
    def test_compare_and_swap_success(self, store, conversation):
        updated = store.set_status(conversation.id, ConversationStatus.ACTIVE, ConversationStatus.WAITING_HUMAN)
        assert updated.status == "waiting_human"

    def test_stale_expected_status_conflicts(self, store, conversation):
        store.set_status(conversation.id, "active", "waiting_human")

        with pytest.raises(StateConflictError) as exc:
            store.set_status(conversation.id, "active", "waiting_human")

        assert exc.value.expected == "active"
        assert exc.value.actual == "waiting_human"

    def test_forbidden_transition(self, store, conversation):
        with pytest.raises(InvalidTransitionError):
            store.set_status(conversation.id, "active", "with_human")

    def test_terminal_status_sets_closed_at(self, store, conversation):
        closed = store.set_status(conversation.id, "active", "abandoned")
        assert closed.closed_at is not None

    def test_changes_written_with_status(self, store, conversation):
        store.set_status(conversation.id, "active", "waiting_human")
        updated = store.set_status(conversation.id, "waiting_human", "with_human", assigned_user_id="agent-1")
        assert updated.assigned_user_id == "agent-1"


class TestAssignment:
    def test_assign_requires_with_human(self, store, conversation):
        with pytest.raises(StateConflictError):
            store.assign(conversation.id, "agent-1")

    def test_reassign_and_unassign(self, store, conversation):
        store.set_status(conversation.id, "active", "waiting_human")
        store.set_status(conversation.id, "waiting_human", "with_human", assigned_user_id="agent-1")

        assert store.assign(conversation.id, "agent-2").assigned_user_id == "agent-2"
        assert store.unassign(conversation.id).assigned_user_id is None
