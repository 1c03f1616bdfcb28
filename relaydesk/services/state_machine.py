from enum import Enum


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    WAITING_HUMAN = "waiting_human"
    WITH_HUMAN = "with_human"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    RESOLVED = "resolved"
    RETURNED = "returned"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {Priority.NORMAL: 0, Priority.HIGH: 1, Priority.URGENT: 2}

VALID_TRANSITIONS = {
    ConversationStatus.ACTIVE: [ConversationStatus.WAITING_HUMAN, ConversationStatus.ABANDONED],
    # abandoned only through the unaccepted-escalation timeout
    ConversationStatus.WAITING_HUMAN: [ConversationStatus.WITH_HUMAN, ConversationStatus.ABANDONED],
    ConversationStatus.WITH_HUMAN: [
        ConversationStatus.ACTIVE,
        ConversationStatus.RESOLVED,
        ConversationStatus.ABANDONED,
    ],
    ConversationStatus.RESOLVED: [],
    ConversationStatus.ABANDONED: [],
}

ESCALATION_TRANSITIONS = {
    EscalationStatus.PENDING: [EscalationStatus.ACCEPTED, EscalationStatus.RESOLVED],
    # accepted -> pending only when an accept is rolled back
    EscalationStatus.ACCEPTED: [EscalationStatus.PENDING, EscalationStatus.RESOLVED, EscalationStatus.RETURNED],
    EscalationStatus.RESOLVED: [],
    EscalationStatus.RETURNED: [],
}

TERMINAL_STATUSES = frozenset({ConversationStatus.RESOLVED, ConversationStatus.ABANDONED})
OPEN_ESCALATION_STATUSES = frozenset({EscalationStatus.PENDING, EscalationStatus.ACCEPTED})


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Enum, to_state: Enum):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ConversationStatus, to_state: ConversationStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(ConversationStatus(from_state), [])
    return ConversationStatus(to_state) in allowed


def can_transition_escalation(from_state: EscalationStatus, to_state: EscalationStatus) -> bool:
    allowed = ESCALATION_TRANSITIONS.get(EscalationStatus(from_state), [])
    return EscalationStatus(to_state) in allowed


def transition(from_state: ConversationStatus, to_state: ConversationStatus) -> ConversationStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    from_state = ConversationStatus(from_state)
    to_state = ConversationStatus(to_state)
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_terminal(state: ConversationStatus) -> bool:
    return ConversationStatus(state) in TERMINAL_STATUSES


def escalate(current_state: ConversationStatus) -> ConversationStatus:
    """Hand the conversation to the human queue."""
    return transition(current_state, ConversationStatus.WAITING_HUMAN)


def accept(current_state: ConversationStatus) -> ConversationStatus:
    """Support agent claims the conversation."""
    return transition(current_state, ConversationStatus.WITH_HUMAN)


def return_to_automation(current_state: ConversationStatus) -> ConversationStatus:
    """Support agent hands the conversation back to the automated agent."""
    return transition(current_state, ConversationStatus.ACTIVE)


def resolve(current_state: ConversationStatus) -> ConversationStatus:
    return transition(current_state, ConversationStatus.RESOLVED)


def abandon(current_state: ConversationStatus) -> ConversationStatus:
    return transition(current_state, ConversationStatus.ABANDONED)


def check_invariants(conversation, escalation=None) -> list[str]:
    """Return the list of violated conversation/escalation invariants."""
    violations = []
    status = ConversationStatus(conversation.status)

    if status == ConversationStatus.WITH_HUMAN and not conversation.assigned_user_id:
        violations.append("with_human conversation has no assigned user")
    if status != ConversationStatus.WITH_HUMAN and conversation.assigned_user_id:
        violations.append(f"{status.value} conversation has an assigned user")

    if escalation is None:
        if status in (ConversationStatus.WAITING_HUMAN, ConversationStatus.WITH_HUMAN):
            violations.append(f"{status.value} conversation has no open escalation")
        return violations

    escalation_status = EscalationStatus(escalation.status)
    if status == ConversationStatus.WAITING_HUMAN and escalation_status != EscalationStatus.PENDING:
        violations.append("waiting_human conversation escalation is not pending")
    if status == ConversationStatus.WITH_HUMAN:
        if escalation_status != EscalationStatus.ACCEPTED:
            violations.append("with_human conversation escalation is not accepted")
        elif escalation.accepted_by != conversation.assigned_user_id:
            violations.append("assigned user differs from escalation acceptor")
    if escalation_status == EscalationStatus.ACCEPTED and not escalation.accepted_by:
        violations.append("accepted escalation has no acceptor")
    return violations
