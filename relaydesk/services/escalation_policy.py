"""Decide when a conversation should be handed to a human support agent."""

import re
from dataclasses import dataclass, field, fields, replace
from typing import Optional

from relaydesk.config import Settings
from relaydesk.logging_config import get_logger
from relaydesk.services.state_machine import PRIORITY_RANK, ConversationStatus, Priority

logger = get_logger("escalation_policy")

EXPLICIT_REQUEST_PHRASES = (
    "talk to a human",
    "speak to a human",
    "human agent",
    "real person",
    "live agent",
    "talk to someone",
    "speak to someone",
    "connect me to",
    "transfer me",
    "get me a person",
    "need a human",
    "want a human",
    "actual person",
    "real agent",
)

ESCALATION_KEYWORDS = (
    "cancel",
    "refund",
    "lawsuit",
    "lawyer",
    "attorney",
    "supervisor",
    "manager",
    "urgent",
    "emergency",
)

# Keywords with legal exposure are raised to high priority.
LEGAL_KEYWORDS = frozenset({"lawsuit", "lawyer", "attorney"})

ESCALATION_PHRASES = (
    "this is unacceptable",
    "i want to speak",
    "escalate this",
    "file a complaint",
    "report this",
    "i demand",
    "i insist",
    "not good enough",
    "waste of time",
)

FRUSTRATION_INDICATORS = (
    "frustrated",
    "annoyed",
    "angry",
    "upset",
    "ridiculous",
    "absurd",
    "stupid",
    "useless",
    "terrible",
    "awful",
    "horrible",
    "worst",
    "hate",
    "disgusted",
    "fed up",
    "sick of",
    "tired of",
)

# Reason text comes from the first fired trigger in this order.
TRIGGER_ORDER = (
    "explicit_request",
    "agent_failure",
    "sentiment",
    "frustration",
    "keyword",
    "turn_limit",
)


@dataclass
class AgentSignal:
    """Hints from the automated agent about the current turn."""

    cannot_help: bool = False
    unrecoverable_error: bool = False
    failure_count: int = 0
    turns_since_human: Optional[int] = None
    sentiment_delta: Optional[float] = None


@dataclass
class Trigger:
    type: str
    reason: str
    priority: Priority = Priority.NORMAL
    details: dict = field(default_factory=dict)


@dataclass
class EscalationDecision:
    should_escalate: bool
    trigger_type: Optional[str] = None
    priority: Priority = Priority.NORMAL
    reason: Optional[str] = None
    triggers: list[Trigger] = field(default_factory=list)

    @classmethod
    def no_escalation(cls) -> "EscalationDecision":
        return cls(should_escalate=False)


@dataclass
class PolicyConfig:
    sentiment_threshold: float = -0.5
    max_turns: int = 10
    failure_threshold: int = 2
    frustration_min_matches: int = 2
    keywords_enabled: bool = True
    explicit_requests: tuple = EXPLICIT_REQUEST_PHRASES
    keywords: tuple = ESCALATION_KEYWORDS
    phrases: tuple = ESCALATION_PHRASES
    frustration_indicators: tuple = FRUSTRATION_INDICATORS

    @classmethod
    def from_settings(cls, settings: Settings, overrides: Optional[dict] = None) -> "PolicyConfig":
        """Build the config from settings, then apply per-integration overrides."""
        config = cls(
            sentiment_threshold=settings.escalation_sentiment_threshold,
            max_turns=settings.escalation_max_turns,
            failure_threshold=settings.escalation_failure_threshold,
            frustration_min_matches=settings.escalation_frustration_min_matches,
            keywords_enabled=settings.escalation_keywords_enabled,
        )
        if not overrides:
            return config

        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Unknown escalation override ignored", extra={"context": {"key": key}})
                continue
            values[key] = tuple(value) if isinstance(value, list) else value
        return replace(config, **values)


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


class EscalationPolicy:
    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config or PolicyConfig()

    def evaluate(self, conversation, latest_message, signal: Optional[AgentSignal] = None) -> EscalationDecision:
        """Return whether the conversation should escalate now, with priority and reason.

        Only `active` conversations can escalate; any other status means an
        escalation is already open or the conversation is closed, so the
        call is a no-op.
        """
        if conversation.status != ConversationStatus.ACTIVE.value:
            return EscalationDecision.no_escalation()

        signal = signal or AgentSignal()
        text = (getattr(latest_message, "content", None) or "").lower()

        triggers = [
            trigger
            for trigger in (
                self._check_explicit_request(text),
                self._check_agent_failure(signal),
                self._check_sentiment(conversation, signal),
                self._check_frustration(text),
                self._check_keywords(text),
                self._check_turn_limit(conversation, signal),
            )
            if trigger is not None
        ]
        if not triggers:
            return EscalationDecision.no_escalation()

        by_type = {trigger.type: trigger for trigger in triggers}
        primary = next(by_type[name] for name in TRIGGER_ORDER if name in by_type)
        priority = max((trigger.priority for trigger in triggers), key=lambda p: PRIORITY_RANK[p])

        return EscalationDecision(
            should_escalate=True,
            trigger_type=primary.type,
            priority=priority,
            reason=primary.reason,
            triggers=triggers,
        )

    def _check_explicit_request(self, text: str) -> Optional[Trigger]:
        for phrase in self.config.explicit_requests:
            if phrase.lower() in text:
                return Trigger(
                    type="explicit_request",
                    reason="Customer requested to speak with a human agent",
                    priority=Priority.HIGH,
                    details={"matched_phrase": phrase},
                )
        return None

    def _check_agent_failure(self, signal: AgentSignal) -> Optional[Trigger]:
        if signal.failure_count >= self.config.failure_threshold:
            return Trigger(
                type="agent_failure",
                reason=f"Automated agent failed {signal.failure_count} times in a row",
                priority=Priority.URGENT,
                details={"failure_count": signal.failure_count},
            )
        if signal.unrecoverable_error:
            return Trigger(type="agent_failure", reason="Automated agent reported an unrecoverable error")
        if signal.cannot_help:
            return Trigger(type="agent_failure", reason="Automated agent could not help with the request")
        return None

    def _check_sentiment(self, conversation, signal: AgentSignal) -> Optional[Trigger]:
        sentiment = (conversation.sentiment or 0.0) + (signal.sentiment_delta or 0.0)
        if sentiment < self.config.sentiment_threshold:
            return Trigger(
                type="sentiment",
                reason=f"Negative sentiment detected ({sentiment:.2f})",
                details={"sentiment": sentiment},
            )
        return None

    def _check_frustration(self, text: str) -> Optional[Trigger]:
        matched = [indicator for indicator in self.config.frustration_indicators if indicator in text]
        if len(matched) >= self.config.frustration_min_matches:
            return Trigger(
                type="frustration",
                reason="Customer appears frustrated",
                details={"matched_indicators": matched},
            )
        return None

    def _check_keywords(self, text: str) -> Optional[Trigger]:
        if not self.config.keywords_enabled:
            return None

        matched_keywords = [keyword for keyword in self.config.keywords if _contains_word(text, keyword.lower())]
        matched_phrases = [phrase for phrase in self.config.phrases if phrase.lower() in text]
        matches = matched_keywords + matched_phrases
        if not matches:
            return None

        priority = Priority.HIGH if LEGAL_KEYWORDS.intersection(matched_keywords) else Priority.NORMAL
        return Trigger(
            type="keyword",
            reason=f"Keywords detected: {', '.join(matches)}",
            priority=priority,
            details={"matched_keywords": matched_keywords, "matched_phrases": matched_phrases},
        )

    def _check_turn_limit(self, conversation, signal: AgentSignal) -> Optional[Trigger]:
        turns = signal.turns_since_human
        if turns is None:
            turns = conversation.turns_since_human or 0
        if turns > self.config.max_turns:
            return Trigger(
                type="turn_limit",
                reason=f"Conversation exceeded {self.config.max_turns} turns",
                details={"turns": turns},
            )
        return None
