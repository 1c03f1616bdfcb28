from relaydesk.models.agent_presence import AgentPresence
from relaydesk.models.channel_integration import ChannelIntegration
from relaydesk.models.conversation import Conversation
from relaydesk.models.end_user import EndUser
from relaydesk.models.escalation import Escalation
from relaydesk.models.inbound_event import InboundEvent
from relaydesk.models.message import Message

__all__ = [
    "AgentPresence",
    "ChannelIntegration",
    "Conversation",
    "EndUser",
    "Escalation",
    "InboundEvent",
    "Message",
]
