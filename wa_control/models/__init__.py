from wa_control.models.conversation import Conversation
from wa_control.models.conversation_state import ConversationState
from wa_control.models.message import Message
from wa_control.models.ownership_event import OwnershipEvent

__all__ = [
    "Conversation",
    "ConversationState",
    "Message",
    "OwnershipEvent",
]
