from wa_control.schemas.handover import ClaimRequest, ConversationStateResponse, ReleaseStaleRequest, ReleaseStaleResponse
from wa_control.schemas.message import SendMessageRequest, SendMessageResponse

__all__ = [
    "SendMessageRequest",
    "SendMessageResponse",
    "ClaimRequest",
    "ConversationStateResponse",
    "ReleaseStaleRequest",
    "ReleaseStaleResponse",
]
