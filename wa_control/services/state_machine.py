from enum import Enum


class Owner(str, Enum):
    AI = "ai"
    OPERATOR = "operator"


class HandoverPhase(str, Enum):
    AI_OWNED = "ai_owned"
    AWAITING_OPERATOR_REPLY = "awaiting_operator_reply"
    OPERATOR_ACTIVE = "operator_active"


VALID_TRANSITIONS = {
    HandoverPhase.AI_OWNED: [HandoverPhase.AWAITING_OPERATOR_REPLY],
    HandoverPhase.AWAITING_OPERATOR_REPLY: [
        HandoverPhase.OPERATOR_ACTIVE,
        HandoverPhase.AI_OWNED,
        HandoverPhase.AWAITING_OPERATOR_REPLY,  # re-claim refreshes the takeover timestamp
    ],
    HandoverPhase.OPERATOR_ACTIVE: [HandoverPhase.AI_OWNED, HandoverPhase.AWAITING_OPERATOR_REPLY],
}


def can_transition(from_phase: HandoverPhase, to_phase: HandoverPhase) -> bool:
    return to_phase in VALID_TRANSITIONS.get(from_phase, [])


def owner_of(is_ai_active: bool) -> Owner:
    return Owner.AI if is_ai_active else Owner.OPERATOR


def phase_of(is_ai_active: bool, operator_replied: bool) -> HandoverPhase:
    """Phase of a conversation given its ownership flag and whether the operator has replied since takeover."""
    if is_ai_active:
        return HandoverPhase.AI_OWNED
    if operator_replied:
        return HandoverPhase.OPERATOR_ACTIVE
    return HandoverPhase.AWAITING_OPERATOR_REPLY
