from wa_control.services.conversation_service import (
    find_active_conversation,
    find_or_create_conversation,
    touch_last_message,
)
from wa_control.services.state_machine import (
    HandoverPhase,
    Owner,
    can_transition,
    owner_of,
    phase_of,
)
from wa_control.services.state_service import (
    check_invariants,
    claim_by_operator,
    get_state,
    release_to_ai,
)
