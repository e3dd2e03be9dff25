"""Notice lifecycle: state machine, display state, delivery, disclosure and domicile."""
from .challenge import answer_matches, choose_field, parse_date, parse_number
from .display_state import compute_display_state, effective_legal_state, needs_physical_fallback
from .domicile import DomicileService
from .notice_service import NoticeService, disclosure_link
from .scheduler import NoticeScheduler
from .state_machine import STATE_CONFIG, AutomaticTransitionTriggers, NoticeStateMachine

__all__ = [
    "answer_matches",
    "choose_field",
    "parse_date",
    "parse_number",
    "compute_display_state",
    "effective_legal_state",
    "needs_physical_fallback",
    "DomicileService",
    "NoticeService",
    "disclosure_link",
    "NoticeScheduler",
    "STATE_CONFIG",
    "AutomaticTransitionTriggers",
    "NoticeStateMachine",
]
