"""
Notice State Machine

Authoritative legal state of a disciplinary notice:

    DRAFT -> SENT -> (READ) -> FIRM | DISPUTED

States never regress. DISPUTED is the only way out of the normal forward
path and stops the due-date clock from advancing the notice to FIRM.
EXPIRED is inferred for display and never persisted.

Every transition is evaluated against the persisted state with a
conditional UPDATE, so two concurrent confirmations cannot both succeed.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ...errors import StateConflict
from ...models.db_models import ActorType, NoticeDB, NoticeState
from ..audit.audit_log import AuditLog

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# AUTHORITY MODEL:
# - EMPLOYER: issue and deliver, record an out-of-band dispute
# - EMPLOYEE: confirm reading, dispute within the window
# - SYSTEM: firmness when the window lapses without dispute
#
# =============================================================================

STATE_CONFIG = {
    NoticeState.DRAFT: {
        "description": "Created and hashed, not yet delivered",
        "allowed_transitions": [NoticeState.SENT],
        "statutes": [],
        "entry_authority": "EMPLOYER",
    },
    NoticeState.SENT: {
        "description": "Delivered through at least one electronic channel",
        "allowed_transitions": [NoticeState.READ, NoticeState.DISPUTED],
        "statutes": ["LCT art. 67", "Ley 27.555"],
        "entry_authority": "EMPLOYER",
    },
    NoticeState.READ: {
        "description": "Identity verified, content read and acknowledged",
        "allowed_transitions": [NoticeState.FIRM, NoticeState.DISPUTED],
        "statutes": ["LCT art. 67", "LCT art. 218"],
        "entry_authority": "EMPLOYEE",
    },
    NoticeState.FIRM: {
        "description": "Dispute window lapsed with no dispute recorded",
        "allowed_transitions": [],  # Terminal state
        "statutes": ["LCT art. 67"],
        "entry_authority": "SYSTEM",
    },
    NoticeState.DISPUTED: {
        "description": "Employee contested the measure within the window",
        "allowed_transitions": [],  # Terminal state
        "statutes": ["LCT art. 67"],
        "entry_authority": "EMPLOYEE",
    },
}


# =============================================================================
# STATE MACHINE
# =============================================================================

class NoticeStateMachine:
    """
    Forward-only state machine for notices.

    Callers set the transition's side fields (sent_at, read_confirmed_at,
    ...) through `fields`; they are written in the same conditional UPDATE
    as the state change. The caller commits.
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session
        self.audit = AuditLog(db_session)

    def get_state_config(self, state: NoticeState) -> Dict[str, Any]:
        """Get configuration for a state."""
        return STATE_CONFIG.get(state, {})

    def can_transition(self, from_state: NoticeState, to_state: NoticeState) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        allowed_transitions = self.get_state_config(from_state).get("allowed_transitions", [])
        if to_state in allowed_transitions:
            return True, "Transition allowed"
        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def is_terminal_state(self, state: NoticeState) -> bool:
        return len(self.get_state_config(state).get("allowed_transitions", [])) == 0

    def get_next_states(self, state: NoticeState) -> List[NoticeState]:
        return self.get_state_config(state).get("allowed_transitions", [])

    def transition(
        self,
        notice: NoticeDB,
        to_state: NoticeState,
        trigger: str,
        actor: ActorType,
        fields: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> NoticeDB:
        """
        Execute a state transition against the persisted state.

        Raises StateConflict when the stored state no longer allows it.
        """
        now = now or datetime.utcnow()
        from_state = notice.state

        allowed, reason = self.can_transition(from_state, to_state)
        if not allowed:
            raise StateConflict(reason, details={"state": from_state.value})

        self.db.flush()
        values = {getattr(NoticeDB, key): value for key, value in (fields or {}).items()}
        values[NoticeDB.state] = to_state
        values[NoticeDB.updated_at] = now
        updated = self.db.query(NoticeDB).filter(
            NoticeDB.id == notice.id,
            NoticeDB.state == from_state,
        ).update(values, synchronize_session=False)
        self.db.refresh(notice)

        if updated != 1:
            logger.info(f"Stale transition {from_state.value}->{to_state.value} rejected for notice {notice.id}")
            raise StateConflict(details={"state": notice.state.value})

        self.audit.record(
            event_type="state_transition",
            description=f"State changed from {from_state.value} to {to_state.value}. Trigger: {trigger}",
            actor=actor,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "from_state": from_state.value,
                "to_state": to_state.value,
                "trigger": trigger,
                "statutes": self.get_state_config(to_state).get("statutes", []),
                **(metadata or {}),
            },
            occurred_at=now,
        )
        logger.info(f"Notice {notice.id} moved {from_state.value} -> {to_state.value} ({trigger})")
        return notice


# =============================================================================
# AUTOMATIC TRANSITION TRIGGERS (SYSTEM-AUTHORITATIVE)
# =============================================================================

class AutomaticTransitionTriggers:
    """
    System-authoritative transitions.

    AUTHORITY: SYSTEM - executed by the scheduler without employer approval.
    """

    @staticmethod
    def firmness_reached(
        state_machine: NoticeStateMachine,
        notice: NoticeDB,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """
        READ notice past its due date with no dispute becomes FIRM.
        """
        now = now or datetime.utcnow()
        if notice.state != NoticeState.READ:
            return False, f"Notice not in READ state ({notice.state.value})"
        if notice.due_date is None or now <= notice.due_date:
            return False, "Dispute window still open"
        if notice.disputed_at is not None:
            return False, "Notice was disputed"

        state_machine.transition(
            notice,
            NoticeState.FIRM,
            trigger="dispute_window_lapsed",
            actor=ActorType.SYSTEM,
            fields={"firm_at": now},
            metadata={"automatic": True, "due_date": notice.due_date.isoformat()},
            now=now,
        )
        return True, "Transitioned to FIRM"
