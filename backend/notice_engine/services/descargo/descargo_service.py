"""
Descargo (Right of Reply)

Opened the moment a notice is read-confirmed, with a fixed window that is
shorter than the dispute window:

    pending -> exercised | declined
    pending -> expired   (clock lapse only)

The decision is write-once. Exercising requires a fresh identifier
re-check and a sworn-statement confirmation; the submitted text is
hashed. Employer annotations stay mutable and never touch the employee's
submission.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import DESCARGO_RECHECK_VALID_MINUTES, DESCARGO_WINDOW_DAYS, IDENTIFIER_MAX_ATTEMPTS
from ...errors import (
    IdentityMismatch, LinkExpired, LockedOut, NotFound, StateConflict, StepOutOfOrder,
    ValidationFailed,
)
from ...models.db_models import ActorType, DescargoDB, DescargoDecision, NoticeDB
from ..audit.audit_log import AuditLog
from ..identity.otp import identifier_matches
from ..integrity.hashing import hash_payload

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 20000
SWORN_STATEMENT = (
    "Declaro bajo juramento que el contenido de este descargo es veraz y que lo "
    "redacte personalmente."
)


class DescargoService:
    """Right-of-reply sub-machine nested under a read notice."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session
        self.audit = AuditLog(db_session)

    def spawn(self, notice: NoticeDB, now: Optional[datetime] = None) -> DescargoDB:
        """Open the window. Idempotent; caller commits."""
        if notice.descargo is not None:
            return notice.descargo

        now = now or datetime.utcnow()
        opened_at = notice.read_confirmed_at or now
        descargo = DescargoDB(
            id=str(uuid4()),
            notice_id=notice.id,
            token=secrets.token_urlsafe(32),
            decision=DescargoDecision.PENDING,
            expires_at=opened_at + timedelta(days=DESCARGO_WINDOW_DAYS),
            identity_failures=0,
            sworn_statement=False,
            created_at=now,
        )
        self.db.add(descargo)
        notice.descargo = descargo
        self._audit(descargo, "descargo_opened", f"Right of reply open until {descargo.expires_at.isoformat()}", ActorType.SYSTEM, now)
        return descargo

    def load(self, token: str, now: Optional[datetime] = None) -> DescargoDB:
        now = now or datetime.utcnow()
        descargo = self.db.query(DescargoDB).filter(DescargoDB.token == token).first()
        if descargo is None:
            raise NotFound("Link not found")
        if descargo.decision == DescargoDecision.PENDING and now > descargo.expires_at:
            self._expire(descargo, now)
            self.db.commit()
        return descargo

    def view(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        descargo = self.load(token, now=now)
        notice = descargo.notice
        return {
            "notice_id": notice.id,
            "employer": notice.employer.legal_name,
            "reason": notice.reason,
            "sworn_statement_text": SWORN_STATEMENT,
            **self.summary(descargo, include_annotations=False),
        }

    def summary(self, descargo: DescargoDB, include_annotations: bool = True) -> Dict[str, Any]:
        data = {
            "decision": descargo.decision.value,
            "decision_at": descargo.decision_at.isoformat() if descargo.decision_at else None,
            "expires_at": descargo.expires_at.isoformat(),
            "draft_text": descargo.draft_text if descargo.decision == DescargoDecision.PENDING else None,
            "text": descargo.text,
            "confirmation_hash": descargo.confirmation_hash,
            "confirmed_at": descargo.confirmed_at.isoformat() if descargo.confirmed_at else None,
        }
        if include_annotations:
            data.update({
                "contains_admission": descargo.contains_admission,
                "contains_contradiction": descargo.contains_contradiction,
                "employer_notes": descargo.employer_notes,
                "annotated_at": descargo.annotated_at.isoformat() if descargo.annotated_at else None,
            })
        return data

    # =========================================================================
    # EMPLOYEE STEPS
    # =========================================================================

    def recheck_identity(
        self,
        token: str,
        identifier: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Lightweight identity check before exercising the right of reply."""
        now = now or datetime.utcnow()
        descargo = self._pending(token, now)

        if (descargo.identity_failures or 0) >= IDENTIFIER_MAX_ATTEMPTS:
            raise LockedOut()

        employee = descargo.notice.employee
        if identifier_matches(identifier, employee.tax_id, employee.employee_number):
            descargo.identity_rechecked_at = now
            self._audit(descargo, "descargo_identity_validated", "Identity re-checked for right of reply", ActorType.EMPLOYEE, now, ip_address, user_agent)
            self.db.commit()
            return {"validated": True, "valid_for_minutes": DESCARGO_RECHECK_VALID_MINUTES}

        self.db.flush()
        self.db.query(DescargoDB).filter(
            DescargoDB.id == descargo.id,
            DescargoDB.identity_failures < IDENTIFIER_MAX_ATTEMPTS,
        ).update({DescargoDB.identity_failures: DescargoDB.identity_failures + 1}, synchronize_session=False)
        self.db.refresh(descargo)
        self._audit(descargo, "descargo_identity_failed", "Identifier mismatch on right of reply", ActorType.EMPLOYEE, now, ip_address, user_agent)
        self.db.commit()

        remaining = IDENTIFIER_MAX_ATTEMPTS - descargo.identity_failures
        if remaining <= 0:
            raise LockedOut()
        raise IdentityMismatch(remaining_attempts=remaining)

    def save_draft(self, token: str, text: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        descargo = self._pending(token, now)
        descargo.draft_text = (text or "")[:MAX_TEXT_LENGTH]
        descargo.draft_saved_at = now
        self.db.commit()
        return {"saved": True, "draft_saved_at": now.isoformat()}

    def exercise(
        self,
        token: str,
        text: str,
        sworn_statement: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DescargoDB:
        now = now or datetime.utcnow()
        descargo = self._pending(token, now)

        text = (text or "").strip()
        if not text:
            raise ValidationFailed("The reply text is required")
        if len(text) > MAX_TEXT_LENGTH:
            raise ValidationFailed(f"The reply may not exceed {MAX_TEXT_LENGTH} characters")
        if not sworn_statement:
            raise ValidationFailed("The sworn statement must be accepted")
        if (
            descargo.identity_rechecked_at is None
            or now - descargo.identity_rechecked_at > timedelta(minutes=DESCARGO_RECHECK_VALID_MINUTES)
        ):
            raise StepOutOfOrder("Confirm your identity again before submitting")

        confirmation_hash = hash_payload({
            "descargo_id": descargo.id,
            "notice_id": descargo.notice_id,
            "notice_hash": descargo.notice.content_hash,
            "text": text,
            "sworn_statement": SWORN_STATEMENT,
            "confirmed_at": now,
            "ip": ip_address,
            "user_agent": user_agent,
        })
        self._decide(descargo, DescargoDecision.EXERCISED, now, {
            "text": text,
            "sworn_statement": True,
            "confirmation_hash": confirmation_hash,
            "confirmed_at": now,
            "confirmed_ip": ip_address,
            "confirmed_user_agent": user_agent,
            "draft_text": None,
        })
        self._audit(
            descargo, "descargo_exercised", "Employee submitted a sworn right of reply",
            ActorType.EMPLOYEE, now, ip_address, user_agent, content_hash=confirmation_hash,
        )
        self.db.commit()
        logger.info(f"Descargo exercised for notice {descargo.notice_id}")
        return descargo

    def decline(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DescargoDB:
        now = now or datetime.utcnow()
        descargo = self._pending(token, now)
        self._decide(descargo, DescargoDecision.DECLINED, now, {
            "confirmed_ip": ip_address,
            "confirmed_user_agent": user_agent,
        })
        self._audit(descargo, "descargo_declined", "Employee declined the right of reply", ActorType.EMPLOYEE, now, ip_address, user_agent)
        self.db.commit()
        return descargo

    # =========================================================================
    # EMPLOYER AND SYSTEM
    # =========================================================================

    def annotate(
        self,
        notice: NoticeDB,
        employer_id: str,
        contains_admission: Optional[bool] = None,
        contains_contradiction: Optional[bool] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DescargoDB:
        """Post-hoc employer annotations. They may be revised at any time."""
        now = now or datetime.utcnow()
        descargo = notice.descargo
        if descargo is None:
            raise NotFound("No right of reply exists for this notice")

        if contains_admission is not None:
            descargo.contains_admission = contains_admission
        if contains_contradiction is not None:
            descargo.contains_contradiction = contains_contradiction
        if notes is not None:
            descargo.employer_notes = notes
        descargo.annotated_at = now

        self._audit(
            descargo, "descargo_annotated", "Employer annotated the right of reply", ActorType.EMPLOYER, now,
            metadata={
                "employer_id": employer_id,
                "contains_admission": descargo.contains_admission,
                "contains_contradiction": descargo.contains_contradiction,
            },
        )
        self.db.commit()
        return descargo

    def reset_identity_lock(self, notice: NoticeDB, employer_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Out-of-band unlock of the identity re-check. The window itself is not extended."""
        now = now or datetime.utcnow()
        descargo = notice.descargo
        if descargo is None:
            raise NotFound("No right of reply exists for this notice")
        self._pending(descargo.token, now)

        self.db.flush()
        updated = self.db.query(DescargoDB).filter(
            DescargoDB.id == descargo.id,
            DescargoDB.decision == DescargoDecision.PENDING,
            DescargoDB.identity_failures >= IDENTIFIER_MAX_ATTEMPTS,
        ).update({DescargoDB.identity_failures: 0}, synchronize_session=False)
        self.db.refresh(descargo)
        if updated != 1:
            raise StateConflict("Right-of-reply identity check is not locked")

        self._audit(
            descargo, "descargo_identity_lock_reset", "Employer restored the right-of-reply identity check",
            ActorType.EMPLOYER, now, metadata={"employer_id": employer_id},
        )
        self.db.commit()
        return self.summary(descargo, include_annotations=True)

    def expire_lapsed(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        AUTHORITY: SYSTEM - Close pending windows past their expiry.
        """
        now = now or datetime.utcnow()
        lapsed = self.db.query(DescargoDB).filter(
            DescargoDB.decision == DescargoDecision.PENDING,
            DescargoDB.expires_at < now,
        ).all()

        expired = []
        errors = []
        for descargo in lapsed:
            try:
                self._expire(descargo, now)
                expired.append(descargo.notice_id)
            except StateConflict as e:
                errors.append({"notice_id": descargo.notice_id, "error": e.message})
        self.db.commit()

        return {
            "run_date": now.isoformat(),
            "expired": len(expired),
            "errors": len(errors),
            "details": {"expired": expired, "errors": errors},
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _pending(self, token: str, now: datetime) -> DescargoDB:
        descargo = self.load(token, now=now)
        if descargo.decision == DescargoDecision.EXPIRED:
            raise LinkExpired("The right-of-reply window has closed")
        if descargo.decision != DescargoDecision.PENDING:
            raise StateConflict()
        return descargo

    def _decide(self, descargo: DescargoDB, decision: DescargoDecision, now: datetime, fields: Dict[str, Any]) -> None:
        """Write-once decision via conditional UPDATE."""
        self.db.flush()
        values = {getattr(DescargoDB, key): value for key, value in fields.items()}
        values[DescargoDB.decision] = decision
        values[DescargoDB.decision_at] = now
        updated = self.db.query(DescargoDB).filter(
            DescargoDB.id == descargo.id,
            DescargoDB.decision == DescargoDecision.PENDING,
        ).update(values, synchronize_session=False)
        self.db.refresh(descargo)
        if updated != 1:
            raise StateConflict(details={"decision": descargo.decision.value})

    def _expire(self, descargo: DescargoDB, now: datetime) -> None:
        self._decide(descargo, DescargoDecision.EXPIRED, now, {})
        self._audit(
            descargo, "descargo_expired",
            "Right-of-reply window lapsed without a decision; the right was offered and not used",
            ActorType.SYSTEM, now,
        )

    def _audit(
        self,
        descargo: DescargoDB,
        event_type: str,
        description: str,
        actor: ActorType,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        content_hash: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.record(
            event_type=event_type,
            description=description,
            actor=actor,
            notice_id=descargo.notice_id,
            subject_type="descargo",
            subject_id=descargo.id,
            ip_address=ip_address,
            user_agent=user_agent,
            content_hash=content_hash,
            metadata=metadata,
            occurred_at=now,
        )
