"""
Identity Gate Protocol

Strictly ordered, resumable verification per notice access token:

    UNVERIFIED -> ID_MATCHED -> CODE_VERIFIED -> (BIOMETRIC_VERIFIED) -> GRANTED

Every step is persisted before the response is returned, so a visitor who
closes the tab between receiving the SMS and typing the code resumes at
the same step. Counters are advanced with conditional UPDATEs so two
concurrent submissions cannot both consume the same attempt.

Failure messages are generic: a mismatch never says which field was wrong.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import (
    GATE_TOKEN_EXPIRY_DAYS, IDENTIFIER_MAX_ATTEMPTS, LIVENESS_MIN_CONFIDENCE,
    OTP_EXPIRY_MINUTES, OTP_MAX_ATTEMPTS, OTP_RESEND_COOLDOWN_SECONDS,
)
from ...errors import (
    CodeExpired, ExternalProviderUnavailable, IdentityMismatch, LinkExpired,
    LockedOut, NotFound, RateLimited, StateConflict, StepOutOfOrder, ValidationFailed,
)
from ...models.db_models import (
    ActorType, BiometricOutcome, GateState, IdentityGateSessionDB, NoticeDB, OneTimeCodeDB,
)
from ...models.metadata import BiometricPayload, DeliveryPayload
from ..audit.audit_log import AuditLog
from ..delivery.provider import DeliveryProvider, mask_phone
from ..storage.blob_store import BlobNotFound, BlobStore
from ..tracking.engagement import EngagementTracker
from .biometric import (
    LIVENESS_SUCCEEDED, BiometricProvider, BiometricThresholds, evaluate_similarity,
)
from .otp import code_matches, generate_code, hash_code, identifier_matches

logger = logging.getLogger(__name__)


# =============================================================================
# GATE CONFIGURATION
# =============================================================================

GATE_CONFIG = {
    GateState.UNVERIFIED: {
        "next_step": "submit_identifier",
        "allowed_transitions": [GateState.ID_MATCHED, GateState.LOCKED, GateState.EXPIRED],
    },
    GateState.ID_MATCHED: {
        "next_step": "verify_code",
        "allowed_transitions": [GateState.CODE_VERIFIED, GateState.EXPIRED],
    },
    GateState.CODE_VERIFIED: {
        "next_step": "biometric",
        "allowed_transitions": [GateState.BIOMETRIC_VERIFIED, GateState.GRANTED, GateState.EXPIRED],
    },
    GateState.BIOMETRIC_VERIFIED: {
        "next_step": "grant",
        "allowed_transitions": [GateState.GRANTED],
    },
    GateState.GRANTED: {
        "next_step": "view",
        "allowed_transitions": [],  # Terminal
    },
    GateState.LOCKED: {
        "next_step": "contact_employer",
        "allowed_transitions": [GateState.UNVERIFIED],  # Employer reset only
    },
    GateState.EXPIRED: {
        "next_step": None,
        "allowed_transitions": [],  # Terminal
    },
}

# States where an unused session may still lapse
EXPIRABLE_STATES = [GateState.UNVERIFIED, GateState.ID_MATCHED, GateState.CODE_VERIFIED]

CODE_SMS_TEMPLATE = "Tu codigo de verificacion es {code}. Vence en {minutes} minutos. No lo compartas."


class IdentityGate:
    """
    Identity gate for notice disclosure links.

    External collaborators are injected: an SMS-capable delivery provider,
    a biometric provider and the blob store holding enrolled reference
    images. Missing collaborators behave as unavailable providers.
    """

    def __init__(
        self,
        db_session: Session,
        sms_provider: Optional[DeliveryProvider] = None,
        biometric_provider: Optional[BiometricProvider] = None,
        blob_store: Optional[BlobStore] = None,
        thresholds: Optional[BiometricThresholds] = None,
    ):
        self.db = db_session
        self.sms = sms_provider
        self.biometric = biometric_provider
        self.blob_store = blob_store
        self.thresholds = thresholds or BiometricThresholds()
        self.audit = AuditLog(db_session)
        self.tracker = EngagementTracker(db_session)

    # =========================================================================
    # SESSION LIFECYCLE
    # =========================================================================

    def create_session(self, notice: NoticeDB, now: Optional[datetime] = None) -> IdentityGateSessionDB:
        """Open the gate for a delivered notice. Idempotent; caller commits."""
        if notice.gate_session is not None:
            return notice.gate_session

        now = now or datetime.utcnow()
        employee = notice.employee
        biometric_required = bool(employee.biometric_consent and employee.reference_image_key)

        session = IdentityGateSessionDB(
            id=str(uuid4()),
            notice_id=notice.id,
            state=GateState.UNVERIFIED,
            identifier_failures=0,
            biometric_required=biometric_required,
            biometric_mandatory=bool(biometric_required and employee.biometric_mandatory),
            biometric_attempts=0,
            expires_at=now + timedelta(days=GATE_TOKEN_EXPIRY_DAYS),
            created_at=now,
        )
        self.db.add(session)
        notice.gate_session = session
        return session

    def load(self, token: str, now: Optional[datetime] = None) -> Tuple[NoticeDB, IdentityGateSessionDB]:
        """Resolve a token to its notice and gate session, applying expiry."""
        now = now or datetime.utcnow()
        notice = self.db.query(NoticeDB).filter(NoticeDB.access_token == token).first()
        if notice is None:
            raise NotFound("Link not found")

        session = notice.gate_session
        if session is None:
            raise StepOutOfOrder("This notice has not been delivered yet")

        if session.state == GateState.EXPIRED:
            raise LinkExpired("This link has expired")

        if session.state in EXPIRABLE_STATES and now > session.expires_at:
            self._expire(notice, session, now)
            self.db.commit()
            raise LinkExpired("This link has expired")

        return notice, session

    def status(self, session: IdentityGateSessionDB) -> Dict[str, Any]:
        """Next required step plus counters, as returned by every gate endpoint."""
        config = GATE_CONFIG.get(session.state, {})
        next_step = config.get("next_step")
        if session.state == GateState.CODE_VERIFIED and not session.biometric_required:
            next_step = "grant"

        return {
            "state": session.state.value,
            "next_step": next_step,
            "granted": session.state == GateState.GRANTED,
            "remaining_attempts": max(0, IDENTIFIER_MAX_ATTEMPTS - (session.identifier_failures or 0)),
            "biometric_required": bool(session.biometric_required),
            "biometric_optional": bool(session.biometric_required and not session.biometric_mandatory),
            "biometric_outcome": session.biometric_outcome.value if session.biometric_outcome else None,
            "needs_review": bool(session.needs_review),
            "expires_at": session.expires_at.isoformat() if session.expires_at else None,
        }

    def require_granted(self, token: str, now: Optional[datetime] = None) -> Tuple[NoticeDB, IdentityGateSessionDB]:
        notice, session = self.load(token, now=now)
        if session.state == GateState.LOCKED:
            raise LockedOut()
        if session.state != GateState.GRANTED:
            raise StepOutOfOrder("Identity verification is not complete", details=self.status(session))
        return notice, session

    # =========================================================================
    # STEP A: IDENTIFIER MATCH
    # =========================================================================

    def submit_identifier(
        self,
        token: str,
        identifier: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        notice, session = self.load(token, now=now)

        if session.state == GateState.LOCKED:
            raise LockedOut()
        if session.state != GateState.UNVERIFIED:
            return self.status(session)

        employee = notice.employee
        if identifier_matches(identifier, employee.tax_id, employee.employee_number):
            self._advance(session, [GateState.UNVERIFIED], GateState.ID_MATCHED, id_matched_at=now)
            if notice.identity_validated_at is None:
                notice.identity_validated_at = now
                notice.submitted_identifier = (identifier or "").strip()[:50]
                notice.identity_ip = ip_address
                notice.identity_user_agent = user_agent
            self.audit.record(
                event_type="identity_validated",
                description="Employee identifier matched",
                actor=ActorType.EMPLOYEE,
                notice_id=notice.id,
                ip_address=ip_address,
                user_agent=user_agent,
                occurred_at=now,
            )
            self.db.commit()
            logger.info(f"Identifier matched for notice {notice.id}")
            return self.status(session)

        # Failed attempt: count it only while the session is still open
        self.db.flush()
        counted = self.db.query(IdentityGateSessionDB).filter(
            IdentityGateSessionDB.id == session.id,
            IdentityGateSessionDB.state == GateState.UNVERIFIED,
            IdentityGateSessionDB.identifier_failures < IDENTIFIER_MAX_ATTEMPTS,
        ).update(
            {IdentityGateSessionDB.identifier_failures: IdentityGateSessionDB.identifier_failures + 1},
            synchronize_session=False,
        )
        self.db.refresh(session)

        self.audit.record(
            event_type="identity_failed",
            description=f"Identifier mismatch (attempt {session.identifier_failures} of {IDENTIFIER_MAX_ATTEMPTS})",
            actor=ActorType.EMPLOYEE,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"attempt": session.identifier_failures},
            occurred_at=now,
        )

        if session.identifier_failures >= IDENTIFIER_MAX_ATTEMPTS and session.state != GateState.LOCKED:
            self.db.query(IdentityGateSessionDB).filter(
                IdentityGateSessionDB.id == session.id,
                IdentityGateSessionDB.state == GateState.UNVERIFIED,
            ).update(
                {IdentityGateSessionDB.state: GateState.LOCKED, IdentityGateSessionDB.locked_at: now},
                synchronize_session=False,
            )
            self.db.refresh(session)
            self.audit.record(
                event_type="identity_locked",
                description=f"Access locked after {IDENTIFIER_MAX_ATTEMPTS} failed identifier attempts",
                actor=ActorType.SYSTEM,
                notice_id=notice.id,
                ip_address=ip_address,
                user_agent=user_agent,
                occurred_at=now,
            )
            logger.warning(f"Identity gate locked for notice {notice.id}")

        self.db.commit()

        if session.state == GateState.LOCKED:
            raise LockedOut(details={"attempts": session.identifier_failures})
        if counted == 0:
            raise StateConflict()
        raise IdentityMismatch(remaining_attempts=IDENTIFIER_MAX_ATTEMPTS - session.identifier_failures)

    # =========================================================================
    # STEP B: ONE-TIME CODE
    # =========================================================================

    def request_code(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Issue a fresh code over SMS. Any previous unused code stops working."""
        now = now or datetime.utcnow()
        notice, session = self.load(token, now=now)
        self._require_code_step(session)

        if session.state != GateState.ID_MATCHED:
            return {**self.status(session), "already_verified": True}

        phone = notice.employee.phone
        if not phone:
            raise ValidationFailed("No phone number on record for this employee")

        latest = self._latest_code(session.id)
        if latest is not None and latest.created_at is not None:
            waited = (now - latest.created_at).total_seconds()
            if waited < OTP_RESEND_COOLDOWN_SECONDS:
                raise RateLimited(int(OTP_RESEND_COOLDOWN_SECONDS - waited) + 1)

        self.db.flush()
        self.db.query(OneTimeCodeDB).filter(
            OneTimeCodeDB.gate_session_id == session.id,
            OneTimeCodeDB.used.is_(False),
        ).update({OneTimeCodeDB.used: True, OneTimeCodeDB.used_at: now}, synchronize_session=False)

        code = generate_code()
        record = OneTimeCodeDB(
            id=str(uuid4()),
            gate_session_id=session.id,
            code_hash=hash_code(code),
            phone_masked=mask_phone(phone),
            expires_at=now + timedelta(minutes=OTP_EXPIRY_MINUTES),
            attempts=0,
            max_attempts=OTP_MAX_ATTEMPTS,
            used=False,
            created_at=now,
        )
        self.db.add(record)

        try:
            if self.sms is None:
                raise ExternalProviderUnavailable("sms", "No SMS provider configured")
            receipt = self.sms.send_sms(phone, CODE_SMS_TEMPLATE.format(code=code, minutes=OTP_EXPIRY_MINUTES))
        except ExternalProviderUnavailable as e:
            record.used = True
            record.used_at = now
            self.audit.record(
                event_type="code_delivery_failed",
                description="Verification code could not be sent",
                actor=ActorType.SYSTEM,
                notice_id=notice.id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=DeliveryPayload(channel="sms", status="failed", error=e.message).model_dump(),
                occurred_at=now,
            )
            self.db.commit()
            raise

        self.audit.record(
            event_type="code_sent",
            description=f"Verification code sent to {record.phone_masked}",
            actor=ActorType.SYSTEM,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=DeliveryPayload(channel="sms", status="sent", message_id=receipt.message_id).model_dump(),
            occurred_at=now,
        )
        self.db.commit()

        return {
            **self.status(session),
            "sent": True,
            "phone_masked": record.phone_masked,
            "expires_at": record.expires_at.isoformat(),
            "expires_in_minutes": OTP_EXPIRY_MINUTES,
            "max_attempts": OTP_MAX_ATTEMPTS,
        }

    def verify_code(
        self,
        token: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        notice, session = self.load(token, now=now)
        self._require_code_step(session)

        if session.state != GateState.ID_MATCHED:
            return self.status(session)

        record = (
            self.db.query(OneTimeCodeDB)
            .filter(OneTimeCodeDB.gate_session_id == session.id, OneTimeCodeDB.used.is_(False))
            .order_by(OneTimeCodeDB.created_at.desc())
            .first()
        )
        if record is None:
            raise CodeExpired()

        if now > record.expires_at:
            record.used = True
            record.used_at = now
            self.audit.record(
                event_type="code_expired",
                description="Verification code entered after expiry",
                actor=ActorType.EMPLOYEE,
                notice_id=notice.id,
                ip_address=ip_address,
                user_agent=user_agent,
                occurred_at=now,
            )
            self.db.commit()
            raise CodeExpired()

        self.db.flush()
        counted = self.db.query(OneTimeCodeDB).filter(
            OneTimeCodeDB.id == record.id,
            OneTimeCodeDB.used.is_(False),
            OneTimeCodeDB.attempts < OneTimeCodeDB.max_attempts,
        ).update({OneTimeCodeDB.attempts: OneTimeCodeDB.attempts + 1}, synchronize_session=False)
        self.db.refresh(record)
        if counted == 0:
            self.db.commit()
            raise CodeExpired()

        if not code_matches(code, record.code_hash):
            remaining = record.max_attempts - record.attempts
            if remaining <= 0:
                record.used = True
                record.used_at = now
            self.audit.record(
                event_type="code_failed",
                description=f"Wrong verification code (attempt {record.attempts} of {record.max_attempts})",
                actor=ActorType.EMPLOYEE,
                notice_id=notice.id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"attempt": record.attempts},
                occurred_at=now,
            )
            self.db.commit()
            if remaining <= 0:
                raise CodeExpired()
            raise IdentityMismatch(remaining_attempts=remaining)

        consumed = self.db.query(OneTimeCodeDB).filter(
            OneTimeCodeDB.id == record.id,
            OneTimeCodeDB.used.is_(False),
        ).update({OneTimeCodeDB.used: True, OneTimeCodeDB.used_at: now}, synchronize_session=False)
        if consumed != 1:
            self.db.rollback()
            raise StateConflict()

        self._advance(session, [GateState.ID_MATCHED], GateState.CODE_VERIFIED, code_verified_at=now)
        self.audit.record(
            event_type="code_verified",
            description="One-time code verified",
            actor=ActorType.EMPLOYEE,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            occurred_at=now,
        )

        if not session.biometric_required:
            self._grant(notice, session, now, ip_address, user_agent)

        self.db.commit()
        return self.status(session)

    # =========================================================================
    # STEP C: BIOMETRIC (OPTIONAL)
    # =========================================================================

    def start_biometric(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        notice, session = self.load(token, now=now)
        self._require_biometric_step(session)

        if self.biometric is None:
            raise ExternalProviderUnavailable("biometric", "No biometric provider configured")

        liveness_session_id = self.biometric.create_liveness_session()
        session.liveness_session_id = liveness_session_id
        self.audit.record(
            event_type="biometric_started",
            description="Liveness session created",
            actor=ActorType.EMPLOYEE,
            notice_id=notice.id,
            metadata=BiometricPayload(liveness_session_id=liveness_session_id).model_dump(),
            occurred_at=now,
        )
        self.db.commit()
        return {**self.status(session), "liveness_session_id": liveness_session_id}

    def submit_biometric_result(
        self,
        token: str,
        liveness_session_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Read the liveness verdict, then face-match against the enrolled image.

        REJECTED keeps the gate at CODE_VERIFIED and allows a new attempt.
        NEEDS_REVIEW grants access and flags the session for human review.
        """
        now = now or datetime.utcnow()
        notice, session = self.load(token, now=now)
        if session.state in (GateState.BIOMETRIC_VERIFIED, GateState.GRANTED):
            return self.status(session)
        self._require_biometric_step(session)

        if not session.liveness_session_id or liveness_session_id != session.liveness_session_id:
            raise ValidationFailed("Unknown liveness session")
        if self.biometric is None:
            raise ExternalProviderUnavailable("biometric", "No biometric provider configured")

        liveness = self.biometric.get_liveness_result(liveness_session_id)
        session.biometric_attempts = (session.biometric_attempts or 0) + 1
        session.liveness_confidence = liveness.confidence

        similarity = None
        if (
            liveness.status == LIVENESS_SUCCEEDED
            and liveness.confidence >= LIVENESS_MIN_CONFIDENCE
            and liveness.reference_image
        ):
            reference = self._reference_image(notice)
            similarity = self.biometric.compare_faces(reference, liveness.reference_image)

        outcome = evaluate_similarity(similarity, self.thresholds)
        session.biometric_score = similarity
        session.biometric_outcome = outcome

        self.audit.record(
            event_type="biometric_result",
            description=f"Biometric outcome {outcome.value}",
            actor=ActorType.PROVIDER,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=BiometricPayload(
                liveness_session_id=liveness_session_id,
                liveness_status=liveness.status,
                liveness_confidence=liveness.confidence,
                similarity=similarity,
                outcome=outcome.value,
            ).model_dump(),
            occurred_at=now,
        )

        if outcome == BiometricOutcome.REJECTED:
            session.liveness_session_id = None
            self.db.commit()
            return {**self.status(session), "outcome": outcome.value, "retry_allowed": True}

        self._advance(
            session,
            [GateState.CODE_VERIFIED],
            GateState.BIOMETRIC_VERIFIED,
            biometric_verified_at=now,
            needs_review=(outcome == BiometricOutcome.NEEDS_REVIEW),
        )
        if outcome == BiometricOutcome.NEEDS_REVIEW:
            self.audit.record(
                event_type="biometric_review_required",
                description=f"Similarity {similarity:.1f} inside review band, access granted pending review",
                actor=ActorType.SYSTEM,
                notice_id=notice.id,
                occurred_at=now,
            )
            logger.info(f"Biometric review flagged for notice {notice.id}")

        self._grant(notice, session, now, ip_address, user_agent)
        self.db.commit()
        return {**self.status(session), "outcome": outcome.value}

    def skip_biometric(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Explicit opt-out of the biometric step where it is not mandatory."""
        now = now or datetime.utcnow()
        notice, session = self.load(token, now=now)
        if session.state == GateState.GRANTED:
            return self.status(session)
        self._require_biometric_step(session)

        if session.biometric_mandatory:
            raise StepOutOfOrder("Biometric verification is mandatory for this notice")

        session.biometric_skipped = True
        self.audit.record(
            event_type="biometric_skipped",
            description="Employee chose to skip biometric verification",
            actor=ActorType.EMPLOYEE,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            occurred_at=now,
        )
        self._grant(notice, session, now, ip_address, user_agent)
        self.db.commit()
        return self.status(session)

    # =========================================================================
    # EMPLOYER INTERVENTION AND EXPIRY
    # =========================================================================

    def reset_lock(self, notice: NoticeDB, employer_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Out-of-band unlock by the issuing employer."""
        now = now or datetime.utcnow()
        session = notice.gate_session
        if session is None or session.state != GateState.LOCKED:
            raise StateConflict("Access is not locked")

        self._advance(
            session,
            [GateState.LOCKED],
            GateState.UNVERIFIED,
            identifier_failures=0,
            locked_at=None,
        )
        self.audit.record(
            event_type="identity_lock_reset",
            description="Employer restored access after lockout",
            actor=ActorType.EMPLOYER,
            notice_id=notice.id,
            metadata={"employer_id": employer_id},
            occurred_at=now,
        )
        self.db.commit()
        return self.status(session)

    def expire_stale_sessions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        AUTHORITY: SYSTEM - Lapse unfinished gate sessions past token expiry.
        """
        now = now or datetime.utcnow()
        stale = (
            self.db.query(IdentityGateSessionDB)
            .filter(
                IdentityGateSessionDB.state.in_(EXPIRABLE_STATES),
                IdentityGateSessionDB.expires_at < now,
            )
            .all()
        )
        expired = []
        errors = []
        for session in stale:
            try:
                self._expire(session.notice, session, now)
                expired.append(session.notice_id)
            except StateConflict as e:
                errors.append({"notice_id": session.notice_id, "error": e.message})
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

    def _advance(
        self,
        session: IdentityGateSessionDB,
        from_states: List[GateState],
        to_state: GateState,
        **fields,
    ) -> None:
        """Conditional state write; raises StateConflict on a stale read."""
        for state in from_states:
            if to_state not in GATE_CONFIG[state]["allowed_transitions"]:
                raise StateConflict(f"Cannot move gate from {state.value} to {to_state.value}")

        self.db.flush()
        values = {getattr(IdentityGateSessionDB, key): value for key, value in fields.items()}
        values[IdentityGateSessionDB.state] = to_state
        updated = self.db.query(IdentityGateSessionDB).filter(
            IdentityGateSessionDB.id == session.id,
            IdentityGateSessionDB.state.in_(from_states),
        ).update(values, synchronize_session=False)
        self.db.refresh(session)
        if updated != 1:
            raise StateConflict(details={"state": session.state.value})

    def _grant(
        self,
        notice: NoticeDB,
        session: IdentityGateSessionDB,
        now: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        self._advance(
            session,
            [GateState.CODE_VERIFIED, GateState.BIOMETRIC_VERIFIED],
            GateState.GRANTED,
            granted_at=now,
        )
        self.audit.record(
            event_type="access_granted",
            description="Identity gate completed, content unlocked",
            actor=ActorType.SYSTEM,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "biometric_outcome": session.biometric_outcome.value if session.biometric_outcome else None,
                "biometric_skipped": bool(session.biometric_skipped),
                "needs_review": bool(session.needs_review),
            },
            occurred_at=now,
        )
        self.tracker.start(notice, now=now)

    def _expire(self, notice: NoticeDB, session: IdentityGateSessionDB, now: datetime) -> None:
        self._advance(session, EXPIRABLE_STATES, GateState.EXPIRED)
        self.audit.record(
            event_type="gate_expired",
            description="Access link expired before verification was completed",
            actor=ActorType.SYSTEM,
            notice_id=notice.id,
            occurred_at=now,
        )

    def _latest_code(self, session_id: str) -> Optional[OneTimeCodeDB]:
        return (
            self.db.query(OneTimeCodeDB)
            .filter(OneTimeCodeDB.gate_session_id == session_id)
            .order_by(OneTimeCodeDB.created_at.desc())
            .first()
        )

    def _reference_image(self, notice: NoticeDB) -> bytes:
        key = notice.employee.reference_image_key
        if self.blob_store is None or not key:
            raise ExternalProviderUnavailable("blob_store", "Enrolled reference image unavailable")
        try:
            return self.blob_store.get(key)
        except BlobNotFound:
            raise ExternalProviderUnavailable("blob_store", "Enrolled reference image unavailable")

    @staticmethod
    def _require_code_step(session: IdentityGateSessionDB) -> None:
        if session.state == GateState.LOCKED:
            raise LockedOut()
        if session.state == GateState.UNVERIFIED:
            raise StepOutOfOrder("Confirm your identifier first")

    @staticmethod
    def _require_biometric_step(session: IdentityGateSessionDB) -> None:
        if session.state == GateState.LOCKED:
            raise LockedOut()
        if session.state != GateState.CODE_VERIFIED:
            raise StepOutOfOrder("Biometric verification is not the current step")
        if not session.biometric_required:
            raise StepOutOfOrder("Biometric verification is not required for this notice")
