"""
Electronic Domicile Agreement (convenio de domicilio electronico)

One per employee. Until it is signed, no notice may be delivered through
an electronic channel. The employee signs digitally by confirming their
identifier and a one-time SMS code, or the employer records a signed
paper copy.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import (
    DOMICILE_TOKEN_EXPIRY_DAYS, IDENTIFIER_MAX_ATTEMPTS, OTP_EXPIRY_MINUTES, OTP_MAX_ATTEMPTS,
    OTP_RESEND_COOLDOWN_SECONDS, PUBLIC_BASE_URL,
)
from ...errors import (
    CodeExpired, ExternalProviderUnavailable, IdentityMismatch, LinkExpired, LockedOut,
    NotFound, RateLimited, StateConflict, StepOutOfOrder, ValidationFailed,
)
from ...models.db_models import (
    ActorType, DomicileAgreementDB, DomicileState, EmployeeDB, OneTimeCodeDB,
)
from ..audit.audit_log import AuditLog
from ..delivery.provider import DeliveryProvider, mask_phone
from ..identity.otp import code_matches, generate_code, hash_code, identifier_matches
from ..integrity.hashing import hash_payload, sha256_hex
from ..storage.blob_store import BlobStore

logger = logging.getLogger(__name__)

AGREEMENT_VERSION = "1.0"
AGREEMENT_TEXT = (
    "Convenio de constitucion de domicilio electronico. El trabajador constituye "
    "domicilio electronico en la direccion de correo y el numero de telefono indicados, "
    "y acepta que las notificaciones laborales que reciba por esos medios, incluidas las "
    "comunicaciones disciplinarias, produciran los mismos efectos que las notificaciones "
    "cursadas en forma fehaciente. Podra revocar este convenio por escrito en cualquier momento."
)
SIGNED_STATES = (DomicileState.SIGNED_DIGITAL, DomicileState.SIGNED_PAPER)
CODE_SMS_TEMPLATE = "Tu codigo para firmar el convenio de domicilio electronico es {code}. Vence en {minutes} minutos."


class DomicileService:
    """Create, sign and expire electronic domicile agreements."""

    def __init__(
        self,
        db_session: Session,
        sms_provider: Optional[DeliveryProvider] = None,
        blob_store: Optional[BlobStore] = None,
    ):
        self.db = db_session
        self.sms = sms_provider
        self.blob_store = blob_store
        self.audit = AuditLog(db_session)

    @staticmethod
    def is_signed(employee: EmployeeDB) -> bool:
        agreement = employee.domicile_agreement
        return agreement is not None and agreement.state in SIGNED_STATES

    def create(self, employee: EmployeeDB, now: Optional[datetime] = None) -> DomicileAgreementDB:
        """Issue (or re-issue after expiry) the signing link."""
        now = now or datetime.utcnow()
        agreement = employee.domicile_agreement

        if agreement is not None:
            if agreement.state in SIGNED_STATES:
                raise StateConflict("The agreement is already signed")
            if agreement.state == DomicileState.PENDING and now <= agreement.token_expires_at:
                return agreement
            agreement.token = secrets.token_urlsafe(32)
            agreement.token_expires_at = now + timedelta(days=DOMICILE_TOKEN_EXPIRY_DAYS)
            agreement.state = DomicileState.PENDING
            agreement.identifier_failures = 0
            event_type = "domicile_reissued"
        else:
            agreement = DomicileAgreementDB(
                id=str(uuid4()),
                employee_id=employee.id,
                token=secrets.token_urlsafe(32),
                token_expires_at=now + timedelta(days=DOMICILE_TOKEN_EXPIRY_DAYS),
                state=DomicileState.PENDING,
                agreement_version=AGREEMENT_VERSION,
                identifier_failures=0,
                created_at=now,
            )
            self.db.add(agreement)
            employee.domicile_agreement = agreement
            event_type = "domicile_created"

        self._audit(agreement, event_type, "Electronic domicile agreement issued", ActorType.EMPLOYER, now)
        self.db.commit()
        return agreement

    def link(self, agreement: DomicileAgreementDB) -> str:
        return f"{PUBLIC_BASE_URL}/convenio/{agreement.token}"

    def load(self, token: str, now: Optional[datetime] = None) -> DomicileAgreementDB:
        now = now or datetime.utcnow()
        agreement = self.db.query(DomicileAgreementDB).filter(DomicileAgreementDB.token == token).first()
        if agreement is None:
            raise NotFound("Link not found")
        if agreement.state == DomicileState.EXPIRED:
            raise LinkExpired("This link has expired")
        if agreement.state == DomicileState.PENDING and now > agreement.token_expires_at:
            self._expire(agreement, now)
            self.db.commit()
            raise LinkExpired("This link has expired")
        return agreement

    def view(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        agreement = self.load(token, now=now)
        return {
            "state": agreement.state.value,
            "version": agreement.agreement_version,
            "text": AGREEMENT_TEXT,
            "employee": agreement.employee.full_name,
            "expires_at": agreement.token_expires_at.isoformat(),
        }

    # =========================================================================
    # DIGITAL SIGNATURE
    # =========================================================================

    def request_code(
        self,
        token: str,
        identifier: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Check the identifier, then send a one-time code to the employee's phone."""
        now = now or datetime.utcnow()
        agreement = self._pending(token, now)
        employee = agreement.employee

        if (agreement.identifier_failures or 0) >= IDENTIFIER_MAX_ATTEMPTS:
            raise LockedOut()

        if not identifier_matches(identifier, employee.tax_id, employee.employee_number):
            self.db.flush()
            self.db.query(DomicileAgreementDB).filter(
                DomicileAgreementDB.id == agreement.id,
                DomicileAgreementDB.identifier_failures < IDENTIFIER_MAX_ATTEMPTS,
            ).update(
                {DomicileAgreementDB.identifier_failures: DomicileAgreementDB.identifier_failures + 1},
                synchronize_session=False,
            )
            self.db.refresh(agreement)
            self._audit(agreement, "domicile_identity_failed", "Identifier mismatch", ActorType.EMPLOYEE, now, ip_address, user_agent)
            self.db.commit()
            remaining = IDENTIFIER_MAX_ATTEMPTS - agreement.identifier_failures
            if remaining <= 0:
                raise LockedOut()
            raise IdentityMismatch(remaining_attempts=remaining)

        if agreement.identity_validated_at is None:
            agreement.identity_validated_at = now

        if not employee.phone:
            raise ValidationFailed("No phone number on record for this employee")

        latest = (
            self.db.query(OneTimeCodeDB)
            .filter(OneTimeCodeDB.domicile_agreement_id == agreement.id)
            .order_by(OneTimeCodeDB.created_at.desc())
            .first()
        )
        if latest is not None and (now - latest.created_at).total_seconds() < OTP_RESEND_COOLDOWN_SECONDS:
            raise RateLimited(int(OTP_RESEND_COOLDOWN_SECONDS - (now - latest.created_at).total_seconds()) + 1)

        self.db.flush()
        self.db.query(OneTimeCodeDB).filter(
            OneTimeCodeDB.domicile_agreement_id == agreement.id,
            OneTimeCodeDB.used.is_(False),
        ).update({OneTimeCodeDB.used: True, OneTimeCodeDB.used_at: now}, synchronize_session=False)

        code = generate_code()
        record = OneTimeCodeDB(
            id=str(uuid4()),
            domicile_agreement_id=agreement.id,
            code_hash=hash_code(code),
            phone_masked=mask_phone(employee.phone),
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
            self.sms.send_sms(employee.phone, CODE_SMS_TEMPLATE.format(code=code, minutes=OTP_EXPIRY_MINUTES))
        except ExternalProviderUnavailable:
            record.used = True
            record.used_at = now
            self.db.commit()
            raise

        self._audit(agreement, "domicile_code_sent", f"Signing code sent to {record.phone_masked}", ActorType.SYSTEM, now, ip_address, user_agent)
        self.db.commit()
        return {"sent": True, "phone_masked": record.phone_masked, "expires_in_minutes": OTP_EXPIRY_MINUTES}

    def sign_digital(
        self,
        token: str,
        code: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DomicileAgreementDB:
        now = now or datetime.utcnow()
        agreement = self._pending(token, now)
        if agreement.identity_validated_at is None:
            raise StepOutOfOrder("Confirm your identifier first")

        record, ok = self._consume_code(agreement, code, now)
        if not ok:
            self._audit(agreement, "domicile_code_failed", "Wrong signing code", ActorType.EMPLOYEE, now, ip_address, user_agent)
            self.db.commit()
            remaining = record.max_attempts - record.attempts
            if remaining <= 0:
                raise CodeExpired()
            raise IdentityMismatch(remaining_attempts=remaining)

        employee = agreement.employee
        agreement.constituted_email = (email or employee.email or "").strip() or None
        agreement.constituted_phone = (phone or employee.phone or "").strip() or None
        agreement.signature_hash = hash_payload({
            "agreement_id": agreement.id,
            "employee_id": employee.id,
            "version": agreement.agreement_version,
            "text": AGREEMENT_TEXT,
            "email": agreement.constituted_email,
            "phone": agreement.constituted_phone,
            "signed_at": now,
            "ip": ip_address,
            "user_agent": user_agent,
        })
        agreement.signed_at = now
        agreement.signed_ip = ip_address
        agreement.signed_user_agent = user_agent
        self._set_state(agreement, DomicileState.SIGNED_DIGITAL)

        self._audit(
            agreement, "domicile_signed_digital", "Agreement signed with identifier and SMS code",
            ActorType.EMPLOYEE, now, ip_address, user_agent, content_hash=agreement.signature_hash,
        )
        self.db.commit()
        logger.info(f"Domicile agreement {agreement.id} signed digitally")
        return agreement

    # =========================================================================
    # PAPER SIGNATURE AND EXPIRY
    # =========================================================================

    def record_paper_signature(
        self,
        employee: EmployeeDB,
        scan: bytes,
        filename: str = "convenio.pdf",
        employer_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DomicileAgreementDB:
        """Employer uploads the signed paper copy."""
        now = now or datetime.utcnow()
        if self.blob_store is None:
            raise ExternalProviderUnavailable("blob_store", "No blob store configured")

        agreement = employee.domicile_agreement
        if agreement is None:
            agreement = DomicileAgreementDB(
                id=str(uuid4()),
                employee_id=employee.id,
                token=secrets.token_urlsafe(32),
                token_expires_at=now,
                state=DomicileState.PENDING,
                agreement_version=AGREEMENT_VERSION,
                identifier_failures=0,
                created_at=now,
            )
            self.db.add(agreement)
            employee.domicile_agreement = agreement
        elif agreement.state in SIGNED_STATES:
            raise StateConflict("The agreement is already signed")

        agreement.paper_scan_key = self.blob_store.put(
            f"employees/{employee.id}/convenio/{filename}", scan, content_type="application/pdf"
        )
        agreement.signature_hash = sha256_hex(scan)
        agreement.signed_at = now
        agreement.constituted_email = employee.email
        agreement.constituted_phone = employee.phone
        agreement.state = DomicileState.SIGNED_PAPER

        self._audit(
            agreement, "domicile_signed_paper", "Signed paper agreement recorded by employer",
            ActorType.EMPLOYER, now, content_hash=agreement.signature_hash,
            metadata={"employer_id": employer_id, "filename": filename},
        )
        self.db.commit()
        return agreement

    def expire_lapsed(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        AUTHORITY: SYSTEM - Lapse unsigned agreements past their link expiry.
        """
        now = now or datetime.utcnow()
        lapsed = self.db.query(DomicileAgreementDB).filter(
            DomicileAgreementDB.state == DomicileState.PENDING,
            DomicileAgreementDB.token_expires_at < now,
        ).all()
        for agreement in lapsed:
            self._expire(agreement, now)
        self.db.commit()
        return {
            "run_date": now.isoformat(),
            "expired": len(lapsed),
            "details": {"expired": [a.id for a in lapsed]},
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _pending(self, token: str, now: datetime) -> DomicileAgreementDB:
        agreement = self.load(token, now=now)
        if agreement.state != DomicileState.PENDING:
            raise StateConflict("The agreement is already signed")
        return agreement

    def _consume_code(self, agreement: DomicileAgreementDB, code: str, now: datetime) -> Tuple[OneTimeCodeDB, bool]:
        record = (
            self.db.query(OneTimeCodeDB)
            .filter(OneTimeCodeDB.domicile_agreement_id == agreement.id, OneTimeCodeDB.used.is_(False))
            .order_by(OneTimeCodeDB.created_at.desc())
            .first()
        )
        if record is None:
            raise CodeExpired()
        if now > record.expires_at:
            record.used = True
            record.used_at = now
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
            raise CodeExpired()

        if not code_matches(code, record.code_hash):
            if record.attempts >= record.max_attempts:
                record.used = True
                record.used_at = now
            return record, False

        consumed = self.db.query(OneTimeCodeDB).filter(
            OneTimeCodeDB.id == record.id,
            OneTimeCodeDB.used.is_(False),
        ).update({OneTimeCodeDB.used: True, OneTimeCodeDB.used_at: now}, synchronize_session=False)
        if consumed != 1:
            raise StateConflict()
        return record, True

    def _set_state(self, agreement: DomicileAgreementDB, to_state: DomicileState) -> None:
        self.db.flush()
        updated = self.db.query(DomicileAgreementDB).filter(
            DomicileAgreementDB.id == agreement.id,
            DomicileAgreementDB.state == DomicileState.PENDING,
        ).update({DomicileAgreementDB.state: to_state}, synchronize_session=False)
        self.db.refresh(agreement)
        if updated != 1:
            raise StateConflict()

    def _expire(self, agreement: DomicileAgreementDB, now: datetime) -> None:
        agreement.state = DomicileState.EXPIRED
        self._audit(agreement, "domicile_expired", "Signing link expired unsigned", ActorType.SYSTEM, now)

    def _audit(
        self,
        agreement: DomicileAgreementDB,
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
            subject_type="domicile_agreement",
            subject_id=agreement.id,
            ip_address=ip_address,
            user_agent=user_agent,
            content_hash=content_hash,
            metadata={"employee_id": agreement.employee_id, **(metadata or {})},
            occurred_at=now,
        )
