"""
Witness Declarations

Each invited witness gets a single-use link:

    pending -> invited -> validated -> signed
                       -> declined
    pending | invited | validated -> expired

Statement and signature hash are write-once; once signed the token is dead.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import PUBLIC_BASE_URL, WITNESS_TOKEN_EXPIRY_DAYS
from ...errors import (
    ExternalProviderUnavailable, IdentityMismatch, LinkExpired, NotFound, StateConflict,
    StepOutOfOrder, ValidationFailed,
)
from ...models.db_models import (
    ActorType, DeliveryChannel, NoticeDB, WitnessDeclarationDB, WitnessRelation, WitnessState,
)
from ...models.metadata import DeliveryPayload
from ..audit.audit_log import AuditLog
from ..delivery.provider import DeliveryProvider
from ..identity.otp import digits_only
from ..integrity.hashing import hash_payload

logger = logging.getLogger(__name__)

OPEN_STATES = [WitnessState.PENDING, WitnessState.INVITED, WitnessState.VALIDATED]
INVITATION_TEMPLATE = (
    "{employer} le solicita una declaracion como testigo de un hecho laboral. "
    "Ingrese a {link} antes del {expires}."
)


class WitnessService:
    """Invite, validate, sign and expire witness declarations."""

    def __init__(self, db_session: Session, delivery: Optional[DeliveryProvider] = None):
        self.db = db_session
        self.delivery = delivery
        self.audit = AuditLog(db_session)

    def add(
        self,
        notice: NoticeDB,
        full_name: str,
        relationship: WitnessRelation = WitnessRelation.EMPLOYEE,
        national_id: Optional[str] = None,
        position: Optional[str] = None,
        contact: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WitnessDeclarationDB:
        now = now or datetime.utcnow()
        if not (full_name or "").strip():
            raise ValidationFailed("Witness name is required")

        witness = WitnessDeclarationDB(
            id=str(uuid4()),
            notice_id=notice.id,
            token=secrets.token_urlsafe(32),
            token_expires_at=now + timedelta(days=WITNESS_TOKEN_EXPIRY_DAYS),
            full_name=full_name.strip(),
            national_id=national_id,
            position=position,
            relationship_to_employer=relationship,
            contact=contact,
            state=WitnessState.PENDING,
            created_at=now,
        )
        self.db.add(witness)
        self._audit(witness, "witness_added", f"Witness {witness.full_name} added", ActorType.EMPLOYER, now)
        self.db.commit()
        return witness

    def link(self, witness: WitnessDeclarationDB) -> str:
        return f"{PUBLIC_BASE_URL}/testigo/{witness.token}"

    def invite(
        self,
        witness: WitnessDeclarationDB,
        channel: DeliveryChannel,
        now: Optional[datetime] = None,
    ) -> WitnessDeclarationDB:
        """Send (or resend) the invitation. Refreshes the link expiry."""
        now = now or datetime.utcnow()
        if witness.state not in (WitnessState.PENDING, WitnessState.INVITED):
            raise StateConflict(f"A {witness.state.value} witness cannot be invited")
        if not witness.contact:
            raise ValidationFailed("Witness has no contact on record")
        if self.delivery is None:
            raise ExternalProviderUnavailable("delivery", "No delivery provider configured")

        witness.token_expires_at = now + timedelta(days=WITNESS_TOKEN_EXPIRY_DAYS)
        body = INVITATION_TEMPLATE.format(
            employer=witness.notice.employer.legal_name,
            link=self.link(witness),
            expires=witness.token_expires_at.strftime("%d/%m/%Y"),
        )
        try:
            if channel == DeliveryChannel.EMAIL:
                receipt = self.delivery.send_email(witness.contact, "Solicitud de declaracion testimonial", body)
            elif channel == DeliveryChannel.SMS:
                receipt = self.delivery.send_sms(witness.contact, body)
            else:
                receipt = self.delivery.send_whatsapp(witness.contact, body)
        except ExternalProviderUnavailable as e:
            self._audit(
                witness, "witness_invitation_failed", f"Invitation via {channel.value} failed", ActorType.PROVIDER, now,
                metadata=DeliveryPayload(channel=channel.value, status="failed", error=e.message).model_dump(),
            )
            self.db.commit()
            raise

        witness.invitation_channel = channel
        witness.invited_at = now
        witness.state = WitnessState.INVITED
        self._audit(
            witness, "witness_invited", f"Witness invited via {channel.value}", ActorType.EMPLOYER, now,
            metadata=DeliveryPayload(channel=channel.value, status="sent", message_id=receipt.message_id).model_dump(),
        )
        self.db.commit()
        return witness

    def load(self, token: str, now: Optional[datetime] = None) -> WitnessDeclarationDB:
        now = now or datetime.utcnow()
        witness = self.db.query(WitnessDeclarationDB).filter(WitnessDeclarationDB.token == token).first()
        if witness is None:
            raise NotFound("Link not found")
        if witness.state in (WitnessState.SIGNED, WitnessState.DECLINED):
            raise StateConflict("This declaration was already processed")
        if witness.state == WitnessState.EXPIRED:
            raise LinkExpired("This link has expired")
        if now > witness.token_expires_at:
            self._expire(witness, now)
            self.db.commit()
            raise LinkExpired("This link has expired")
        return witness

    def view(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        witness = self.load(token, now=now)
        notice = witness.notice
        return {
            "witness": witness.full_name,
            "state": witness.state.value,
            "employer": notice.employer.legal_name,
            "incident_date": notice.incident_date.isoformat() if notice.incident_date else None,
            "incident_place": notice.incident_place,
            "reason": notice.reason,
            "requires_national_id": bool(witness.national_id),
        }

    def validate(
        self,
        token: str,
        national_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WitnessDeclarationDB:
        now = now or datetime.utcnow()
        witness = self.load(token, now=now)
        if witness.state == WitnessState.VALIDATED:
            return witness

        expected = digits_only(witness.national_id)
        if expected and digits_only(national_id) != expected:
            self._audit(witness, "witness_identity_failed", "National id mismatch", ActorType.WITNESS, now, ip_address, user_agent)
            self.db.commit()
            raise IdentityMismatch()

        if not expected:
            witness.national_id = (national_id or "").strip() or None
        witness.state = WitnessState.VALIDATED
        witness.validated_at = now
        self._audit(witness, "witness_validated", "Witness identity validated", ActorType.WITNESS, now, ip_address, user_agent)
        self.db.commit()
        return witness

    def sign(
        self,
        token: str,
        statement: str,
        present_at_incident: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WitnessDeclarationDB:
        now = now or datetime.utcnow()
        witness = self.load(token, now=now)
        if witness.state != WitnessState.VALIDATED:
            raise StepOutOfOrder("Validate your identity before signing")
        statement = (statement or "").strip()
        if not statement:
            raise ValidationFailed("The statement is required")

        signature_hash = hash_payload({
            "witness_id": witness.id,
            "notice_id": witness.notice_id,
            "notice_hash": witness.notice.content_hash,
            "full_name": witness.full_name,
            "national_id": witness.national_id,
            "present_at_incident": bool(present_at_incident),
            "statement": statement,
            "signed_at": now,
            "ip": ip_address,
        })

        self.db.flush()
        updated = self.db.query(WitnessDeclarationDB).filter(
            WitnessDeclarationDB.id == witness.id,
            WitnessDeclarationDB.state == WitnessState.VALIDATED,
            WitnessDeclarationDB.signature_hash.is_(None),
        ).update({
            WitnessDeclarationDB.statement: statement,
            WitnessDeclarationDB.present_at_incident: bool(present_at_incident),
            WitnessDeclarationDB.signature_hash: signature_hash,
            WitnessDeclarationDB.signed_at: now,
            WitnessDeclarationDB.signed_ip: ip_address,
            WitnessDeclarationDB.signed_user_agent: user_agent,
            WitnessDeclarationDB.state: WitnessState.SIGNED,
        }, synchronize_session=False)
        self.db.refresh(witness)
        if updated != 1:
            raise StateConflict()

        self._audit(
            witness, "witness_signed", f"Witness {witness.full_name} signed a declaration",
            ActorType.WITNESS, now, ip_address, user_agent, content_hash=signature_hash,
            metadata={"present_at_incident": bool(present_at_incident)},
        )
        self.db.commit()
        logger.info(f"Witness {witness.id} signed for notice {witness.notice_id}")
        return witness

    def decline(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WitnessDeclarationDB:
        now = now or datetime.utcnow()
        witness = self.load(token, now=now)
        witness.state = WitnessState.DECLINED
        witness.declined_at = now
        self._audit(witness, "witness_declined", "Witness declined to declare", ActorType.WITNESS, now, ip_address, user_agent)
        self.db.commit()
        return witness

    def expire_lapsed(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        AUTHORITY: SYSTEM - Expire open witness links past their expiry.
        """
        now = now or datetime.utcnow()
        lapsed = self.db.query(WitnessDeclarationDB).filter(
            WitnessDeclarationDB.state.in_(OPEN_STATES),
            WitnessDeclarationDB.token_expires_at < now,
        ).all()
        for witness in lapsed:
            self._expire(witness, now)
        self.db.commit()
        return {
            "run_date": now.isoformat(),
            "expired": len(lapsed),
            "details": {"expired": [w.id for w in lapsed]},
        }

    def for_notice(self, notice_id: str) -> List[WitnessDeclarationDB]:
        return (
            self.db.query(WitnessDeclarationDB)
            .filter(WitnessDeclarationDB.notice_id == notice_id)
            .order_by(WitnessDeclarationDB.created_at)
            .all()
        )

    @staticmethod
    def summary(witness: WitnessDeclarationDB) -> Dict[str, Any]:
        return {
            "id": witness.id,
            "full_name": witness.full_name,
            "position": witness.position,
            "relationship": witness.relationship_to_employer.value,
            "state": witness.state.value,
            "present_at_incident": witness.present_at_incident,
            "statement": witness.statement,
            "signature_hash": witness.signature_hash,
            "signed_at": witness.signed_at.isoformat() if witness.signed_at else None,
            "signed_ip": witness.signed_ip,
            "invited_at": witness.invited_at.isoformat() if witness.invited_at else None,
        }

    def _expire(self, witness: WitnessDeclarationDB, now: datetime) -> None:
        witness.state = WitnessState.EXPIRED
        self._audit(witness, "witness_expired", "Witness link expired", ActorType.SYSTEM, now)

    def _audit(
        self,
        witness: WitnessDeclarationDB,
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
            notice_id=witness.notice_id,
            subject_type="witness",
            subject_id=witness.id,
            ip_address=ip_address,
            user_agent=user_agent,
            content_hash=content_hash,
            metadata=metadata,
            occurred_at=now,
        )
