"""
Notice Service

Issue, deliver, disclose and close disciplinary notices.

Creation hashes and stamps the content once. Delivery moves DRAFT to SENT
and fixes the due date; resends only refresh channel timestamps. Reading
is confirmed only after the identity gate is GRANTED, the engagement
thresholds are met and the acknowledgment challenge is answered.
"""
import logging
import secrets
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import CHALLENGE_MAX_ATTEMPTS, DISPUTE_WINDOW_DAYS, PUBLIC_BASE_URL
from ...errors import (
    ChallengeFrozen, EngagementIncomplete, ExternalProviderUnavailable, NotFound,
    StateConflict, StepOutOfOrder, ValidationFailed,
)
from ...models.db_models import (
    ActorType, DeliveryChannel, EmployeeDB, NoticeCategory, NoticeDB, NoticeState, Severity,
)
from ...models.metadata import DeliveryPayload
from ..audit.audit_log import AuditLog
from ..delivery.provider import DeliveryProvider
from ..descargo.descargo_service import DescargoService
from ..identity.gate import IdentityGate
from ..integrity.hashing import hash_payload, normalize_digest, sha256_hex
from ..integrity.stamping import IntegrityService
from ..storage.blob_store import BlobStore
from ..tracking.engagement import EngagementTracker
from .challenge import answer_matches, choose_field, question_for
from .display_state import describe
from .domicile import DomicileService
from .state_machine import NoticeStateMachine

logger = logging.getLogger(__name__)

CATEGORY_LABELS = {
    NoticeCategory.WARNING: "Apercibimiento",
    NoticeCategory.SUSPENSION: "Suspension disciplinaria",
    NoticeCategory.PRE_DISMISSAL_WARNING: "Apercibimiento previo al despido",
}

EMAIL_SUBJECT = "Notificacion laboral de {employer}"
MESSAGE_TEMPLATE = (
    "{employer} le ha enviado una notificacion laboral ({label}). "
    "Para verla ingrese a {link} . Dispone de {days} dias corridos para impugnarla."
)

# Channel -> delivery timestamp column
CHANNEL_FIELDS = {
    DeliveryChannel.EMAIL: "email_sent_at",
    DeliveryChannel.SMS: "sms_sent_at",
    DeliveryChannel.WHATSAPP: "whatsapp_sent_at",
}

PROVIDER_EVENTS = {"delivered", "opened", "bounced"}


def disclosure_link(token: str) -> str:
    return f"{PUBLIC_BASE_URL}/ver/{token}"


class NoticeService:
    """Notice lifecycle operations. One instance per request."""

    def __init__(
        self,
        db_session: Session,
        delivery: Optional[DeliveryProvider] = None,
        integrity: Optional[IntegrityService] = None,
        gate: Optional[IdentityGate] = None,
        blob_store: Optional[BlobStore] = None,
    ):
        self.db = db_session
        self.delivery = delivery
        self.integrity = integrity or IntegrityService(db_session)
        self.gate = gate or IdentityGate(db_session, sms_provider=delivery, blob_store=blob_store)
        self.blob_store = blob_store
        self.audit = AuditLog(db_session)
        self.state_machine = NoticeStateMachine(db_session)
        self.tracker = EngagementTracker(db_session)
        self.descargos = DescargoService(db_session)
        self.domicile = DomicileService(db_session, sms_provider=delivery, blob_store=blob_store)

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def get_for_employer(self, notice_id: str, employer_id: str) -> NoticeDB:
        notice = self.db.query(NoticeDB).filter(
            NoticeDB.id == notice_id,
            NoticeDB.employer_id == employer_id,
        ).first()
        if notice is None:
            raise NotFound("Notice not found")
        return notice

    def list_for_employer(self, employer_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.utcnow()
        notices = (
            self.db.query(NoticeDB)
            .filter(NoticeDB.employer_id == employer_id)
            .order_by(NoticeDB.created_at.desc())
            .all()
        )
        return [self.summary(n, now=now) for n in notices]

    def summary(self, notice: NoticeDB, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "id": notice.id,
            "employee_id": notice.employee_id,
            "employee_name": notice.employee.full_name if notice.employee else None,
            "category": notice.category.value,
            "severity": notice.severity.value,
            "reason": notice.reason,
            "content_hash": notice.content_hash,
            "timestamp_authority": notice.tsa_status.value,
            "notary_anchor": notice.anchor_status.value,
            "sent_at": notice.sent_at.isoformat() if notice.sent_at else None,
            "read_confirmed_at": notice.read_confirmed_at.isoformat() if notice.read_confirmed_at else None,
            "challenge_frozen": bool(notice.challenge_frozen),
            "gate_state": notice.gate_session.state.value if notice.gate_session else None,
            "needs_review": bool(notice.gate_session and notice.gate_session.needs_review),
            "created_at": notice.created_at.isoformat() if notice.created_at else None,
            **describe(notice, now=now),
        }

    # =========================================================================
    # CREATE
    # =========================================================================

    def create_notice(
        self,
        employer_id: str,
        employee_id: str,
        category: NoticeCategory,
        reason: str,
        facts: str,
        severity: Severity = Severity.MODERATE,
        incident_date: Optional[date] = None,
        incident_time: Optional[str] = None,
        incident_place: Optional[str] = None,
        suspension_days: Optional[int] = None,
        suspension_start: Optional[date] = None,
        suspension_end: Optional[date] = None,
        document: Optional[bytes] = None,
        origin_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NoticeDB:
        """Create, hash and stamp a notice. Stamping never blocks creation."""
        now = now or datetime.utcnow()

        employee = self.db.query(EmployeeDB).filter(
            EmployeeDB.id == employee_id,
            EmployeeDB.employer_id == employer_id,
        ).first()
        if employee is None:
            raise NotFound("Employee not found")
        if not (reason or "").strip() or not (facts or "").strip():
            raise ValidationFailed("Reason and facts are required")

        if category == NoticeCategory.SUSPENSION:
            if not suspension_days or suspension_days < 1:
                raise ValidationFailed("A suspension requires a positive number of days")
            if suspension_start and suspension_end is None:
                suspension_end = suspension_start + timedelta(days=suspension_days - 1)
        else:
            suspension_days = suspension_start = suspension_end = None

        notice = NoticeDB(
            id=str(uuid4()),
            employer_id=employer_id,
            employee_id=employee.id,
            access_token=secrets.token_urlsafe(32),
            category=category,
            severity=severity,
            reason=reason.strip(),
            facts=facts.strip(),
            incident_date=incident_date,
            incident_time=incident_time,
            incident_place=incident_place,
            suspension_days=suspension_days,
            suspension_start=suspension_start,
            suspension_end=suspension_end,
            generated_at=now,
            origin_ip=origin_ip,
            state=NoticeState.DRAFT,
            anchor_checks=0,
            challenge_attempts=0,
            challenge_frozen=False,
            delivery_attempts=0,
            delivery_bounced=False,
            created_at=now,
            updated_at=now,
        )
        notice.content_hash = self.integrity.hash_notice(notice)
        self.db.add(notice)

        if document is not None and self.blob_store is not None:
            notice.document_key = self.blob_store.put(
                f"notices/{notice.id}/sancion.pdf", document, content_type="application/pdf"
            )

        self.audit.record(
            event_type="notice_created",
            description=f"{CATEGORY_LABELS[category]} created for {employee.full_name}",
            actor=ActorType.EMPLOYER,
            notice_id=notice.id,
            ip_address=origin_ip,
            content_hash=notice.content_hash,
            metadata={"category": category.value, "severity": severity.value},
            occurred_at=now,
        )
        self.db.flush()
        self.integrity.stamp_notice(notice, now=now)
        self.db.commit()

        logger.info(f"Notice {notice.id} created with hash {notice.content_hash[:12]}...")
        return notice

    # =========================================================================
    # DELIVERY
    # =========================================================================

    def send(
        self,
        notice: NoticeDB,
        channels: Optional[List[DeliveryChannel]] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Deliver (or resend) through every requested channel.

        A failed channel never blocks the others. The first successful
        delivery moves DRAFT to SENT and fixes the due date; later calls
        only refresh channel timestamps.
        """
        now = now or datetime.utcnow()
        channels = channels or [DeliveryChannel.EMAIL, DeliveryChannel.SMS, DeliveryChannel.WHATSAPP]
        is_resend = notice.state != NoticeState.DRAFT

        if notice.state not in (NoticeState.DRAFT, NoticeState.SENT, NoticeState.READ):
            raise StateConflict(f"A {notice.state.value} notice cannot be delivered again")
        if not self.domicile.is_signed(notice.employee):
            raise StepOutOfOrder("The employee has not signed the electronic domicile agreement")
        if self.delivery is None:
            raise ExternalProviderUnavailable("delivery", "No delivery provider configured")

        self.integrity.assert_notice_integrity(notice)

        employee = notice.employee
        employer = notice.employer
        body = MESSAGE_TEMPLATE.format(
            employer=employer.legal_name,
            label=CATEGORY_LABELS[notice.category],
            link=disclosure_link(notice.access_token),
            days=DISPUTE_WINDOW_DAYS,
        )

        delivered: List[str] = []
        failures: Dict[str, str] = {}
        for channel in channels:
            address = employee.email if channel == DeliveryChannel.EMAIL else employee.phone
            if not address:
                failures[channel.value] = "no address on record"
                continue
            try:
                if channel == DeliveryChannel.EMAIL:
                    receipt = self.delivery.send_email(
                        address, EMAIL_SUBJECT.format(employer=employer.legal_name), body
                    )
                    notice.email_message_id = receipt.message_id
                    notice.delivery_bounced = False
                elif channel == DeliveryChannel.SMS:
                    receipt = self.delivery.send_sms(address, body)
                else:
                    receipt = self.delivery.send_whatsapp(address, body)
            except ExternalProviderUnavailable as e:
                failures[channel.value] = e.message
                logger.warning(f"Delivery via {channel.value} failed for notice {notice.id}: {e.message}")
                self.audit.record(
                    event_type=f"delivery_failed_{channel.value}",
                    description=f"Delivery via {channel.value} failed",
                    actor=ActorType.PROVIDER,
                    notice_id=notice.id,
                    metadata=DeliveryPayload(channel=channel.value, status="failed", error=e.message).model_dump(),
                    occurred_at=now,
                )
                continue

            setattr(notice, CHANNEL_FIELDS[channel], now)
            delivered.append(channel.value)
            self.audit.record(
                event_type=f"delivered_{channel.value}",
                description=f"Notice {'resent' if is_resend else 'sent'} via {channel.value}",
                actor=ActorType.EMPLOYER,
                notice_id=notice.id,
                ip_address=ip_address,
                content_hash=notice.content_hash,
                metadata=DeliveryPayload(
                    channel=channel.value, status="sent", message_id=receipt.message_id
                ).model_dump(),
                occurred_at=now,
            )

        notice.delivery_attempts = (notice.delivery_attempts or 0) + 1

        if not delivered:
            self.db.commit()
            raise ExternalProviderUnavailable(
                "delivery", "No channel accepted the notice", details={"failures": failures}
            )

        if notice.state == NoticeState.DRAFT:
            fields = {"sent_at": now}
            if notice.due_date is None:
                fields["due_date"] = notice.created_at + timedelta(days=DISPUTE_WINDOW_DAYS)
            self.state_machine.transition(
                notice,
                NoticeState.SENT,
                trigger="delivered",
                actor=ActorType.EMPLOYER,
                fields=fields,
                ip_address=ip_address,
                metadata={"channels": delivered},
                now=now,
            )
        else:
            self.audit.record(
                event_type="notice_resent",
                description=f"Notice resent via {', '.join(delivered)}; due date unchanged",
                actor=ActorType.EMPLOYER,
                notice_id=notice.id,
                ip_address=ip_address,
                metadata={"channels": delivered, "due_date": notice.due_date.isoformat() if notice.due_date else None},
                occurred_at=now,
            )

        self.gate.create_session(notice, now=now)
        self.db.commit()

        return {
            "notice_id": notice.id,
            "state": notice.state.value,
            "resend": is_resend,
            "delivered": delivered,
            "failed": failures,
            "due_date": notice.due_date.isoformat() if notice.due_date else None,
            "link": disclosure_link(notice.access_token),
        }

    def record_delivery_event(
        self,
        message_id: str,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Provider webhook: delivered / opened / bounced, by provider message id."""
        now = now or datetime.utcnow()
        event = (event or "").lower()
        if event not in PROVIDER_EVENTS:
            return {"matched": False, "ignored": event}

        notice = self.db.query(NoticeDB).filter(NoticeDB.email_message_id == message_id).first()
        if notice is None:
            logger.info(f"Delivery event {event} for unknown message {message_id}")
            return {"matched": False}

        if event == "delivered" and notice.email_delivered_at is None:
            notice.email_delivered_at = now
        elif event == "opened" and notice.email_opened_at is None:
            notice.email_opened_at = now
        elif event == "bounced":
            notice.delivery_bounced = True

        self.audit.record(
            event_type=f"email_{event}",
            description=f"Email provider reported {event}",
            actor=ActorType.PROVIDER,
            notice_id=notice.id,
            metadata=DeliveryPayload(
                channel="email", status=event, message_id=message_id,
                error=(payload or {}).get("reason"),
            ).model_dump(),
            occurred_at=now,
        )
        self.db.commit()
        return {"matched": True, "notice_id": notice.id, "event": event}

    def record_physical_notice(
        self,
        notice: NoticeDB,
        method: str,
        sent_at: Optional[datetime] = None,
        receipt: Optional[bytes] = None,
        receipt_filename: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NoticeDB:
        """Employer records that a paper notice was dispatched."""
        now = now or datetime.utcnow()
        if notice.state == NoticeState.DRAFT:
            raise StepOutOfOrder("Deliver the notice electronically before recording a physical fallback")

        notice.physical_notice_sent_at = sent_at or now
        notice.physical_notice_method = method
        receipt_hash = None
        if receipt is not None:
            if self.blob_store is None:
                raise ExternalProviderUnavailable("blob_store", "No blob store configured")
            notice.physical_notice_receipt_key = self.blob_store.put(
                f"notices/{notice.id}/fisico/{receipt_filename or 'constancia.pdf'}", receipt
            )
            receipt_hash = sha256_hex(receipt)

        self.audit.record(
            event_type="physical_notice_sent",
            description=f"Physical notice sent by {method}",
            actor=ActorType.EMPLOYER,
            notice_id=notice.id,
            content_hash=receipt_hash,
            metadata={"method": method, "sent_at": notice.physical_notice_sent_at.isoformat()},
            occurred_at=now,
        )
        self.db.commit()
        return notice

    # =========================================================================
    # DISCLOSURE
    # =========================================================================

    def open_link(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """First contact with the disclosure link. Returns the gate status only."""
        now = now or datetime.utcnow()
        notice, session = self.gate.load(token, now=now)

        first_open = notice.link_opened_at is None
        if first_open:
            notice.link_opened_at = now
            notice.link_open_ip = ip_address
            notice.link_open_user_agent = user_agent
        self.audit.record(
            event_type="link_opened" if first_open else "link_reopened",
            description="Disclosure link opened",
            actor=ActorType.EMPLOYEE,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            occurred_at=now,
        )
        self.db.commit()

        return {
            "employer": notice.employer.legal_name,
            "category": notice.category.value,
            "gate": self.gate.status(session),
        }

    def get_disclosure(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Gated content. Only reachable once the identity gate is GRANTED."""
        now = now or datetime.utcnow()
        notice, session = self.gate.require_granted(token, now=now)
        self.integrity.assert_notice_integrity(notice)

        if notice.challenge_field is None:
            self.db.flush()
            self.db.query(NoticeDB).filter(
                NoticeDB.id == notice.id,
                NoticeDB.challenge_field.is_(None),
            ).update({NoticeDB.challenge_field: choose_field(notice)}, synchronize_session=False)
            self.db.refresh(notice)

        engagement = notice.engagement or self.tracker.start(notice, now=now)
        self.db.commit()

        return {
            "notice": {
                "id": notice.id,
                "employer": notice.employer.legal_name,
                "employee": notice.employee.full_name,
                "category": notice.category.value,
                "category_label": CATEGORY_LABELS[notice.category],
                "severity": notice.severity.value,
                "reason": notice.reason,
                "facts": notice.facts,
                "incident_date": notice.incident_date.isoformat() if notice.incident_date else None,
                "incident_time": notice.incident_time,
                "incident_place": notice.incident_place,
                "suspension_days": notice.suspension_days,
                "suspension_start": notice.suspension_start.isoformat() if notice.suspension_start else None,
                "suspension_end": notice.suspension_end.isoformat() if notice.suspension_end else None,
                "content_hash": notice.content_hash,
                "due_date": notice.due_date.isoformat() if notice.due_date else None,
            },
            "state": notice.state.value,
            "engagement": self.tracker.status(engagement),
            "challenge": {
                **question_for(notice.challenge_field),
                "attempts": notice.challenge_attempts or 0,
                "max_attempts": CHALLENGE_MAX_ATTEMPTS,
                "frozen": bool(notice.challenge_frozen),
            },
            **describe(notice, now=now),
        }

    def heartbeat(
        self,
        token: str,
        scroll_pct: float,
        dwell_seconds: float,
        visible: bool = True,
        sequence: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        notice, _ = self.gate.require_granted(token, now=now)
        return self.tracker.heartbeat(
            notice, scroll_pct, dwell_seconds, visible=visible, sequence=sequence, now=now
        )

    def confirm_read(
        self,
        token: str,
        challenge_field: str,
        answer: str,
        attempt_number: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Acknowledgment step. A correct answer moves SENT to READ and
        opens the descargo window. A wrong answer returns the remaining
        attempts; the last one freezes confirmation until the employer
        intervenes.
        """
        now = now or datetime.utcnow()
        notice, session = self.gate.require_granted(token, now=now)

        if notice.read_confirmed_at is not None:
            return {
                "confirmed": True,
                "already_confirmed": True,
                "read_confirmed_at": notice.read_confirmed_at.isoformat(),
                "read_confirmation_hash": notice.read_confirmation_hash,
            }
        if notice.state != NoticeState.SENT:
            raise StateConflict(f"A {notice.state.value} notice cannot be confirmed")
        if notice.challenge_frozen:
            raise ChallengeFrozen("Confirmation is frozen. Contact the issuing company")
        if not self.tracker.is_satisfied(notice):
            raise EngagementIncomplete(
                "Read the full notice before confirming",
                details=self.tracker.status(notice.engagement),
            )
        if notice.challenge_field is None:
            raise StepOutOfOrder("Open the notice content before confirming")
        if challenge_field != notice.challenge_field:
            raise ValidationFailed("Unexpected challenge field", details={"expected": notice.challenge_field})

        if not answer_matches(notice, notice.challenge_field, answer):
            return self._challenge_failed(notice, answer, attempt_number, ip_address, user_agent, now)

        confirmation_hash = hash_payload({
            "notice_id": notice.id,
            "content_hash": notice.content_hash,
            "challenge_field": notice.challenge_field,
            "answer": answer.strip(),
            "confirmed_at": now,
            "ip": ip_address,
            "user_agent": user_agent,
            "gate_session_id": session.id,
        })
        self.state_machine.transition(
            notice,
            NoticeState.READ,
            trigger="read_confirmed",
            actor=ActorType.EMPLOYEE,
            fields={
                "read_confirmed_at": now,
                "read_ip": ip_address,
                "read_user_agent": user_agent,
                "read_confirmation_hash": confirmation_hash,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
        self.audit.record(
            event_type="read_confirmed",
            description="Employee confirmed reading and answered the acknowledgment challenge",
            actor=ActorType.EMPLOYEE,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            content_hash=confirmation_hash,
            metadata={
                "challenge_field": notice.challenge_field,
                "attempt_number": attempt_number or (notice.challenge_attempts or 0) + 1,
                "needs_review": bool(session.needs_review),
            },
            occurred_at=now,
        )
        descargo = self.descargos.spawn(notice, now=now)
        self.db.commit()

        logger.info(f"Notice {notice.id} read-confirmed")
        return {
            "confirmed": True,
            "already_confirmed": False,
            "read_confirmed_at": now.isoformat(),
            "read_confirmation_hash": confirmation_hash,
            "descargo_token": descargo.token,
            "descargo_expires_at": descargo.expires_at.isoformat(),
        }

    def _challenge_failed(
        self,
        notice: NoticeDB,
        answer: str,
        attempt_number: Optional[int],
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> Dict[str, Any]:
        self.db.flush()
        counted = self.db.query(NoticeDB).filter(
            NoticeDB.id == notice.id,
            NoticeDB.challenge_frozen.is_(False),
            NoticeDB.challenge_attempts < CHALLENGE_MAX_ATTEMPTS,
        ).update({NoticeDB.challenge_attempts: NoticeDB.challenge_attempts + 1}, synchronize_session=False)
        self.db.refresh(notice)
        if counted == 0:
            raise ChallengeFrozen("Confirmation is frozen. Contact the issuing company")

        self.audit.record(
            event_type="challenge_failed",
            description=f"Acknowledgment answer did not match (attempt {notice.challenge_attempts} of {CHALLENGE_MAX_ATTEMPTS})",
            actor=ActorType.EMPLOYEE,
            notice_id=notice.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "challenge_field": notice.challenge_field,
                "answer": (answer or "")[:200],
                "attempt_number": attempt_number or notice.challenge_attempts,
            },
            occurred_at=now,
        )

        remaining = CHALLENGE_MAX_ATTEMPTS - notice.challenge_attempts
        if remaining <= 0:
            notice.challenge_frozen = True
            self.audit.record(
                event_type="challenge_frozen",
                description="Acknowledgment frozen after exhausting attempts; employer intervention required",
                actor=ActorType.SYSTEM,
                notice_id=notice.id,
                occurred_at=now,
            )
            logger.warning(f"Acknowledgment frozen for notice {notice.id}")
        self.db.commit()

        return {
            "confirmed": False,
            "remaining_attempts": max(0, remaining),
            "frozen": bool(notice.challenge_frozen),
        }

    # =========================================================================
    # DISPUTE AND EMPLOYER INTERVENTIONS
    # =========================================================================

    def dispute(
        self,
        notice: NoticeDB,
        reason: str,
        actor: ActorType = ActorType.EMPLOYEE,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NoticeDB:
        """
        Record a dispute within the window. Stops the clock from making
        the notice firm. The employer may record one received out of band.
        """
        now = now or datetime.utcnow()
        if notice.state == NoticeState.DISPUTED:
            raise StateConflict()
        if notice.due_date is not None and now > notice.due_date:
            raise StateConflict("The dispute window has closed", details={"due_date": notice.due_date.isoformat()})

        self.state_machine.transition(
            notice,
            NoticeState.DISPUTED,
            trigger="disputed" if actor == ActorType.EMPLOYEE else "dispute_recorded_by_employer",
            actor=actor,
            fields={"disputed_at": now, "dispute_reason": (reason or "").strip() or None},
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
        self.db.commit()
        return notice

    def dispute_by_token(
        self,
        token: str,
        reason: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NoticeDB:
        notice, _ = self.gate.require_granted(token, now=now)
        return self.dispute(notice, reason, ActorType.EMPLOYEE, ip_address, user_agent, now=now)

    def unfreeze_challenge(self, notice: NoticeDB, employer_id: str, now: Optional[datetime] = None) -> NoticeDB:
        """Employer intervention: new attempts and a freshly drawn field."""
        now = now or datetime.utcnow()
        if not notice.challenge_frozen:
            raise StateConflict("Acknowledgment is not frozen")

        previous = notice.challenge_field
        notice.challenge_field = choose_field(notice, exclude=previous)
        notice.challenge_attempts = 0
        notice.challenge_frozen = False
        self.audit.record(
            event_type="challenge_unfrozen",
            description="Employer restored acknowledgment attempts",
            actor=ActorType.EMPLOYER,
            notice_id=notice.id,
            metadata={"employer_id": employer_id, "previous_field": previous, "field": notice.challenge_field},
            occurred_at=now,
        )
        self.db.commit()
        return notice

    def check_integrity(self, notice: NoticeDB) -> Dict[str, Any]:
        self.integrity.assert_notice_integrity(notice)
        return {
            "notice_id": notice.id,
            "content_hash": normalize_digest(notice.content_hash),
            "valid": True,
            "timestamp_authority": notice.tsa_status.value,
            "notary_anchor": notice.anchor_status.value,
        }
