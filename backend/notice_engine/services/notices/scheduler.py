"""
Notice Scheduler

AUTHORITY: SYSTEM
Daily firmness check: READ notices whose dispute window lapsed without a
dispute become FIRM. Physical-fallback candidates are reported, never
mutated; that state exists only for display.

Reminder run (hourly): one SMS to the employee when a notice is still
unopened 24 hours after sending, and up to three employer alerts (72 h,
5 and 7 days) while it stays unread. The first alert also sends the
employee a WhatsApp reminder. Nothing here changes legal state; the
dispute window keeps running from the first delivery.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ...config import EMPLOYER_ALERT_HOURS, REMINDER_AFTER_HOURS, REMINDER_MAX_AGE_DAYS
from ...errors import ExternalProviderUnavailable, NoticeEngineError
from ...models.db_models import ActorType, NoticeDB, NoticeState
from ...models.metadata import DeliveryPayload
from ..audit.audit_log import AuditLog
from ..delivery.provider import DeliveryProvider
from .display_state import needs_physical_fallback
from .notice_service import disclosure_link
from .state_machine import AutomaticTransitionTriggers, NoticeStateMachine

logger = logging.getLogger(__name__)

REMINDER_SMS_TEMPLATE = (
    "{employee}, tiene una notificacion laboral de {employer} sin abrir. "
    "Ingrese a {link} . Le quedan {days} dias para impugnarla."
)
EMPLOYEE_WHATSAPP_TEMPLATE = (
    "{employee}, {employer} le envio una notificacion laboral que aun no fue leida. "
    "Puede verla en {link}"
)
EMPLOYER_ALERT_SUBJECTS = {
    1: "Accion requerida: {employee} no confirmo la lectura (72 hs)",
    2: "Recordatorio: {employee} sigue sin confirmar la lectura (5 dias)",
    3: "URGENTE: {employee} sin confirmar la lectura hace 7 dias",
}
EMPLOYER_ALERT_BODY = (
    "{employee} (CUIL {tax_id}) no confirmo la lectura de la notificacion {notice_id} "
    "enviada el {sent_at}. Puede reenviarla en forma digital o generar el envio fisico "
    "(carta documento). Alerta {stage} de {total}."
)


class NoticeScheduler:
    """Scheduler jobs for notice legal state and unread follow-up."""

    def __init__(self, db_session: Session, delivery: Optional[DeliveryProvider] = None):
        """Initialize with database session and an optional delivery provider."""
        self.db = db_session
        self.delivery = delivery
        self.audit = AuditLog(db_session)
        self.state_machine = NoticeStateMachine(db_session)

    def run_firmness_check(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Advance every READ notice past its due date to FIRM.

        Called automatically via scheduler endpoint. Per-notice failures
        are collected and do not stop the run.
        """
        now = now or datetime.utcnow()
        processed = []
        errors = []

        candidates = self.db.query(NoticeDB).filter(
            NoticeDB.state == NoticeState.READ,
            NoticeDB.due_date < now,
            NoticeDB.disputed_at.is_(None),
        ).all()

        for notice in candidates:
            try:
                success, message = AutomaticTransitionTriggers.firmness_reached(
                    self.state_machine, notice, now=now
                )
                processed.append({"notice_id": notice.id, "success": success, "message": message})
            except NoticeEngineError as e:
                logger.error(f"Firmness check failed for notice {notice.id}: {e.message}")
                errors.append({"notice_id": notice.id, "error": e.message})

        self.db.commit()

        return {
            "run_date": now.isoformat(),
            "candidates": len(candidates),
            "firm": len([p for p in processed if p["success"]]),
            "errors": len(errors),
            "details": {
                "processed": processed,
                "errors": errors,
            },
        }

    def physical_fallback_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """SENT notices that now need a paper notice."""
        now = now or datetime.utcnow()
        sent = self.db.query(NoticeDB).filter(
            NoticeDB.state == NoticeState.SENT,
            NoticeDB.physical_notice_sent_at.is_(None),
        ).all()
        pending = [
            {
                "notice_id": n.id,
                "employer_id": n.employer_id,
                "sent_at": n.sent_at.isoformat() if n.sent_at else None,
                "bounced": bool(n.delivery_bounced),
            }
            for n in sent
            if needs_physical_fallback(n, now)
        ]
        return {
            "run_date": now.isoformat(),
            "physical_fallback_needed": len(pending),
            "details": {"notices": pending},
        }

    # =========================================================================
    # REMINDERS AND EMPLOYER ALERTS
    # =========================================================================

    def run_reminders(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Send the unopened-notice SMS and the due employer alerts.

        Each notice advances at most one alert stage per run. Provider
        failures leave the notice eligible for the next run.
        """
        now = now or datetime.utcnow()
        if self.delivery is None:
            raise ExternalProviderUnavailable("delivery", "No delivery provider configured")

        reminders: List[str] = []
        alerts: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        for notice in self._reminder_candidates(now):
            try:
                self._send_reminder(notice, now)
                reminders.append(notice.id)
            except ExternalProviderUnavailable as e:
                logger.warning(f"Reminder SMS failed for notice {notice.id}: {e.message}")
                errors.append({"notice_id": notice.id, "job": "reminder", "error": e.message})

        for notice, stage in self._alert_candidates(now):
            try:
                if self._send_employer_alert(notice, stage, now):
                    alerts.append({"notice_id": notice.id, "stage": stage})
            except ExternalProviderUnavailable as e:
                logger.warning(f"Employer alert {stage} failed for notice {notice.id}: {e.message}")
                errors.append({"notice_id": notice.id, "job": f"employer_alert_{stage}", "error": e.message})

        self.db.commit()
        logger.info(f"Reminder run: {len(reminders)} SMS reminders, {len(alerts)} employer alerts, {len(errors)} errors")

        return {
            "run_date": now.isoformat(),
            "reminders": len(reminders),
            "employer_alerts": len(alerts),
            "errors": len(errors),
            "details": {"reminders": reminders, "employer_alerts": alerts, "errors": errors},
        }

    def _reminder_candidates(self, now: datetime) -> List[NoticeDB]:
        notices = self.db.query(NoticeDB).filter(
            NoticeDB.state == NoticeState.SENT,
            NoticeDB.sent_at <= now - timedelta(hours=REMINDER_AFTER_HOURS),
            NoticeDB.sent_at > now - timedelta(days=REMINDER_MAX_AGE_DAYS),
            NoticeDB.link_opened_at.is_(None),
            NoticeDB.email_opened_at.is_(None),
            NoticeDB.reminder_sent_at.is_(None),
        ).all()
        return [n for n in notices if n.employee.phone]

    def _alert_candidates(self, now: datetime) -> List[tuple]:
        notices = self.db.query(NoticeDB).filter(
            NoticeDB.state == NoticeState.SENT,
            NoticeDB.read_confirmed_at.is_(None),
            NoticeDB.physical_notice_sent_at.is_(None),
            NoticeDB.sent_at.isnot(None),
        ).all()
        due = []
        for notice in notices:
            sent = notice.employer_alerts_sent or 0
            if sent >= len(EMPLOYER_ALERT_HOURS):
                continue
            if now - notice.sent_at >= timedelta(hours=EMPLOYER_ALERT_HOURS[sent]):
                due.append((notice, sent + 1))
        return due

    def _send_reminder(self, notice: NoticeDB, now: datetime) -> None:
        employee = notice.employee
        days_left = max((notice.due_date - now).days, 0) if notice.due_date else 0
        receipt = self.delivery.send_sms(employee.phone, REMINDER_SMS_TEMPLATE.format(
            employee=employee.full_name,
            employer=notice.employer.legal_name,
            link=disclosure_link(notice.access_token),
            days=days_left,
        ))

        updated = self.db.query(NoticeDB).filter(
            NoticeDB.id == notice.id,
            NoticeDB.reminder_sent_at.is_(None),
        ).update({NoticeDB.reminder_sent_at: now}, synchronize_session=False)
        self.db.refresh(notice)
        if updated != 1:
            return

        self.audit.record(
            event_type="reminder_sms_sent",
            description="Unopened notice: reminder SMS sent to the employee",
            actor=ActorType.SYSTEM,
            notice_id=notice.id,
            metadata=DeliveryPayload(channel="sms", status="sent", message_id=receipt.message_id).model_dump(),
            occurred_at=now,
        )

    def _send_employer_alert(self, notice: NoticeDB, stage: int, now: datetime) -> bool:
        employer = notice.employer
        employee = notice.employee
        receipt = self.delivery.send_email(
            employer.email,
            EMPLOYER_ALERT_SUBJECTS.get(stage, EMPLOYER_ALERT_SUBJECTS[3]).format(employee=employee.full_name),
            EMPLOYER_ALERT_BODY.format(
                employee=employee.full_name,
                tax_id=employee.tax_id or "N/A",
                notice_id=notice.id,
                sent_at=notice.sent_at.strftime("%d/%m/%Y %H:%M"),
                stage=stage,
                total=len(EMPLOYER_ALERT_HOURS),
            ),
        )

        updated = self.db.query(NoticeDB).filter(
            NoticeDB.id == notice.id,
            NoticeDB.employer_alerts_sent == stage - 1,
        ).update(
            {NoticeDB.employer_alerts_sent: stage, NoticeDB.last_employer_alert_at: now},
            synchronize_session=False,
        )
        self.db.refresh(notice)
        if updated != 1:
            return False

        self.audit.record(
            event_type="employer_alert_sent",
            description=f"Employer alert {stage} of {len(EMPLOYER_ALERT_HOURS)}: notice still unread",
            actor=ActorType.SYSTEM,
            notice_id=notice.id,
            metadata={
                **DeliveryPayload(channel="email", status="sent", message_id=receipt.message_id).model_dump(),
                "alert_stage": stage,
                "hours_since_sent": int((now - notice.sent_at).total_seconds() // 3600),
            },
            occurred_at=now,
        )

        if stage == 1 and employee.phone:
            try:
                whatsapp = self.delivery.send_whatsapp(employee.phone, EMPLOYEE_WHATSAPP_TEMPLATE.format(
                    employee=employee.full_name,
                    employer=employer.legal_name,
                    link=disclosure_link(notice.access_token),
                ))
            except ExternalProviderUnavailable as e:
                logger.warning(f"WhatsApp reminder failed for notice {notice.id}: {e.message}")
            else:
                self.audit.record(
                    event_type="reminder_whatsapp_sent",
                    description="Unread notice: WhatsApp reminder sent to the employee",
                    actor=ActorType.SYSTEM,
                    notice_id=notice.id,
                    metadata=DeliveryPayload(
                        channel="whatsapp", status="sent", message_id=whatsapp.message_id
                    ).model_dump(),
                    occurred_at=now,
                )
        return True
