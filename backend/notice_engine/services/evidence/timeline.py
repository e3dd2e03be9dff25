"""
Chain-of-Custody Timeline

Every state-relevant occurrence of a notice and its children is already
in the insert-only audit store. The timeline reads those rows, classifies
each one and orders them by timestamp, breaking ties with a fixed kind
priority so that two facts recorded in the same instant always come out
in causal order (creation before delivery, delivery before identity...).
"""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ...models.db_models import AuditEventDB, NoticeDB


# Tie-break order for events sharing a timestamp
KIND_PRIORITY = [
    "creacion",
    "integridad",
    "envio",
    "entrega",
    "apertura",
    "identidad",
    "lectura",
    "confirmacion",
    "estado",
    "descargo",
    "testigo",
    "evidencia",
    "recordatorio",
    "alerta",
    "notificacion_fisica",
    "impugnacion",
    "firmeza",
    "exportacion",
    "otro",
]

_PRIORITY = {kind: index for index, kind in enumerate(KIND_PRIORITY)}

# event_type prefix -> timeline kind; first match wins
EVENT_KINDS = [
    ("notice_created", "creacion"),
    ("timestamp_authority", "integridad"),
    ("notary_anchor", "integridad"),
    ("integrity_", "integridad"),
    ("delivered_", "envio"),
    ("delivery_failed", "envio"),
    ("notice_resent", "envio"),
    ("email_delivered", "entrega"),
    ("email_bounced", "entrega"),
    ("email_", "apertura"),
    ("link_", "apertura"),
    ("identity_", "identidad"),
    ("code_", "identidad"),
    ("biometric_", "identidad"),
    ("access_granted", "identidad"),
    ("gate_", "identidad"),
    ("engagement_", "lectura"),
    ("challenge_", "confirmacion"),
    ("read_confirmed", "confirmacion"),
    ("descargo_", "descargo"),
    ("witness_", "testigo"),
    ("evidence_", "evidencia"),
    ("reminder_", "recordatorio"),
    ("employer_alert", "alerta"),
    ("physical_notice", "notificacion_fisica"),
    ("export_", "exportacion"),
]

# state_transition rows are classified by their target state
TRANSITION_KINDS = {
    "SENT": "estado",
    "READ": "estado",
    "DISPUTED": "impugnacion",
    "FIRM": "firmeza",
}


@dataclass
class TimelineEvent:
    fecha: datetime
    tipo: str
    titulo: str
    event_type: str
    actor: str
    ip: Optional[str] = None
    digest: Optional[str] = None
    subject_type: str = "notice"
    subject_id: Optional[str] = None

    @property
    def priority(self) -> int:
        return _PRIORITY.get(self.tipo, len(KIND_PRIORITY))

    def to_manifest(self) -> Dict[str, Any]:
        """Shape of one chain_of_custody.events[] entry."""
        entry = {
            "fecha": self.fecha.isoformat(),
            "tipo": self.tipo,
            "titulo": self.titulo,
        }
        if self.ip:
            entry["ip"] = self.ip
        if self.digest:
            entry["hash"] = self.digest
        return entry

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fecha"] = self.fecha.isoformat()
        return data


def classify(event: AuditEventDB) -> str:
    if event.event_type == "state_transition":
        to_state = (event.event_metadata or {}).get("to_state")
        return TRANSITION_KINDS.get(to_state, "estado")
    for prefix, kind in EVENT_KINDS:
        if event.event_type.startswith(prefix):
            return kind
    return "otro"


def sort_events(events: List[TimelineEvent]) -> List[TimelineEvent]:
    """Stable sort by (timestamp, kind priority)."""
    return sorted(events, key=lambda e: (e.fecha, e.priority))


def collect(db: Session, notice: NoticeDB, include_exports: bool = True) -> List[TimelineEvent]:
    """Build the ordered timeline of one notice from the audit store."""
    rows = (
        db.query(AuditEventDB)
        .filter(AuditEventDB.notice_id == notice.id)
        .order_by(AuditEventDB.occurred_at)
        .all()
    )
    events = []
    for row in rows:
        kind = classify(row)
        if kind == "exportacion" and not include_exports:
            continue
        events.append(TimelineEvent(
            fecha=row.occurred_at,
            tipo=kind,
            titulo=row.description,
            event_type=row.event_type,
            actor=row.actor.value,
            ip=row.ip_address,
            digest=row.content_hash,
            subject_type=row.subject_type,
            subject_id=row.subject_id,
        ))
    return sort_events(events)
