"""Prior-incident log (bitacora) per employee."""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import NotFound, ValidationFailed
from ...models.db_models import ActorType, EmployeeDB, IncidentLogDB
from ..audit.audit_log import AuditLog
from ..integrity.hashing import hash_payload

EXPORT_LIMIT = 50


class IncidentLog:
    def __init__(self, db_session: Session):
        self.db = db_session
        self.audit = AuditLog(db_session)

    def add(
        self,
        employer_id: str,
        employee_id: str,
        kind: str,
        title: str,
        occurred_on: date,
        description: Optional[str] = None,
        category: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IncidentLogDB:
        now = now or datetime.utcnow()
        employee = self.db.query(EmployeeDB).filter(
            EmployeeDB.id == employee_id,
            EmployeeDB.employer_id == employer_id,
        ).first()
        if employee is None:
            raise NotFound("Employee not found")
        if not (title or "").strip():
            raise ValidationFailed("Title is required")

        entry = IncidentLogDB(
            id=str(uuid4()),
            employee_id=employee.id,
            kind=kind,
            category=category,
            title=title.strip(),
            description=description,
            occurred_on=occurred_on,
            archived=False,
            created_at=now,
        )
        entry.content_hash = hash_payload({
            "id": entry.id,
            "employee_id": employee.id,
            "kind": kind,
            "category": category,
            "title": entry.title,
            "description": description,
            "occurred_on": occurred_on,
            "created_at": now,
        })
        self.db.add(entry)
        self.audit.record(
            event_type="incident_logged",
            description=f"Incident '{entry.title}' logged",
            actor=ActorType.EMPLOYER,
            subject_type="incident",
            subject_id=entry.id,
            content_hash=entry.content_hash,
            metadata={"employee_id": employee.id, "kind": kind},
            occurred_at=now,
        )
        self.db.commit()
        return entry

    def archive(self, entry_id: str, employer_id: str) -> IncidentLogDB:
        entry = (
            self.db.query(IncidentLogDB)
            .join(EmployeeDB, EmployeeDB.id == IncidentLogDB.employee_id)
            .filter(IncidentLogDB.id == entry_id, EmployeeDB.employer_id == employer_id)
            .first()
        )
        if entry is None:
            raise NotFound("Incident not found")
        entry.archived = True
        self.db.commit()
        return entry

    def recent_for_employee(self, employee_id: str, limit: int = EXPORT_LIMIT) -> List[IncidentLogDB]:
        return (
            self.db.query(IncidentLogDB)
            .filter(IncidentLogDB.employee_id == employee_id, IncidentLogDB.archived.is_(False))
            .order_by(IncidentLogDB.occurred_on.desc(), IncidentLogDB.created_at.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def summary(entry: IncidentLogDB) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "kind": entry.kind,
            "category": entry.category,
            "title": entry.title,
            "description": entry.description,
            "occurred_on": entry.occurred_on.isoformat(),
            "content_hash": entry.content_hash,
        }
