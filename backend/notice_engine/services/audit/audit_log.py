"""
Audit Log

AUTHORITY: SYSTEM
Append-only store of every state-relevant occurrence. Rows are never
updated or deleted (the ORM rejects both). Each row carries a SHA-256
over its own canonical payload so that later tampering is detectable.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import AuditEventDB, ActorType
from ..integrity.hashing import hash_payload

logger = logging.getLogger(__name__)


class AuditLog:
    """Insert-only writer and reader for AuditEventDB."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def record(
        self,
        event_type: str,
        description: str,
        actor: ActorType = ActorType.SYSTEM,
        notice_id: Optional[str] = None,
        subject_type: str = "notice",
        subject_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        content_hash: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> AuditEventDB:
        """Append one event. Caller owns the commit."""
        occurred_at = occurred_at or datetime.utcnow()
        event_id = str(uuid4())
        row_hash = hash_payload({
            "id": event_id,
            "notice_id": notice_id,
            "subject_type": subject_type,
            "subject_id": subject_id or notice_id,
            "event_type": event_type,
            "actor": actor,
            "description": description,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "content_hash": content_hash,
            "metadata": metadata or {},
            "occurred_at": occurred_at,
        })

        event = AuditEventDB(
            id=event_id,
            notice_id=notice_id,
            subject_type=subject_type,
            subject_id=subject_id or notice_id,
            event_type=event_type,
            actor=actor,
            description=description,
            ip_address=ip_address,
            user_agent=user_agent,
            content_hash=content_hash,
            row_hash=row_hash,
            event_metadata=metadata or {},
            occurred_at=occurred_at,
        )
        self.db.add(event)
        logger.debug(f"Audit {event_type} notice={notice_id}")
        return event

    def events_for_notice(self, notice_id: str) -> List[AuditEventDB]:
        return (
            self.db.query(AuditEventDB)
            .filter(AuditEventDB.notice_id == notice_id)
            .order_by(AuditEventDB.occurred_at, AuditEventDB.id)
            .all()
        )

    def has_event(self, notice_id: str, event_type: str) -> bool:
        return self.db.query(AuditEventDB).filter(
            AuditEventDB.notice_id == notice_id,
            AuditEventDB.event_type == event_type,
        ).count() > 0

    @staticmethod
    def verify_row(event: AuditEventDB) -> bool:
        """Recompute row_hash from the stored columns."""
        expected = hash_payload({
            "id": event.id,
            "notice_id": event.notice_id,
            "subject_type": event.subject_type,
            "subject_id": event.subject_id,
            "event_type": event.event_type,
            "actor": event.actor,
            "description": event.description,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "content_hash": event.content_hash,
            "metadata": event.event_metadata or {},
            "occurred_at": event.occurred_at,
        })
        return expected == event.row_hash
