"""
Public Verification

Anyone holding a SHA-256 digest (a judge, an expert witness, opposing
counsel) can ask whether the system issued an artifact with that digest.
No authentication; every attempt is logged.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...errors import ValidationFailed
from ...models.db_models import (
    DescargoDB, DomicileAgreementDB, EvidenceItemDB, ExportRecordDB, IncidentLogDB, NoticeDB,
    VerificationAttemptDB, WitnessDeclarationDB,
)
from ..integrity.hashing import is_valid_digest, normalize_digest, sha256_hex

logger = logging.getLogger(__name__)


def _match(kind: str, record_id: str, created_at: Optional[datetime], **extra) -> Dict[str, Any]:
    return {
        "kind": kind,
        "id": record_id,
        "created_at": created_at.isoformat() if created_at else None,
        **extra,
    }


class PublicVerifier:
    """Look up a digest across every hashed artifact."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def verify(
        self,
        digest: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        digest = normalize_digest(digest)
        if not is_valid_digest(digest):
            raise ValidationFailed("A SHA-256 digest is 64 hexadecimal characters")

        matches = self._find(digest)
        self.db.add(VerificationAttemptDB(
            id=str(uuid4()),
            digest=digest,
            found=bool(matches),
            match_count=len(matches),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        ))
        self.db.commit()
        logger.info(f"Public verification of {digest[:12]}...: {len(matches)} match(es)")
        return {
            "digest": digest,
            "found": bool(matches),
            "matches": matches,
            "verified_at": now.isoformat(),
        }

    def verify_file(
        self,
        data: bytes,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Hash an uploaded file and look the digest up."""
        if not data:
            raise ValidationFailed("Empty file")
        return self.verify(sha256_hex(data), ip_address=ip_address, user_agent=user_agent, now=now)

    def _find(self, digest: str) -> List[Dict[str, Any]]:
        matches = []

        notices = self.db.query(NoticeDB).filter(
            or_(NoticeDB.content_hash == digest, NoticeDB.read_confirmation_hash == digest)
        ).all()
        for notice in notices:
            kind = "notice" if notice.content_hash == digest else "read_confirmation"
            matches.append(_match(
                kind,
                notice.id,
                notice.generated_at if kind == "notice" else notice.read_confirmed_at,
                state=notice.state.value,
                timestamp_authority={
                    "status": notice.tsa_status.value,
                    "authority": notice.tsa_authority,
                    "stamped_at": notice.tsa_stamped_at.isoformat() if notice.tsa_stamped_at else None,
                },
                notary_anchor={
                    "status": notice.anchor_status.value,
                    "block_height": notice.anchor_block_height,
                    "confirmed_at": notice.anchor_confirmed_at.isoformat() if notice.anchor_confirmed_at else None,
                },
            ))

        for witness in self.db.query(WitnessDeclarationDB).filter(WitnessDeclarationDB.signature_hash == digest):
            matches.append(_match("witness_declaration", witness.id, witness.signed_at))

        for item in self.db.query(EvidenceItemDB).filter(EvidenceItemDB.content_hash == digest):
            matches.append(_match("evidence", item.id, item.created_at, evidence_kind=item.kind.value))

        for descargo in self.db.query(DescargoDB).filter(DescargoDB.confirmation_hash == digest):
            matches.append(_match("descargo", descargo.id, descargo.confirmed_at))

        for entry in self.db.query(IncidentLogDB).filter(IncidentLogDB.content_hash == digest):
            matches.append(_match("incident_log", entry.id, entry.created_at))

        for export in self.db.query(ExportRecordDB).filter(ExportRecordDB.package_hash == digest):
            matches.append(_match("export_package", export.id, export.created_at, scope=export.scope.value))

        for agreement in self.db.query(DomicileAgreementDB).filter(DomicileAgreementDB.signature_hash == digest):
            matches.append(_match("domicile_agreement", agreement.id, agreement.signed_at))

        return matches
