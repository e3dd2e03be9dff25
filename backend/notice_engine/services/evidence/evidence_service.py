"""
Evidence Ingestion

Uploaded photos, videos, audio, documents and screenshots. The client
hashes each file before upload; the server recomputes the digest over
the received bytes and rejects any difference. Capture metadata is kept
as a tagged variant (exif, media or other).
"""
import logging
import mimetypes
import os
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import ExternalProviderUnavailable, IntegrityMismatch, ValidationFailed
from ...models.db_models import ActorType, EvidenceItemDB, EvidenceKind, NoticeDB
from ...models.metadata import ExifMetadata, MediaContainerMetadata, parse_capture_metadata
from ..audit.audit_log import AuditLog
from ..integrity.hashing import assert_bytes_match, is_valid_digest, normalize_digest, sha256_hex
from ..storage.blob_store import BlobNotFound, BlobStore

logger = logging.getLogger(__name__)

MAX_EVIDENCE_BYTES = 100 * 1024 * 1024

MIME_PREFIX_KINDS = {
    "image/": EvidenceKind.PHOTO,
    "video/": EvidenceKind.VIDEO,
    "audio/": EvidenceKind.AUDIO,
}


def infer_kind(filename: str, mime_type: Optional[str]) -> EvidenceKind:
    mime_type = mime_type or mimetypes.guess_type(filename)[0] or ""
    for prefix, kind in MIME_PREFIX_KINDS.items():
        if mime_type.startswith(prefix):
            return kind
    return EvidenceKind.DOCUMENT


def safe_filename(filename: str) -> str:
    name = os.path.basename(filename or "").strip() or "archivo"
    return "".join(c if c.isalnum() or c in "._-" else "_" for c in name)[:200]


class EvidenceService:
    """Ingest and re-verify multimedia evidence for a notice."""

    def __init__(self, db_session: Session, blob_store: Optional[BlobStore] = None):
        self.db = db_session
        self.blob_store = blob_store
        self.audit = AuditLog(db_session)

    def ingest(
        self,
        notice: NoticeDB,
        filename: str,
        data: bytes,
        declared_hash: str,
        kind: Optional[EvidenceKind] = None,
        mime_type: Optional[str] = None,
        description: Optional[str] = None,
        is_principal: bool = False,
        capture_metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EvidenceItemDB:
        now = now or datetime.utcnow()
        if self.blob_store is None:
            raise ExternalProviderUnavailable("blob_store", "No blob store configured")
        if not data:
            raise ValidationFailed("Empty file")
        if len(data) > MAX_EVIDENCE_BYTES:
            raise ValidationFailed(f"File exceeds {MAX_EVIDENCE_BYTES // (1024 * 1024)} MB")
        if not is_valid_digest(normalize_digest(declared_hash)):
            raise ValidationFailed("A SHA-256 hex digest computed before upload is required")

        filename = safe_filename(filename)
        try:
            content_hash = assert_bytes_match(f"evidence {filename}", data, declared_hash)
        except IntegrityMismatch as e:
            logger.error(f"Evidence hash mismatch on upload for notice {notice.id}: {filename}")
            self.audit.record(
                event_type="evidence_integrity_mismatch",
                description=f"Uploaded file {filename} does not match its declared hash",
                actor=ActorType.EMPLOYER,
                notice_id=notice.id,
                subject_type="evidence",
                ip_address=ip_address,
                content_hash=e.actual,
                metadata={"declared": e.expected, "actual": e.actual, "filename": filename},
                occurred_at=now,
            )
            self.db.commit()
            raise

        parsed = parse_capture_metadata(capture_metadata)
        captured_at = parsed.captured_at if isinstance(parsed, (ExifMetadata, MediaContainerMetadata)) else None

        item_id = str(uuid4())
        storage_key = self.blob_store.put(
            f"notices/{notice.id}/evidencias/{item_id}_{filename}",
            data,
            content_type=mime_type or "application/octet-stream",
        )

        if is_principal:
            self.db.query(EvidenceItemDB).filter(
                EvidenceItemDB.notice_id == notice.id,
                EvidenceItemDB.is_principal.is_(True),
            ).update({EvidenceItemDB.is_principal: False}, synchronize_session=False)

        item = EvidenceItemDB(
            id=item_id,
            notice_id=notice.id,
            kind=kind or infer_kind(filename, mime_type),
            filename=filename,
            mime_type=mime_type,
            size_bytes=len(data),
            content_hash=content_hash,
            description=description,
            is_principal=is_principal,
            storage_key=storage_key,
            capture_metadata=parsed.model_dump(mode="json") if parsed else None,
            captured_at=captured_at.replace(tzinfo=None) if captured_at else None,
            uploaded_ip=ip_address,
            created_at=now,
        )
        self.db.add(item)
        self.audit.record(
            event_type="evidence_uploaded",
            description=f"Evidence {filename} ({item.kind.value}) uploaded and verified",
            actor=ActorType.EMPLOYER,
            notice_id=notice.id,
            subject_type="evidence",
            subject_id=item.id,
            ip_address=ip_address,
            content_hash=content_hash,
            metadata={"size_bytes": len(data), "is_principal": is_principal, "kind": item.kind.value},
            occurred_at=now,
        )
        self.db.commit()
        logger.info(f"Evidence {item.id} stored for notice {notice.id}")
        return item

    def verify_item(self, item: EvidenceItemDB, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Re-fetch the stored bytes and compare with the recorded hash."""
        now = now or datetime.utcnow()
        if self.blob_store is None:
            raise ExternalProviderUnavailable("blob_store", "No blob store configured")
        try:
            data = self.blob_store.get(item.storage_key)
        except BlobNotFound:
            raise ExternalProviderUnavailable("blob_store", f"Stored file for evidence {item.id} is missing")

        actual = sha256_hex(data)
        valid = actual == item.content_hash
        self.audit.record(
            event_type="evidence_verified" if valid else "evidence_integrity_mismatch",
            description=f"Stored evidence {item.filename} re-verified",
            actor=ActorType.SYSTEM,
            notice_id=item.notice_id,
            subject_type="evidence",
            subject_id=item.id,
            content_hash=actual,
            metadata={"expected": item.content_hash, "actual": actual},
            occurred_at=now,
        )
        self.db.commit()
        if not valid:
            raise IntegrityMismatch(f"evidence {item.id}", item.content_hash, actual)
        return {"evidence_id": item.id, "content_hash": actual, "valid": True, "verified_at": now.isoformat()}

    def for_notice(self, notice_id: str) -> List[EvidenceItemDB]:
        return (
            self.db.query(EvidenceItemDB)
            .filter(EvidenceItemDB.notice_id == notice_id)
            .order_by(EvidenceItemDB.created_at)
            .all()
        )

    @staticmethod
    def summary(item: EvidenceItemDB) -> Dict[str, Any]:
        return {
            "id": item.id,
            "kind": item.kind.value,
            "filename": item.filename,
            "mime_type": item.mime_type,
            "size_bytes": item.size_bytes,
            "content_hash": item.content_hash,
            "description": item.description,
            "is_principal": bool(item.is_principal),
            "captured_at": item.captured_at.isoformat() if item.captured_at else None,
            "capture_metadata": item.capture_metadata,
            "uploaded_at": item.created_at.isoformat() if item.created_at else None,
        }
