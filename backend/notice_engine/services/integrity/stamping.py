"""
Integrity & Timestamping Service

Dual stamp for every digest:
- Immediate RFC 3161 token from the first reachable time authority
- Deferred OpenTimestamps anchor, stored as PENDING and upgraded later

Provider failures never block the caller. When every authority fails the
notice is kept as "hash recorded, unstamped" and that degraded state is
carried into the evidence package.
"""
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ...config import OTS_BATCH_SIZE, OTS_MAX_CHECKS, OTS_REVERIFY_MIN_AGE_HOURS
from ...errors import ExternalProviderUnavailable, IntegrityMismatch
from ...models.db_models import ActorType, AnchorStatus, NoticeDB, StampStatus
from ...models.metadata import NotaryPayload, TimeAuthorityPayload
from ..audit.audit_log import AuditLog
from .hashing import compute_notice_digest, verify_digest, verify_notice_digest
from .notary import NotaryClient, NotaryReceipt
from .timestamp_authority import TimeAuthorityClient, TimestampToken

logger = logging.getLogger(__name__)


@dataclass
class StampResult:
    """Outcome of stamp(digest)."""
    digest: str
    authority_token: Optional[TimestampToken] = None
    notary_receipt: Optional[NotaryReceipt] = None
    authority_failures: Dict[str, str] = field(default_factory=dict)
    notary_error: Optional[str] = None

    @property
    def stamped(self) -> bool:
        return self.authority_token is not None

    @property
    def anchored(self) -> bool:
        return self.notary_receipt is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "digest": self.digest,
            "timestamp_authority": {
                "status": StampStatus.STAMPED.value if self.stamped else StampStatus.UNSTAMPED.value,
                "authority": self.authority_token.authority if self.authority_token else None,
                "stamped_at": self.authority_token.stamped_at.isoformat() if self.authority_token else None,
                "failures": self.authority_failures,
            },
            "notary": {
                "status": AnchorStatus.PENDING.value if self.anchored else AnchorStatus.FAILED.value,
                "calendar": self.notary_receipt.calendar if self.notary_receipt else None,
                "error": self.notary_error,
            },
        }


class IntegrityService:
    """
    Hashing, stamping and verification for notices.

    Provider clients are injected so tests run with fakes; either may be
    None, which behaves like an unreachable provider.
    """

    def __init__(
        self,
        db_session: Session,
        time_authority: Optional[TimeAuthorityClient] = None,
        notary: Optional[NotaryClient] = None,
    ):
        self.db = db_session
        self.time_authority = time_authority
        self.notary = notary
        self.audit = AuditLog(db_session)

    # =========================================================================
    # HASH / VERIFY
    # =========================================================================

    def hash_notice(self, notice: NoticeDB) -> str:
        return compute_notice_digest(notice)

    def verify(self, content: Dict[str, Any], origin_ip: Optional[str], generated_at: datetime, digest: str) -> bool:
        return verify_digest(content, origin_ip, generated_at, digest)

    def verify_notice(self, notice: NoticeDB) -> bool:
        return verify_notice_digest(notice)

    def assert_notice_integrity(self, notice: NoticeDB) -> None:
        """Raise IntegrityMismatch (and audit it) if the stored content was altered."""
        if verify_notice_digest(notice):
            return
        actual = compute_notice_digest(notice)
        logger.error(f"Integrity mismatch on notice {notice.id}: stored={notice.content_hash} actual={actual}")
        self.audit.record(
            event_type="integrity_mismatch",
            description="Recomputed notice hash differs from the recorded hash",
            notice_id=notice.id,
            content_hash=actual,
            metadata={"expected": notice.content_hash, "actual": actual},
        )
        self.db.commit()
        raise IntegrityMismatch(f"notice {notice.id}", notice.content_hash, actual)

    # =========================================================================
    # STAMP
    # =========================================================================

    def stamp(self, digest: str, now: Optional[datetime] = None) -> StampResult:
        """Request both attestations. Never raises for provider failures."""
        result = StampResult(digest=digest)

        if self.time_authority is None:
            result.authority_failures["configured"] = "no time authority client"
        else:
            try:
                result.authority_token = self.time_authority.request_token(digest, now=now)
            except ExternalProviderUnavailable as e:
                result.authority_failures = (e.details or {}).get("failures", {})
                logger.warning(f"Digest {digest[:12]}... left unstamped: {e.message}")

        if self.notary is None:
            result.notary_error = "no notary client"
        else:
            try:
                result.notary_receipt = self.notary.submit(digest, now=now)
            except ExternalProviderUnavailable as e:
                result.notary_error = e.message
                logger.warning(f"Notary anchor failed for {digest[:12]}...: {e.message}")

        return result

    def stamp_notice(self, notice: NoticeDB, now: Optional[datetime] = None) -> StampResult:
        """Stamp a notice's content hash and record both outcomes. Caller commits."""
        now = now or datetime.utcnow()
        result = self.stamp(notice.content_hash, now=now)

        if result.stamped:
            notice.tsa_status = StampStatus.STAMPED
            notice.tsa_authority = result.authority_token.authority
            notice.tsa_token = result.authority_token.token_b64
            notice.tsa_stamped_at = result.authority_token.stamped_at
            self.audit.record(
                event_type="timestamp_authority_stamped",
                description=f"Time authority {notice.tsa_authority} stamped the notice hash",
                notice_id=notice.id,
                content_hash=notice.content_hash,
                metadata=TimeAuthorityPayload(
                    authority=notice.tsa_authority,
                    stamped=True,
                    failures=result.authority_failures,
                ).model_dump(),
                occurred_at=now,
            )
        else:
            notice.tsa_status = StampStatus.UNSTAMPED
            self.audit.record(
                event_type="timestamp_authority_unavailable",
                description="Hash recorded, unstamped: no time authority answered",
                notice_id=notice.id,
                content_hash=notice.content_hash,
                metadata=TimeAuthorityPayload(stamped=False, failures=result.authority_failures).model_dump(),
                occurred_at=now,
            )

        if result.anchored:
            notice.anchor_status = AnchorStatus.PENDING
            notice.anchor_calendar = result.notary_receipt.calendar
            notice.anchor_receipt = result.notary_receipt.receipt_b64
            notice.anchor_submitted_at = result.notary_receipt.submitted_at
            self.audit.record(
                event_type="notary_anchor_pending",
                description=f"Hash submitted to {notice.anchor_calendar}, awaiting blockchain confirmation",
                notice_id=notice.id,
                content_hash=notice.content_hash,
                metadata=NotaryPayload(calendar=notice.anchor_calendar, status=AnchorStatus.PENDING.value).model_dump(),
                occurred_at=now,
            )
        else:
            notice.anchor_status = AnchorStatus.FAILED
            self.audit.record(
                event_type="notary_anchor_failed",
                description="Blockchain anchor could not be requested; retry on demand",
                notice_id=notice.id,
                content_hash=notice.content_hash,
                metadata=NotaryPayload(status=AnchorStatus.FAILED.value).model_dump(),
                occurred_at=now,
            )

        return result

    # =========================================================================
    # ANCHOR UPGRADE
    # =========================================================================

    def check_anchor(self, notice: NoticeDB, now: Optional[datetime] = None) -> AnchorStatus:
        """
        Re-verify one notice's anchor.

        FAILED anchors are resubmitted; PENDING anchors are asked for
        their Bitcoin attestation. Caller commits.
        """
        now = now or datetime.utcnow()

        if notice.anchor_status == AnchorStatus.CONFIRMED:
            return notice.anchor_status
        if self.notary is None:
            raise ExternalProviderUnavailable("notary", "No notary client configured")

        if notice.anchor_status in (AnchorStatus.NONE, AnchorStatus.FAILED):
            receipt = self.notary.submit(notice.content_hash, now=now)
            notice.anchor_status = AnchorStatus.PENDING
            notice.anchor_calendar = receipt.calendar
            notice.anchor_receipt = receipt.receipt_b64
            notice.anchor_submitted_at = receipt.submitted_at
            notice.anchor_checks = 0
            self.audit.record(
                event_type="notary_anchor_pending",
                description=f"Hash resubmitted to {receipt.calendar}",
                notice_id=notice.id,
                content_hash=notice.content_hash,
                metadata=NotaryPayload(calendar=receipt.calendar, status=AnchorStatus.PENDING.value).model_dump(),
                occurred_at=now,
            )
            return notice.anchor_status

        check = self.notary.check(notice.content_hash, notice.anchor_calendar)
        notice.anchor_checks = (notice.anchor_checks or 0) + 1
        notice.anchor_last_checked_at = now

        if check.confirmed:
            notice.anchor_status = AnchorStatus.CONFIRMED
            notice.anchor_confirmed_at = now
            notice.anchor_block_height = check.block_height
            if check.upgraded_receipt:
                notice.anchor_receipt = base64.b64encode(check.upgraded_receipt).decode("ascii")
            self.audit.record(
                event_type="notary_anchor_confirmed",
                description=f"Blockchain anchor confirmed at block {check.block_height}",
                notice_id=notice.id,
                content_hash=notice.content_hash,
                metadata=NotaryPayload(
                    calendar=notice.anchor_calendar,
                    status=AnchorStatus.CONFIRMED.value,
                    block_height=check.block_height,
                    checks=notice.anchor_checks,
                ).model_dump(),
                occurred_at=now,
            )
        return notice.anchor_status


# =============================================================================
# SCHEDULER
# =============================================================================

class NotaryReverifier:
    """
    Periodic upgrade of pending blockchain anchors.

    AUTHORITY: SYSTEM - Runs automatically via scheduler endpoint.
    """

    def __init__(self, db_session: Session, integrity: IntegrityService):
        self.db = db_session
        self.integrity = integrity

    def run_pending_reverification(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Re-check anchors that are PENDING, older than the minimum age and
        below the check limit. Per-item errors are collected.
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(hours=OTS_REVERIFY_MIN_AGE_HOURS)

        candidates = (
            self.db.query(NoticeDB)
            .filter(
                NoticeDB.anchor_status == AnchorStatus.PENDING,
                NoticeDB.anchor_submitted_at <= cutoff,
                NoticeDB.anchor_checks < OTS_MAX_CHECKS,
            )
            .order_by(NoticeDB.anchor_submitted_at)
            .limit(OTS_BATCH_SIZE)
            .all()
        )

        confirmed = []
        still_pending = []
        errors = []

        for notice in candidates:
            try:
                status = self.integrity.check_anchor(notice, now=now)
                if status == AnchorStatus.CONFIRMED:
                    confirmed.append({"notice_id": notice.id, "block_height": notice.anchor_block_height})
                else:
                    still_pending.append(notice.id)
            except ExternalProviderUnavailable as e:
                logger.error(f"Anchor check failed for notice {notice.id}: {e.message}")
                errors.append({"notice_id": notice.id, "error": e.message})

        self.db.commit()

        return {
            "run_date": now.isoformat(),
            "checked": len(candidates),
            "confirmed": len(confirmed),
            "pending": len(still_pending),
            "errors": len(errors),
            "details": {
                "confirmed": confirmed,
                "pending": still_pending,
                "errors": errors,
            },
        }
