"""
Tests for evidence files, the incident log and the electronic domicile.

Test Coverage:
1. Evidence ingestion - declared hash re-verified, mismatch audited and
   refused, single principal item, capture metadata variants
2. Stored evidence re-verification
3. Incident log - employer scoping, archive, export ordering
4. Electronic domicile - digital signature with identifier and SMS code,
   lockout, link expiry, paper signature
"""
from datetime import date, timedelta

import pytest

from conftest import EMPLOYEE_CUIL, NOW
from notice_engine.errors import (
    IdentityMismatch, IntegrityMismatch, LinkExpired, LockedOut, NotFound, StateConflict,
    StepOutOfOrder, ValidationFailed,
)
from notice_engine.models.db_models import AuditEventDB, DomicileState, EvidenceKind
from notice_engine.services.evidence import EvidenceService, IncidentLog, infer_kind
from notice_engine.services.integrity import sha256_hex
from notice_engine.services.notices import DomicileService

PHOTO = b"\xff\xd8\xff\xe0 fake jpeg bytes"


@pytest.fixture
def evidence(db, blob_store):
    return EvidenceService(db, blob_store=blob_store)


@pytest.fixture
def domicile(db, delivery, blob_store):
    return DomicileService(db, sms_provider=delivery, blob_store=blob_store)


# =============================================================================
# TEST: EVIDENCE
# =============================================================================

class TestEvidenceIngestion:
    """Hash computed before upload must match the received bytes."""

    def test_ingest_stores_and_hashes(self, evidence, flow, blob_store):
        notice = flow.create()
        item = evidence.ingest(notice, "foto planta.jpg", PHOTO, sha256_hex(PHOTO), mime_type="image/jpeg", now=NOW)

        assert item.content_hash == sha256_hex(PHOTO)
        assert item.kind == EvidenceKind.PHOTO
        assert item.filename == "foto_planta.jpg"
        assert item.size_bytes == len(PHOTO)
        assert blob_store.get(item.storage_key) == PHOTO

    def test_hash_mismatch_refused_and_audited(self, evidence, flow, db):
        notice = flow.create()
        with pytest.raises(IntegrityMismatch):
            evidence.ingest(notice, "foto.jpg", PHOTO, sha256_hex(PHOTO + b"x"), now=NOW)

        assert evidence.for_notice(notice.id) == []
        mismatches = db.query(AuditEventDB).filter(
            AuditEventDB.notice_id == notice.id,
            AuditEventDB.event_type == "evidence_integrity_mismatch",
        ).count()
        assert mismatches == 1

    def test_declared_hash_required(self, evidence, flow):
        with pytest.raises(ValidationFailed):
            evidence.ingest(flow.create(), "foto.jpg", PHOTO, "abc", now=NOW)

    def test_empty_file_refused(self, evidence, flow):
        with pytest.raises(ValidationFailed):
            evidence.ingest(flow.create(), "foto.jpg", b"", sha256_hex(b""), now=NOW)

    def test_new_principal_demotes_previous(self, evidence, flow, db):
        notice = flow.create()
        first = evidence.ingest(notice, "a.jpg", PHOTO, sha256_hex(PHOTO), is_principal=True, now=NOW)
        video = b"fake mp4"
        second = evidence.ingest(notice, "b.mp4", video, sha256_hex(video), is_principal=True, now=NOW)

        db.refresh(first)
        assert first.is_principal is False
        assert second.is_principal is True
        assert second.kind == EvidenceKind.VIDEO

    def test_exif_metadata_sets_capture_time(self, evidence, flow):
        item = evidence.ingest(
            flow.create(), "a.jpg", PHOTO, sha256_hex(PHOTO),
            capture_metadata={"kind": "exif", "captured_at": "2026-01-10T08:05:00", "device": "Pixel 7"},
            now=NOW,
        )
        assert item.captured_at.isoformat() == "2026-01-10T08:05:00"
        assert item.capture_metadata["device"] == "Pixel 7"

    def test_untagged_metadata_kept_verbatim(self, evidence, flow):
        item = evidence.ingest(
            flow.create(), "a.jpg", PHOTO, sha256_hex(PHOTO), capture_metadata={"camera": "x"}, now=NOW
        )
        assert item.capture_metadata == {"kind": "other", "raw": {"camera": "x"}}
        assert item.captured_at is None

    def test_infer_kind(self):
        assert infer_kind("x.mp3", None) == EvidenceKind.AUDIO
        assert infer_kind("x.pdf", None) == EvidenceKind.DOCUMENT
        assert infer_kind("x.bin", "image/png") == EvidenceKind.PHOTO


class TestEvidenceReverification:
    """Stored bytes compared with the recorded hash."""

    def test_verify_item(self, evidence, flow):
        item = evidence.ingest(flow.create(), "a.jpg", PHOTO, sha256_hex(PHOTO), now=NOW)
        assert evidence.verify_item(item, now=NOW)["valid"] is True

    def test_tampered_storage_detected(self, evidence, flow, blob_store):
        item = evidence.ingest(flow.create(), "a.jpg", PHOTO, sha256_hex(PHOTO), now=NOW)
        blob_store.objects[item.storage_key] = PHOTO + b"edit"

        with pytest.raises(IntegrityMismatch):
            evidence.verify_item(item, now=NOW)


# =============================================================================
# TEST: INCIDENT LOG
# =============================================================================

class TestIncidentLog:
    """Prior incidents per employee."""

    def test_add_and_list_most_recent_first(self, db, employer, employee):
        log = IncidentLog(db)
        log.add(employer.id, employee.id, "late_arrival", "Llegada tarde", date(2025, 11, 3), now=NOW)
        log.add(employer.id, employee.id, "absence", "Ausencia", date(2025, 12, 1), now=NOW)

        entries = log.recent_for_employee(employee.id)
        assert [e.title for e in entries] == ["Ausencia", "Llegada tarde"]
        assert all(len(e.content_hash) == 64 for e in entries)

    def test_other_employer_cannot_log_or_archive(self, db, employer, employee):
        log = IncidentLog(db)
        with pytest.raises(NotFound):
            log.add("someone-else", employee.id, "absence", "Ausencia", date(2025, 12, 1))

        entry = log.add(employer.id, employee.id, "absence", "Ausencia", date(2025, 12, 1))
        with pytest.raises(NotFound):
            log.archive(entry.id, "someone-else")

    def test_archived_entries_excluded(self, db, employer, employee):
        log = IncidentLog(db)
        entry = log.add(employer.id, employee.id, "absence", "Ausencia", date(2025, 12, 1))
        log.archive(entry.id, employer.id)
        assert log.recent_for_employee(employee.id) == []


# =============================================================================
# TEST: ELECTRONIC DOMICILE
# =============================================================================

class TestDomicile:
    """Agreement signed before any electronic delivery."""

    def test_create_issues_link(self, domicile, unsigned_employee):
        agreement = domicile.create(unsigned_employee, now=NOW)

        assert agreement.state == DomicileState.PENDING
        assert agreement.token_expires_at == NOW + timedelta(days=7)
        assert domicile.link(agreement).endswith(f"/convenio/{agreement.token}")
        assert domicile.is_signed(unsigned_employee) is False
        # Re-issuing while the link is live returns the same agreement
        assert domicile.create(unsigned_employee, now=NOW).token == agreement.token

    def test_digital_signature(self, domicile, unsigned_employee, delivery):
        agreement = domicile.create(unsigned_employee, now=NOW)

        sent = domicile.request_code(agreement.token, EMPLOYEE_CUIL, now=NOW)
        assert sent["sent"] is True

        signed = domicile.sign_digital(
            agreement.token, delivery.last_code(), email="juan@personal.test",
            ip_address="190.1.1.1", user_agent="Mozilla/5.0", now=NOW + timedelta(minutes=2),
        )
        assert signed.state == DomicileState.SIGNED_DIGITAL
        assert signed.constituted_email == "juan@personal.test"
        assert signed.constituted_phone == unsigned_employee.phone
        assert len(signed.signature_hash) == 64
        assert domicile.is_signed(unsigned_employee) is True

        with pytest.raises(StateConflict):
            domicile.create(unsigned_employee, now=NOW)

    def test_sign_requires_identifier_first(self, domicile, unsigned_employee):
        agreement = domicile.create(unsigned_employee, now=NOW)
        with pytest.raises(StepOutOfOrder):
            domicile.sign_digital(agreement.token, "123456", now=NOW)

    def test_wrong_code(self, domicile, unsigned_employee, delivery):
        agreement = domicile.create(unsigned_employee, now=NOW)
        domicile.request_code(agreement.token, EMPLOYEE_CUIL, now=NOW)
        wrong = "000000" if delivery.last_code() != "000000" else "111111"

        with pytest.raises(IdentityMismatch):
            domicile.sign_digital(agreement.token, wrong, now=NOW)
        assert agreement.state == DomicileState.PENDING

    def test_identifier_failures_lock(self, domicile, unsigned_employee):
        agreement = domicile.create(unsigned_employee, now=NOW)
        for _ in range(4):
            with pytest.raises(IdentityMismatch):
                domicile.request_code(agreement.token, "20-00000000-0", now=NOW)
        with pytest.raises(LockedOut):
            domicile.request_code(agreement.token, "20-00000000-0", now=NOW)
        with pytest.raises(LockedOut):
            domicile.request_code(agreement.token, EMPLOYEE_CUIL, now=NOW)

    def test_link_expires(self, domicile, unsigned_employee):
        agreement = domicile.create(unsigned_employee, now=NOW)
        old_token = agreement.token
        with pytest.raises(LinkExpired):
            domicile.view(old_token, now=NOW + timedelta(days=8))
        assert agreement.state == DomicileState.EXPIRED

        reissued = domicile.create(unsigned_employee, now=NOW + timedelta(days=9))
        assert reissued.state == DomicileState.PENDING
        assert reissued.token != old_token
        assert reissued.token_expires_at == NOW + timedelta(days=16)

    def test_expiry_job(self, domicile, unsigned_employee):
        domicile.create(unsigned_employee, now=NOW)
        assert domicile.expire_lapsed(now=NOW + timedelta(days=8))["expired"] == 1

    def test_paper_signature(self, domicile, unsigned_employee, blob_store, employer):
        scan = b"%PDF-1.4 firmado"
        agreement = domicile.record_paper_signature(unsigned_employee, scan, employer_id=employer.id, now=NOW)

        assert agreement.state == DomicileState.SIGNED_PAPER
        assert agreement.signature_hash == sha256_hex(scan)
        assert blob_store.get(agreement.paper_scan_key) == scan

        with pytest.raises(StateConflict):
            domicile.record_paper_signature(unsigned_employee, scan, now=NOW)
