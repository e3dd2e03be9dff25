"""
Tests for the evidence package, the chain-of-custody timeline, public
verification and the audit store.

Test Coverage:
1. Timeline ordering - timestamp then kind priority, classification
2. Full package - sections, manifest contract, recorded hashes
3. Scopes - technical, chain-of-custody, timeline-only
4. Missing artifacts and tampered evidence reported, export still succeeds
5. Public verification across every hashed artifact
6. Audit rows are insert-only and self-hashing
"""
import io
import json
import zipfile
from datetime import date, timedelta

import pytest

from conftest import EMPLOYEE_CUIL, NOW
from notice_engine.errors import ValidationFailed
from notice_engine.models.db_models import (
    ActorType, AuditEventDB, ExportScope, NoticeState, VerificationAttemptDB,
)
from notice_engine.services.audit import AuditLog
from notice_engine.services.descargo import DescargoService
from notice_engine.services.evidence import (
    KIND_PRIORITY, EvidenceService, IncidentLog, PackageBuilder, TimelineEvent, WitnessService,
    collect_timeline, sort_events,
)
from notice_engine.services.evidence.timeline import classify
from notice_engine.services.integrity import sha256_hex
from notice_engine.services.verification import PublicVerifier

READ_AT = NOW + timedelta(seconds=60)
PHOTO = b"\xff\xd8\xff\xe0 planta pilar"
SANCTION_PDF = b"%PDF-1.4 sancion suspension"


def _names(archive):
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        return set(zf.namelist())


def _read(archive, path):
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        return zf.read(path)


@pytest.fixture
def case(db, flow, delivery, blob_store, employer, employee):
    """A read notice with a signed witness, one evidence file, a descargo and a prior incident."""
    notice = flow.deliver_and_read(document=SANCTION_PDF)

    witnesses = WitnessService(db, delivery=delivery)
    witness = witnesses.add(notice, "María Gómez", national_id="30111222", now=READ_AT)
    witnesses.validate(witness.token, "30111222", now=READ_AT)
    witnesses.sign(witness.token, "Estuve presente.", present_at_incident=True, now=READ_AT)

    item = EvidenceService(db, blob_store=blob_store).ingest(
        notice, "planta.jpg", PHOTO, sha256_hex(PHOTO), mime_type="image/jpeg", now=READ_AT
    )

    descargos = DescargoService(db)
    descargos.recheck_identity(notice.descargo.token, EMPLOYEE_CUIL, now=READ_AT)
    descargos.exercise(notice.descargo.token, "No estoy de acuerdo.", sworn_statement=True, now=READ_AT)

    IncidentLog(db).add(employer.id, employee.id, "late_arrival", "Llegada tarde", date(2025, 12, 2), now=NOW)

    return {"notice": notice, "witness": witness, "evidence": item}


@pytest.fixture
def builder(db, blob_store):
    return PackageBuilder(db, blob_store=blob_store)


# =============================================================================
# TEST: TIMELINE
# =============================================================================

class TestTimeline:
    """Ordered by timestamp, ties broken by kind priority."""

    def test_ties_follow_kind_priority(self):
        events = [
            TimelineEvent(fecha=NOW, tipo="identidad", titulo="c", event_type="x", actor="employee"),
            TimelineEvent(fecha=NOW, tipo="creacion", titulo="a", event_type="x", actor="employer"),
            TimelineEvent(fecha=NOW, tipo="envio", titulo="b", event_type="x", actor="system"),
            TimelineEvent(fecha=NOW - timedelta(seconds=1), tipo="otro", titulo="z", event_type="x", actor="system"),
        ]
        assert [e.titulo for e in sort_events(events)] == ["z", "a", "b", "c"]

    def test_unknown_kind_sorts_last(self):
        known = TimelineEvent(fecha=NOW, tipo=KIND_PRIORITY[-1], titulo="k", event_type="x", actor="system")
        unknown = TimelineEvent(fecha=NOW, tipo="nuevo", titulo="u", event_type="x", actor="system")
        assert [e.titulo for e in sort_events([unknown, known])] == ["k", "u"]

    def test_classification(self):
        firm = AuditEventDB(event_type="state_transition", event_metadata={"to_state": "FIRM"})
        disputed = AuditEventDB(event_type="state_transition", event_metadata={"to_state": "DISPUTED"})
        assert classify(firm) == "firmeza"
        assert classify(disputed) == "impugnacion"
        assert classify(AuditEventDB(event_type="email_delivered")) == "entrega"
        assert classify(AuditEventDB(event_type="email_opened")) == "apertura"
        assert classify(AuditEventDB(event_type="read_confirmed")) == "confirmacion"
        assert classify(AuditEventDB(event_type="something_new")) == "otro"

    def test_notice_timeline_is_causal(self, db, flow):
        notice = flow.deliver_and_read()
        events = collect_timeline(db, notice)

        assert events[0].tipo == "creacion"
        keys = [(e.fecha, e.priority) for e in events]
        assert keys == sorted(keys)
        kinds = [e.tipo for e in events]
        assert kinds.index("envio") < kinds.index("identidad") < kinds.index("confirmacion")


# =============================================================================
# TEST: EVIDENCE PACKAGE
# =============================================================================

class TestFullPackage:
    """Court-ready archive of one notice."""

    def test_sections_present(self, builder, case):
        result = builder.build(case["notice"], now=READ_AT + timedelta(hours=1))
        names = _names(result.archive)

        witness_id = case["witness"].id
        evidence = case["evidence"]
        for path in (
            "00_CADENA_CUSTODIA.json",
            "01_sancion/sancion.json",
            "01_sancion/integridad.json",
            "01_sancion/confirmacion_lectura.json",
            "01_sancion/sancion.pdf",
            f"02_testigos/testigo_{witness_id}.json",
            "03_evidencias/evidencias.json",
            f"03_evidencias/archivos/{evidence.id}_{evidence.filename}",
            "04_descargo/descargo.json",
            "05_bitacora/novedades.json",
            "06_timeline/timeline.json",
            "06_timeline/timeline.html",
            "07_verificacion/hashes.json",
            "07_verificacion/INSTRUCCIONES.md",
            "README.md",
        ):
            assert path in names, path

    def test_manifest_contract(self, builder, case):
        notice = case["notice"]
        result = builder.build(notice, requested_for="Juzgado Laboral 3", now=READ_AT + timedelta(hours=1))
        manifest = json.loads(_read(result.archive, "00_CADENA_CUSTODIA.json"))

        assert manifest == json.loads(json.dumps(result.manifest, default=str))
        assert manifest["package"]["requested_for"] == "Juzgado Laboral 3"
        assert manifest["parties"]["employee"]["tax_id"] == EMPLOYEE_CUIL
        assert manifest["integrity"]["notice_hash"] == notice.content_hash
        assert manifest["integrity"]["notice_hash_valid"] is True
        assert manifest["integrity"]["evidence_alerts"] == []
        assert manifest["rebuttal"]["decision"] == "exercised"
        assert len(manifest["witnesses"]) == 1
        assert manifest["prior_incidents"][0]["title"] == "Llegada tarde"
        assert manifest["missing_artifacts"] == []

        tipos = [e["tipo"] for e in manifest["chain_of_custody"]["events"]]
        assert tipos[0] == "creacion"
        for kind in ("envio", "identidad", "confirmacion", "testigo", "evidencia", "descargo"):
            assert kind in tipos

    def test_every_file_hash_matches_archived_bytes(self, builder, case):
        """What an expert gets from sha256sum on each extracted file."""
        result = builder.build(case["notice"], now=READ_AT + timedelta(hours=1))
        hashes = json.loads(_read(result.archive, "07_verificacion/hashes.json"))

        for path, digest in hashes["files"].items():
            assert sha256_hex(_read(result.archive, path)) == digest, path
        assert set(hashes["files"]) == _names(result.archive) - {
            "00_CADENA_CUSTODIA.json", "07_verificacion/hashes.json",
        }
        assert hashes["files"]["01_sancion/sancion.pdf"] == sha256_hex(SANCTION_PDF)

    def test_recorded_digests_keyed_by_subject(self, builder, case):
        notice, witness, evidence = case["notice"], case["witness"], case["evidence"]
        result = builder.build(notice, now=READ_AT + timedelta(hours=1))
        recorded = json.loads(_read(result.archive, "07_verificacion/hashes.json"))["recorded_digests"]

        assert recorded["notice.content_hash"] == notice.content_hash
        assert recorded["notice.read_confirmation_hash"] == notice.read_confirmation_hash
        assert recorded[f"witness.{witness.id}.signature_hash"] == witness.signature_hash
        assert recorded[f"evidence.{evidence.id}.content_hash"] == sha256_hex(PHOTO)
        assert recorded["descargo.confirmation_hash"] == notice.descargo.confirmation_hash
        assert not any("/" in key for key in recorded)
        assert result.manifest["recorded_digests"] == recorded

    def test_several_witnesses_and_evidence_items(self, db, builder, case, delivery, blob_store):
        notice = case["notice"]
        witnesses = WitnessService(db, delivery=delivery)
        second = witnesses.add(notice, "Carlos Ruiz", national_id="28999000", now=READ_AT)
        witnesses.validate(second.token, "28999000", now=READ_AT)
        witnesses.sign(second.token, "Lo vi llegar tarde.", present_at_incident=True, now=READ_AT)
        service = EvidenceService(db, blob_store=blob_store)
        for name, data in (("turno.pdf", b"%PDF planilla"), ("audio.mp3", b"ID3 audio")):
            service.ingest(notice, name, data, sha256_hex(data), now=READ_AT)

        result = builder.build(notice, now=READ_AT + timedelta(hours=1))
        names = _names(result.archive)
        hashes = json.loads(_read(result.archive, "07_verificacion/hashes.json"))

        assert len([n for n in names if n.startswith("02_testigos/")]) == 2
        assert len([n for n in names if n.startswith("03_evidencias/archivos/")]) == 3
        assert len([k for k in hashes["files"] if k.startswith("02_testigos/")]) == 2
        assert len([k for k in hashes["files"] if k.startswith("03_evidencias/archivos/")]) == 3
        assert len([k for k in hashes["recorded_digests"] if k.startswith("witness.")]) == 2
        assert len([k for k in hashes["recorded_digests"] if k.startswith("evidence.")]) == 3
        assert len(result.manifest["witnesses"]) == 2
        assert len(result.manifest["evidence"]) == 3

    def test_package_hash_recorded_and_verifiable(self, db, builder, case):
        result = builder.build(case["notice"], now=READ_AT + timedelta(hours=1))

        assert result.package_hash == sha256_hex(result.archive)
        assert result.record.package_hash == result.package_hash
        assert result.filename.endswith(".zip")

        found = PublicVerifier(db).verify(result.package_hash, now=READ_AT)
        assert [m["kind"] for m in found["matches"]] == ["export_package"]

    def test_export_does_not_mutate_notice(self, builder, case):
        notice = case["notice"]
        before = (notice.state, notice.content_hash, notice.read_confirmation_hash)
        builder.build(notice, now=READ_AT + timedelta(hours=1))
        assert (notice.state, notice.content_hash, notice.read_confirmation_hash) == before
        assert notice.state == NoticeState.READ


class TestScopes:
    """Each scope writes a subset of the sections."""

    def test_technical_omits_people(self, builder, case):
        names = _names(builder.build(case["notice"], scope=ExportScope.TECHNICAL, now=READ_AT).archive)
        assert "03_evidencias/evidencias.json" in names
        assert not any(n.startswith("02_testigos/") for n in names)
        assert not any(n.startswith("04_descargo/") for n in names)
        assert not any(n.startswith("05_bitacora/") for n in names)

    def test_chain_of_custody(self, builder, case):
        names = _names(builder.build(case["notice"], scope=ExportScope.CHAIN_OF_CUSTODY, now=READ_AT).archive)
        assert names == {
            "00_CADENA_CUSTODIA.json",
            "06_timeline/timeline.json",
            "06_timeline/timeline.html",
            "07_verificacion/hashes.json",
            "07_verificacion/INSTRUCCIONES.md",
            "README.md",
        }

    def test_timeline_only(self, builder, case):
        result = builder.build(case["notice"], scope=ExportScope.TIMELINE_ONLY, now=READ_AT)
        assert _names(result.archive) == {
            "00_CADENA_CUSTODIA.json",
            "06_timeline/timeline.json",
            "06_timeline/timeline.html",
            "README.md",
        }
        assert result.manifest["package"]["scope"] == "timeline-only"


class TestPartialExport:
    """Unavailable artifacts are listed, not fatal."""

    def test_missing_blob_listed(self, builder, case, blob_store):
        evidence = case["evidence"]
        del blob_store.objects[evidence.storage_key]

        result = builder.build(case["notice"], now=READ_AT)
        path = f"03_evidencias/archivos/{evidence.id}_{evidence.filename}"

        assert result.manifest["missing_artifacts"] == [{"path": path, "reason": "not found in storage"}]
        assert path not in _names(result.archive)
        assert path in _read(result.archive, "README.md").decode("utf-8")
        assert result.record.missing_artifacts == result.manifest["missing_artifacts"]

    def test_tampered_evidence_alerted(self, builder, case, blob_store):
        evidence = case["evidence"]
        blob_store.objects[evidence.storage_key] = PHOTO + b"retocada"

        result = builder.build(case["notice"], now=READ_AT)
        alerts = result.manifest["integrity"]["evidence_alerts"]
        assert [a["evidence_id"] for a in alerts] == [evidence.id]

    def test_export_audited(self, db, builder, case):
        result = builder.build(case["notice"], now=READ_AT)
        assert AuditLog(db).has_event(case["notice"].id, "export_generated")
        assert result.record.storage_key is not None


# =============================================================================
# TEST: PUBLIC VERIFICATION
# =============================================================================

class TestPublicVerifier:
    """Anonymous digest lookup."""

    def test_match_kinds(self, db, case):
        notice = case["notice"]
        verifier = PublicVerifier(db)

        def kinds(digest):
            return [m["kind"] for m in verifier.verify(digest, now=READ_AT)["matches"]]

        assert kinds(notice.content_hash) == ["notice"]
        assert kinds(notice.read_confirmation_hash) == ["read_confirmation"]
        assert kinds(case["witness"].signature_hash) == ["witness_declaration"]
        assert kinds(case["evidence"].content_hash) == ["evidence"]
        assert kinds(notice.descargo.confirmation_hash) == ["descargo"]
        assert kinds(notice.employee.domicile_agreement.signature_hash) == ["domicile_agreement"]

    def test_notice_match_carries_integrity_tokens(self, db, case):
        match = PublicVerifier(db).verify(case["notice"].content_hash, now=READ_AT)["matches"][0]
        assert match["state"] == "READ"
        assert match["timestamp_authority"]["status"] == case["notice"].tsa_status.value

    def test_uppercase_digest_normalized(self, db, case):
        result = PublicVerifier(db).verify(case["notice"].content_hash.upper(), now=READ_AT)
        assert result["found"] is True

    def test_unknown_digest_logged(self, db):
        result = PublicVerifier(db).verify("0" * 64, ip_address="200.1.1.1", now=NOW)
        assert result == {"digest": "0" * 64, "found": False, "matches": [], "verified_at": NOW.isoformat()}

        attempt = db.query(VerificationAttemptDB).one()
        assert attempt.found is False
        assert attempt.ip_address == "200.1.1.1"

    def test_malformed_digest(self, db):
        with pytest.raises(ValidationFailed):
            PublicVerifier(db).verify("not-a-digest")

    def test_verify_file(self, db, case):
        result = PublicVerifier(db).verify_file(PHOTO, now=READ_AT)
        assert [m["kind"] for m in result["matches"]] == ["evidence"]


# =============================================================================
# TEST: AUDIT STORE
# =============================================================================

class TestAuditStore:
    """Insert-only rows with their own digest."""

    def test_row_hash_verifies(self, db, flow):
        notice = flow.create()
        events = AuditLog(db).events_for_notice(notice.id)
        assert events
        assert all(AuditLog.verify_row(e) for e in events)

    def test_altered_row_detected(self, db):
        event = AuditLog(db).record("custom_event", "original", actor=ActorType.SYSTEM, occurred_at=NOW)
        assert AuditLog.verify_row(event) is True
        event.description = "rewritten"
        assert AuditLog.verify_row(event) is False

    def test_update_rejected(self, db):
        event = AuditLog(db).record("custom_event", "original", occurred_at=NOW)
        db.commit()

        event.description = "rewritten"
        with pytest.raises(ValueError):
            db.commit()
        db.rollback()

    def test_delete_rejected(self, db):
        event = AuditLog(db).record("custom_event", "original", occurred_at=NOW)
        db.commit()

        db.delete(event)
        with pytest.raises(ValueError):
            db.commit()
        db.rollback()
