"""
Tests for content hashing and dual timestamping.

Test Coverage:
1. Canonical hashing - key order independence, avalanche, provenance envelope
2. Time authority - granted token, ordered fallback, rejection, all down
3. Notary anchor - pending submit, confirmation upgrade, reverifier job
4. Notice stamping - degraded UNSTAMPED never blocks creation
5. Tamper detection on stored notice content
"""
from datetime import datetime, timedelta

import pytest

from conftest import NOW, FakeNotaryServer, FakeTimeAuthorityServer
from notice_engine.errors import ExternalProviderUnavailable, IntegrityMismatch
from notice_engine.models.db_models import AnchorStatus, AuditEventDB, StampStatus
from notice_engine.services.integrity.stamping import NotaryReverifier
from notice_engine.services.integrity import (
    assert_bytes_match, canonicalize, compute_digest,
    hash_payload, is_valid_digest, sha256_hex, verify_digest,
)


# =============================================================================
# TEST: HASHING
# =============================================================================

class TestHashing:
    """Canonical SHA-256 over content plus provenance."""

    CONTENT = {"reason": "Inasistencia", "facts": "No se presento", "days": 3}
    GENERATED_AT = datetime(2026, 1, 12, 9, 0, 0)

    def test_canonical_form_ignores_key_order(self):
        a = {"b": 1, "a": [1, 2], "c": {"y": 1, "x": 2}}
        b = {"c": {"x": 2, "y": 1}, "a": [1, 2], "b": 1}
        assert canonicalize(a) == canonicalize(b)
        assert hash_payload(a) == hash_payload(b)

    def test_canonical_form_is_compact_utf8(self):
        assert canonicalize({"a": "días", "b": 1}) == '{"a":"días","b":1}'.encode("utf-8")

    def test_digest_is_64_lowercase_hex(self):
        digest = compute_digest(self.CONTENT, "10.0.0.1", self.GENERATED_AT)
        assert is_valid_digest(digest)
        assert digest == digest.lower()

    def test_round_trip_verifies(self):
        digest = compute_digest(self.CONTENT, "10.0.0.1", self.GENERATED_AT)
        assert verify_digest(dict(self.CONTENT), "10.0.0.1", self.GENERATED_AT, digest) is True

    def test_single_character_change_changes_digest(self):
        """One character in the content flips the digest completely."""
        digest = compute_digest(self.CONTENT, "10.0.0.1", self.GENERATED_AT)
        altered = {**self.CONTENT, "facts": "No se presentó"}
        other = compute_digest(altered, "10.0.0.1", self.GENERATED_AT)

        assert other != digest
        assert verify_digest(altered, "10.0.0.1", self.GENERATED_AT, digest) is False
        differing = sum(1 for x, y in zip(digest, other) if x != y)
        assert differing > 32

    def test_envelope_binds_origin_and_time(self):
        """Same text from another origin or another moment is a different digest."""
        base = compute_digest(self.CONTENT, "10.0.0.1", self.GENERATED_AT)
        assert compute_digest(self.CONTENT, "10.0.0.2", self.GENERATED_AT) != base
        assert compute_digest(self.CONTENT, "10.0.0.1", self.GENERATED_AT + timedelta(seconds=1)) != base

    def test_verify_rejects_empty_digest(self):
        assert verify_digest(self.CONTENT, None, self.GENERATED_AT, "") is False

    def test_assert_bytes_match(self):
        data = b"%PDF-1.4 evidence"
        assert assert_bytes_match("doc", data, sha256_hex(data).upper()) == sha256_hex(data)
        with pytest.raises(IntegrityMismatch):
            assert_bytes_match("doc", data + b" ", sha256_hex(data))


# =============================================================================
# TEST: TIME AUTHORITY
# =============================================================================

class TestTimeAuthority:
    """RFC 3161 client with ordered fallback."""

    DIGEST = "a" * 64

    def test_primary_grants_token(self):
        server = FakeTimeAuthorityServer()
        token = server.client().request_token(self.DIGEST, now=NOW)

        assert token.authority == FakeTimeAuthorityServer.PRIMARY
        assert token.stamped_at == NOW
        assert token.token.startswith(b"\x30")
        assert server.requests == [FakeTimeAuthorityServer.PRIMARY]

    def test_falls_back_when_primary_down(self):
        server = FakeTimeAuthorityServer()
        server.down.add(FakeTimeAuthorityServer.PRIMARY)

        token = server.client().request_token(self.DIGEST, now=NOW)

        assert token.authority == FakeTimeAuthorityServer.BACKUP
        assert server.requests == [FakeTimeAuthorityServer.PRIMARY, FakeTimeAuthorityServer.BACKUP]

    def test_falls_back_when_primary_rejects(self):
        server = FakeTimeAuthorityServer()
        server.rejecting.add(FakeTimeAuthorityServer.PRIMARY)

        token = server.client().request_token(self.DIGEST, now=NOW)
        assert token.authority == FakeTimeAuthorityServer.BACKUP

    def test_all_authorities_down_raises_with_failures(self):
        server = FakeTimeAuthorityServer()
        server.down.update({FakeTimeAuthorityServer.PRIMARY, FakeTimeAuthorityServer.BACKUP})

        with pytest.raises(ExternalProviderUnavailable) as exc:
            server.client().request_token(self.DIGEST, now=NOW)

        failures = exc.value.details["failures"]
        assert set(failures) == {FakeTimeAuthorityServer.PRIMARY, FakeTimeAuthorityServer.BACKUP}


# =============================================================================
# TEST: NOTARY
# =============================================================================

class TestNotary:
    """OpenTimestamps calendar submission and upgrade."""

    DIGEST = "b" * 64

    def test_submit_returns_pending_receipt(self):
        receipt = FakeNotaryServer().client().submit(self.DIGEST, now=NOW)

        assert receipt.calendar == FakeNotaryServer.CALENDAR
        assert receipt.receipt
        assert receipt.submitted_at == NOW

    def test_check_pending_then_confirmed(self):
        server = FakeNotaryServer()
        client = server.client()

        assert client.check(self.DIGEST, FakeNotaryServer.CALENDAR).confirmed is False

        server.confirmed.add(self.DIGEST)
        check = client.check(self.DIGEST, FakeNotaryServer.CALENDAR)
        assert check.confirmed is True
        assert check.block_height == 100

    def test_submit_rejects_malformed_digest(self):
        with pytest.raises(ValueError):
            FakeNotaryServer().client().submit("not-a-digest")

    def test_all_calendars_down_raises(self):
        server = FakeNotaryServer()
        server.down = True
        with pytest.raises(ExternalProviderUnavailable):
            server.client().submit(self.DIGEST)


# =============================================================================
# TEST: NOTICE STAMPING
# =============================================================================

class TestNoticeStamping:
    """Stamping outcomes recorded on the notice and in the audit store."""

    def test_created_notice_is_stamped_and_pending_anchor(self, flow):
        notice = flow.create()

        assert notice.tsa_status == StampStatus.STAMPED
        assert notice.tsa_authority == FakeTimeAuthorityServer.PRIMARY
        assert notice.tsa_token
        assert notice.anchor_status == AnchorStatus.PENDING

    def test_all_time_authorities_down_leaves_notice_unstamped(self, flow, tsa_server, db):
        """Degraded mode: the notice is still created, hashed and audited."""
        tsa_server.down.update({FakeTimeAuthorityServer.PRIMARY, FakeTimeAuthorityServer.BACKUP})

        notice = flow.create()

        assert notice.content_hash
        assert notice.tsa_status == StampStatus.UNSTAMPED
        assert notice.tsa_token is None
        events = [e.event_type for e in db.query(AuditEventDB).filter(AuditEventDB.notice_id == notice.id)]
        assert "timestamp_authority_unavailable" in events

    def test_notary_down_marks_anchor_failed(self, flow, notary_server):
        notary_server.down = True
        notice = flow.create()
        assert notice.anchor_status == AnchorStatus.FAILED

    def test_check_anchor_resubmits_failed(self, flow, notary_server, integrity, db):
        notary_server.down = True
        notice = flow.create()
        notary_server.down = False

        assert integrity.check_anchor(notice, now=NOW) == AnchorStatus.PENDING
        db.commit()
        assert notice.anchor_checks == 0

    def test_reverifier_confirms_pending_anchors(self, flow, notary_server, integrity, db):
        notice = flow.create()
        reverifier = NotaryReverifier(db, integrity)

        # Too recent to check
        assert reverifier.run_pending_reverification(now=NOW)["checked"] == 0

        later = NOW + timedelta(hours=2)
        result = reverifier.run_pending_reverification(now=later)
        assert result["checked"] == 1
        assert result["pending"] == 1
        assert notice.anchor_checks == 1

        notary_server.confirmed.add(notice.content_hash)
        result = reverifier.run_pending_reverification(now=later + timedelta(hours=1))
        assert result["confirmed"] == 1
        db.refresh(notice)
        assert notice.anchor_status == AnchorStatus.CONFIRMED
        assert notice.anchor_block_height == 100

    def test_reverifier_collects_calendar_errors(self, flow, notary_server, integrity, db):
        flow.create()
        notary_server.down = True

        result = NotaryReverifier(db, integrity).run_pending_reverification(now=NOW + timedelta(hours=2))
        assert result["errors"] == 1
        assert result["confirmed"] == 0


# =============================================================================
# TEST: TAMPER DETECTION
# =============================================================================

class TestTamperDetection:
    """Stored content altered after hashing is refused."""

    def test_altered_notice_fails_verification(self, flow, integrity, db):
        notice = flow.create()
        assert integrity.verify_notice(notice) is True

        notice.facts = notice.facts + " (editado)"
        assert integrity.verify_notice(notice) is False

        with pytest.raises(IntegrityMismatch):
            integrity.assert_notice_integrity(notice)

    def test_send_refuses_altered_notice(self, flow, notice_service):
        notice = flow.create()
        notice.reason = "Otro motivo"

        with pytest.raises(IntegrityMismatch):
            flow.send(notice)
