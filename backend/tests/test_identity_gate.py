"""
Tests for the identity gate.

Test Coverage:
1. Step ordering - content and code steps refused before the identifier
2. Identifier lockout - 5th failure locks, 6th attempt still locked
3. One-time code - expiry at 10 minutes, invalidation on resend, cooldown,
   3 wrong attempts exhaust the code
4. Biometric - approve / review band / reject, skip when optional
5. Employer lock reset and gate expiry
6. Identifier normalization (CUIL digits, employee number)
"""
import hashlib
from datetime import timedelta

import pytest

from conftest import EMPLOYEE_CUIL, EMPLOYEE_NUMBER, NOW
from notice_engine.errors import (
    CodeExpired, IdentityMismatch, LinkExpired, LockedOut, RateLimited, StateConflict, StepOutOfOrder,
)
from notice_engine.models.db_models import BiometricOutcome, GateState, OneTimeCodeDB
from notice_engine.services.identity import BiometricThresholds, evaluate_similarity, identifier_matches
from notice_engine.services.identity.otp import code_matches, hash_code

WRONG_CUIL = "20-99999999-1"


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def sent_notice(flow):
    notice = flow.create()
    flow.send(notice)
    return notice


@pytest.fixture
def biometric_notice(flow, employee, blob_store, db):
    """Employee enrolled for biometrics before delivery."""
    employee.biometric_consent = True
    employee.reference_image_key = blob_store.put(f"employees/{employee.id}/reference.jpg", b"enrolled-face")
    db.commit()
    notice = flow.create()
    flow.send(notice)
    return notice


def _to_code_verified(gate, delivery, token, now=NOW):
    gate.submit_identifier(token, EMPLOYEE_CUIL, now=now)
    gate.request_code(token, now=now)
    return gate.verify_code(token, delivery.last_code(), now=now)


# =============================================================================
# TEST: ORDERING
# =============================================================================

class TestStepOrdering:
    """Each step requires the previous one."""

    def test_session_starts_unverified(self, gate, sent_notice):
        _, session = gate.load(sent_notice.access_token, now=NOW)
        status = gate.status(session)

        assert status["state"] == GateState.UNVERIFIED.value
        assert status["next_step"] == "submit_identifier"
        assert status["remaining_attempts"] == 5
        assert status["granted"] is False

    def test_code_request_before_identifier_refused(self, gate, sent_notice):
        with pytest.raises(StepOutOfOrder):
            gate.request_code(sent_notice.access_token, now=NOW)

    def test_content_refused_before_grant(self, notice_service, gate, sent_notice):
        gate.submit_identifier(sent_notice.access_token, EMPLOYEE_CUIL, now=NOW)
        with pytest.raises(StepOutOfOrder):
            notice_service.get_disclosure(sent_notice.access_token, now=NOW)

    def test_undelivered_notice_has_no_gate(self, flow, gate):
        notice = flow.create()
        with pytest.raises(StepOutOfOrder):
            gate.load(notice.access_token, now=NOW)

    def test_identifier_match_records_identity_validation(self, gate, sent_notice):
        status = gate.submit_identifier(sent_notice.access_token, EMPLOYEE_NUMBER, ip_address="190.1.1.1", now=NOW)

        assert status["state"] == GateState.ID_MATCHED.value
        assert status["next_step"] == "verify_code"
        assert sent_notice.identity_validated_at == NOW
        assert sent_notice.identity_ip == "190.1.1.1"

    def test_resubmitting_identifier_after_match_is_idempotent(self, gate, sent_notice):
        gate.submit_identifier(sent_notice.access_token, EMPLOYEE_CUIL, now=NOW)
        status = gate.submit_identifier(sent_notice.access_token, WRONG_CUIL, now=NOW)
        assert status["state"] == GateState.ID_MATCHED.value


# =============================================================================
# TEST: IDENTIFIER LOCKOUT
# =============================================================================

class TestIdentifierLockout:
    """Five failures lock the token."""

    def test_failures_report_remaining_attempts(self, gate, sent_notice):
        with pytest.raises(IdentityMismatch) as exc:
            gate.submit_identifier(sent_notice.access_token, WRONG_CUIL, now=NOW)
        assert exc.value.remaining_attempts == 4

    def test_mismatch_message_is_generic(self, gate, sent_notice):
        with pytest.raises(IdentityMismatch) as exc:
            gate.submit_identifier(sent_notice.access_token, WRONG_CUIL, now=NOW)
        assert "CUIL" not in exc.value.message
        assert "legajo" not in exc.value.message.lower()

    def test_fifth_failure_locks(self, gate, sent_notice):
        token = sent_notice.access_token
        for expected_remaining in (4, 3, 2, 1):
            with pytest.raises(IdentityMismatch) as exc:
                gate.submit_identifier(token, WRONG_CUIL, now=NOW)
            assert exc.value.remaining_attempts == expected_remaining

        with pytest.raises(LockedOut):
            gate.submit_identifier(token, WRONG_CUIL, now=NOW)

        _, session = gate.load(token, now=NOW)
        assert session.state == GateState.LOCKED
        assert session.identifier_failures == 5

    def test_sixth_attempt_with_correct_identifier_still_locked(self, gate, sent_notice):
        token = sent_notice.access_token
        for _ in range(4):
            with pytest.raises(IdentityMismatch):
                gate.submit_identifier(token, WRONG_CUIL, now=NOW)
        with pytest.raises(LockedOut):
            gate.submit_identifier(token, WRONG_CUIL, now=NOW)

        with pytest.raises(LockedOut):
            gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)

    def test_employer_reset_restores_attempts(self, gate, sent_notice, employer):
        token = sent_notice.access_token
        for _ in range(4):
            with pytest.raises(IdentityMismatch):
                gate.submit_identifier(token, WRONG_CUIL, now=NOW)
        with pytest.raises(LockedOut):
            gate.submit_identifier(token, WRONG_CUIL, now=NOW)

        status = gate.reset_lock(sent_notice, employer.id, now=NOW)
        assert status["state"] == GateState.UNVERIFIED.value
        assert status["remaining_attempts"] == 5

        assert gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)["state"] == GateState.ID_MATCHED.value

    def test_reset_requires_lock(self, gate, sent_notice, employer):
        with pytest.raises(StateConflict):
            gate.reset_lock(sent_notice, employer.id, now=NOW)


# =============================================================================
# TEST: ONE-TIME CODE
# =============================================================================

class TestOneTimeCode:
    """SMS code issue and verification."""

    def test_stored_hash_is_keyed(self):
        assert hash_code("123456") != hashlib.sha256(b"123456").hexdigest()
        assert hash_code("123456", key="other-secret") != hash_code("123456")
        assert code_matches(" 123456 ", hash_code("123456"))
        assert not code_matches("123457", hash_code("123456"))

    def test_issued_code_stored_as_keyed_hash(self, gate, sent_notice, delivery, db):
        token = sent_notice.access_token
        gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        gate.request_code(token, now=NOW)

        record = db.query(OneTimeCodeDB).one()
        assert record.code_hash == hash_code(delivery.last_code())
        assert record.code_hash != hashlib.sha256(delivery.last_code().encode()).hexdigest()

    def test_code_sent_to_masked_phone(self, gate, sent_notice, delivery):
        token = sent_notice.access_token
        gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        result = gate.request_code(token, now=NOW)

        assert result["sent"] is True
        assert result["phone_masked"] != sent_notice.employee.phone
        assert result["phone_masked"].endswith("0000")
        assert len(delivery.last_code()) == 6

    def test_code_grants_without_biometric(self, gate, sent_notice, delivery):
        status = _to_code_verified(gate, delivery, sent_notice.access_token)

        assert status["state"] == GateState.GRANTED.value
        assert status["granted"] is True
        assert sent_notice.engagement is not None

    def test_code_valid_just_before_ten_minutes(self, gate, sent_notice, delivery):
        token = sent_notice.access_token
        gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        gate.request_code(token, now=NOW)

        status = gate.verify_code(token, delivery.last_code(), now=NOW + timedelta(minutes=9, seconds=59))
        assert status["granted"] is True

    def test_code_expires_after_ten_minutes(self, gate, sent_notice, delivery):
        token = sent_notice.access_token
        gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        gate.request_code(token, now=NOW)

        with pytest.raises(CodeExpired):
            gate.verify_code(token, delivery.last_code(), now=NOW + timedelta(minutes=10, seconds=1))

    def test_new_code_invalidates_previous(self, gate, sent_notice, delivery):
        token = sent_notice.access_token
        gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        gate.request_code(token, now=NOW)
        first = delivery.last_code()

        later = NOW + timedelta(seconds=61)
        gate.request_code(token, now=later)
        second = delivery.last_code()

        if first != second:
            with pytest.raises(IdentityMismatch):
                gate.verify_code(token, first, now=later)
        assert gate.verify_code(token, second, now=later)["granted"] is True

    def test_resend_cooldown(self, gate, sent_notice):
        token = sent_notice.access_token
        gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        gate.request_code(token, now=NOW)

        with pytest.raises(RateLimited):
            gate.request_code(token, now=NOW + timedelta(seconds=30))

    def test_three_wrong_codes_exhaust(self, gate, sent_notice, delivery):
        token = sent_notice.access_token
        gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        gate.request_code(token, now=NOW)
        wrong = "000000" if delivery.last_code() != "000000" else "111111"

        with pytest.raises(IdentityMismatch) as exc:
            gate.verify_code(token, wrong, now=NOW)
        assert exc.value.remaining_attempts == 2
        with pytest.raises(IdentityMismatch):
            gate.verify_code(token, wrong, now=NOW)
        with pytest.raises(CodeExpired):
            gate.verify_code(token, wrong, now=NOW)

        # The right code no longer works either
        with pytest.raises(CodeExpired):
            gate.verify_code(token, delivery.last_code(), now=NOW)

    def test_verify_without_code_requested(self, gate, sent_notice):
        token = sent_notice.access_token
        gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        with pytest.raises(CodeExpired):
            gate.verify_code(token, "123456", now=NOW)


# =============================================================================
# TEST: BIOMETRIC
# =============================================================================

class TestBiometric:
    """Optional face-match step with a review band."""

    def test_thresholds(self):
        thresholds = BiometricThresholds()
        assert evaluate_similarity(96.0, thresholds) == BiometricOutcome.APPROVED
        assert evaluate_similarity(95.0, thresholds) == BiometricOutcome.APPROVED
        assert evaluate_similarity(90.0, thresholds) == BiometricOutcome.NEEDS_REVIEW
        assert evaluate_similarity(85.0, thresholds) == BiometricOutcome.NEEDS_REVIEW
        assert evaluate_similarity(84.9, thresholds) == BiometricOutcome.REJECTED
        assert evaluate_similarity(None, thresholds) == BiometricOutcome.REJECTED

    def test_review_cannot_exceed_approve(self):
        with pytest.raises(ValueError):
            BiometricThresholds(approve=80.0, review=90.0)

    def test_code_step_waits_for_biometric(self, gate, biometric_notice, delivery):
        status = _to_code_verified(gate, delivery, biometric_notice.access_token)

        assert status["state"] == GateState.CODE_VERIFIED.value
        assert status["next_step"] == "biometric"
        assert status["biometric_required"] is True
        assert status["biometric_optional"] is True

    def test_approved_match_grants(self, gate, biometric_notice, delivery, biometric):
        token = biometric_notice.access_token
        _to_code_verified(gate, delivery, token)
        session_id = gate.start_biometric(token, now=NOW)["liveness_session_id"]

        result = gate.submit_biometric_result(token, session_id, now=NOW)

        assert result["outcome"] == BiometricOutcome.APPROVED.value
        assert result["granted"] is True
        assert result["needs_review"] is False
        assert biometric.compared == [(b"enrolled-face", b"selfie-frame")]

    def test_review_band_grants_and_flags(self, gate, biometric_notice, delivery, biometric):
        """90% similarity: access granted, flagged for human review."""
        biometric.similarity = 90.0
        token = biometric_notice.access_token
        _to_code_verified(gate, delivery, token)
        session_id = gate.start_biometric(token, now=NOW)["liveness_session_id"]

        result = gate.submit_biometric_result(token, session_id, now=NOW)

        assert result["outcome"] == BiometricOutcome.NEEDS_REVIEW.value
        assert result["granted"] is True
        assert result["needs_review"] is True

    def test_rejected_match_allows_retry(self, gate, biometric_notice, delivery, biometric):
        biometric.similarity = 40.0
        token = biometric_notice.access_token
        _to_code_verified(gate, delivery, token)
        session_id = gate.start_biometric(token, now=NOW)["liveness_session_id"]

        result = gate.submit_biometric_result(token, session_id, now=NOW)
        assert result["outcome"] == BiometricOutcome.REJECTED.value
        assert result["retry_allowed"] is True
        assert result["state"] == GateState.CODE_VERIFIED.value

        biometric.similarity = 98.0
        session_id = gate.start_biometric(token, now=NOW)["liveness_session_id"]
        assert gate.submit_biometric_result(token, session_id, now=NOW)["granted"] is True

    def test_failed_liveness_rejects_without_face_match(self, gate, biometric_notice, delivery, biometric):
        biometric.liveness_confidence = 50.0
        token = biometric_notice.access_token
        _to_code_verified(gate, delivery, token)
        session_id = gate.start_biometric(token, now=NOW)["liveness_session_id"]

        result = gate.submit_biometric_result(token, session_id, now=NOW)
        assert result["outcome"] == BiometricOutcome.REJECTED.value
        assert biometric.compared == []

    def test_skip_when_optional(self, gate, biometric_notice, delivery):
        token = biometric_notice.access_token
        _to_code_verified(gate, delivery, token)

        status = gate.skip_biometric(token, now=NOW)
        assert status["granted"] is True

    def test_skip_refused_when_mandatory(self, flow, gate, employee, blob_store, delivery, db):
        employee.biometric_consent = True
        employee.biometric_mandatory = True
        employee.reference_image_key = blob_store.put("employees/ref.jpg", b"enrolled-face")
        db.commit()
        notice = flow.create()
        flow.send(notice)
        _to_code_verified(gate, delivery, notice.access_token)

        with pytest.raises(StepOutOfOrder):
            gate.skip_biometric(notice.access_token, now=NOW)


# =============================================================================
# TEST: EXPIRY
# =============================================================================

class TestGateExpiry:
    """Unfinished sessions lapse; granted sessions do not."""

    def test_unverified_link_expires_after_30_days(self, gate, sent_notice):
        with pytest.raises(LinkExpired):
            gate.load(sent_notice.access_token, now=NOW + timedelta(days=31))
        with pytest.raises(LinkExpired):
            gate.load(sent_notice.access_token, now=NOW)

    def test_granted_session_never_expires(self, gate, sent_notice, delivery):
        _to_code_verified(gate, delivery, sent_notice.access_token)
        _, session = gate.load(sent_notice.access_token, now=NOW + timedelta(days=90))
        assert session.state == GateState.GRANTED

    def test_expiry_job(self, gate, sent_notice):
        result = gate.expire_stale_sessions(now=NOW + timedelta(days=31))
        assert result["expired"] == 1
        assert sent_notice.id in result["details"]["expired"]


# =============================================================================
# TEST: IDENTIFIER NORMALIZATION
# =============================================================================

class TestIdentifierMatching:
    """CUIL compared on digits, legajo case-insensitive."""

    def test_cuil_with_or_without_dashes(self):
        assert identifier_matches("20123456789", "20-12345678-9", None)
        assert identifier_matches(" 20-12345678-9 ", "20123456789", None)

    def test_employee_number(self):
        assert identifier_matches(" a-1001 ", None, "A-1001")

    def test_mismatch(self):
        assert not identifier_matches("20-12345678-0", "20-12345678-9", "1001")
        assert not identifier_matches("", "20-12345678-9", "1001")
