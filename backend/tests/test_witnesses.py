"""
Tests for witness declarations.

Test Coverage:
1. Invitation over the chosen channel, link expiry refresh
2. National id validation before signing
3. Write-once signature; token dead after signing or declining
4. Link expiry (lazy and scheduled)
"""
from datetime import timedelta

import pytest

from conftest import NOW
from notice_engine.errors import (
    ExternalProviderUnavailable, IdentityMismatch, LinkExpired, StateConflict, StepOutOfOrder,
)
from notice_engine.models.db_models import DeliveryChannel, WitnessRelation, WitnessState
from notice_engine.services.evidence import WitnessService


@pytest.fixture
def witnesses(db, delivery):
    return WitnessService(db, delivery=delivery)


@pytest.fixture
def witness(witnesses, flow):
    notice = flow.create()
    return witnesses.add(
        notice,
        "María Gómez",
        relationship=WitnessRelation.EMPLOYEE,
        national_id="30.111.222",
        position="Supervisora",
        contact="+5491144440000",
        now=NOW,
    )


# =============================================================================
# TEST: INVITATION
# =============================================================================

class TestInvitation:
    """Link sent to the witness's contact."""

    def test_added_witness_is_pending(self, witness):
        assert witness.state == WitnessState.PENDING
        assert witness.token_expires_at == NOW + timedelta(days=7)

    def test_invite_sends_link(self, witnesses, witness, delivery):
        later = NOW + timedelta(days=2)
        witnesses.invite(witness, DeliveryChannel.WHATSAPP, now=later)

        assert witness.state == WitnessState.INVITED
        assert witness.invitation_channel == DeliveryChannel.WHATSAPP
        assert witness.token_expires_at == later + timedelta(days=7)
        sent = delivery.by_channel(DeliveryChannel.WHATSAPP)
        assert len(sent) == 1
        assert witness.token in sent[0]["body"]

    def test_failed_invitation_keeps_pending(self, witnesses, witness, delivery):
        delivery.failing.add(DeliveryChannel.SMS)
        with pytest.raises(ExternalProviderUnavailable):
            witnesses.invite(witness, DeliveryChannel.SMS, now=NOW)
        assert witness.state == WitnessState.PENDING


# =============================================================================
# TEST: DECLARATION
# =============================================================================

class TestDeclaration:
    """Validate then sign, once."""

    def test_sign_requires_validation(self, witnesses, witness):
        with pytest.raises(StepOutOfOrder):
            witnesses.sign(witness.token, "Lo vi llegar tarde", present_at_incident=True, now=NOW)

    def test_national_id_mismatch(self, witnesses, witness):
        with pytest.raises(IdentityMismatch):
            witnesses.validate(witness.token, "99999999", now=NOW)
        assert witness.state == WitnessState.PENDING

    def test_national_id_compared_on_digits(self, witnesses, witness):
        witnesses.validate(witness.token, "30111222", now=NOW)
        assert witness.state == WitnessState.VALIDATED

    def test_sign_is_write_once(self, witnesses, witness):
        witnesses.validate(witness.token, "30.111.222", now=NOW)
        signed = witnesses.sign(
            witness.token, "  Estuve presente en la planta.  ", present_at_incident=True,
            ip_address="181.2.2.2", now=NOW + timedelta(minutes=3),
        )

        assert signed.state == WitnessState.SIGNED
        assert signed.statement == "Estuve presente en la planta."
        assert len(signed.signature_hash) == 64
        assert signed.signed_ip == "181.2.2.2"

        original = signed.signature_hash
        with pytest.raises(StateConflict):
            witnesses.sign(witness.token, "Otra version", present_at_incident=False, now=NOW)
        with pytest.raises(StateConflict):
            witnesses.view(witness.token, now=NOW)
        assert signed.signature_hash == original

    def test_decline_kills_token(self, witnesses, witness):
        witnesses.decline(witness.token, now=NOW)
        assert witness.state == WitnessState.DECLINED
        with pytest.raises(StateConflict):
            witnesses.validate(witness.token, "30111222", now=NOW)

    def test_view(self, witnesses, witness):
        view = witnesses.view(witness.token, now=NOW)
        assert view["witness"] == "María Gómez"
        assert view["requires_national_id"] is True
        assert view["incident_date"] == "2026-01-10"


# =============================================================================
# TEST: EXPIRY
# =============================================================================

class TestWitnessExpiry:
    """Seven-day links."""

    def test_lazy_expiry(self, witnesses, witness):
        with pytest.raises(LinkExpired):
            witnesses.view(witness.token, now=NOW + timedelta(days=8))
        assert witness.state == WitnessState.EXPIRED

    def test_expiry_job_skips_signed(self, witnesses, witness):
        witnesses.validate(witness.token, "30111222", now=NOW)
        witnesses.sign(witness.token, "Declaro", present_at_incident=True, now=NOW)
        open_witness = witnesses.add(witness.notice, "Pedro Ruiz", now=NOW)

        result = witnesses.expire_lapsed(now=NOW + timedelta(days=8))

        assert result["expired"] == 1
        assert open_witness.state == WitnessState.EXPIRED
        assert witness.state == WitnessState.SIGNED
