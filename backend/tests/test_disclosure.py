"""
Tests for gated disclosure and read confirmation.

Test Coverage:
1. Engagement tracking - monotonic scroll, dwell bounded by wall clock,
   stale heartbeats ignored, reading-time floor
2. Acknowledgment challenge - lenient matching of measure, days and date
3. Read confirmation - engagement required, wrong answers, freeze and
   employer unfreeze, idempotent re-confirmation
4. Full scenario - 3-day suspension for an incident on 10/01/2026
"""
from datetime import date, timedelta

import pytest

from conftest import CORRECT_ANSWERS, EMPLOYEE_CUIL, NOW
from notice_engine.errors import ChallengeFrozen, EngagementIncomplete, StateConflict
from notice_engine.models.db_models import (
    AuditEventDB, DescargoDecision, DisplayState, NoticeCategory, NoticeState,
)
from notice_engine.services.notices import answer_matches, compute_display_state, parse_date, parse_number
from notice_engine.services.tracking.engagement import minimum_dwell_seconds

WRONG_ANSWERS = {
    "sanction_type": "despido",
    "duration": "7 dias",
    "incident_date": "11/02/2025",
}


@pytest.fixture
def granted(flow):
    """Notice delivered with the identity gate completed."""
    notice = flow.create()
    flow.send(notice)
    flow.grant(notice)
    return notice


def _satisfy_engagement(notice_service, token, start=NOW):
    notice_service.heartbeat(token, 100.0, 60.0, visible=True, sequence=1, now=start + timedelta(seconds=60))


# =============================================================================
# TEST: ENGAGEMENT
# =============================================================================

class TestEngagement:
    """Heartbeats accumulate toward both thresholds."""

    def test_floor_for_short_text(self):
        assert minimum_dwell_seconds("tres palabras solamente") == 30

    def test_longer_text_needs_reading_time(self):
        assert minimum_dwell_seconds("palabra " * 400) == 120

    def test_scroll_is_monotonic(self, notice_service, granted):
        token = granted.access_token
        notice_service.get_disclosure(token, now=NOW)

        notice_service.heartbeat(token, 95.0, 5.0, sequence=1, now=NOW + timedelta(seconds=5))
        status = notice_service.heartbeat(token, 40.0, 5.0, sequence=2, now=NOW + timedelta(seconds=10))

        assert status["max_scroll_pct"] == 95.0
        assert status["scroll_threshold_met"] is True

    def test_scroll_is_clamped(self, notice_service, granted):
        token = granted.access_token
        notice_service.get_disclosure(token, now=NOW)
        status = notice_service.heartbeat(token, 250.0, 1.0, sequence=1, now=NOW + timedelta(seconds=1))
        assert status["max_scroll_pct"] == 100.0

    def test_dwell_bounded_by_elapsed_time(self, notice_service, granted):
        """A client claiming 10 minutes after 10 seconds is credited 12 seconds."""
        token = granted.access_token
        notice_service.get_disclosure(token, now=NOW)

        status = notice_service.heartbeat(token, 100.0, 600.0, sequence=1, now=NOW + timedelta(seconds=10))

        assert status["dwell_seconds"] == pytest.approx(12.0)
        assert status["thresholds_met"] is False

    def test_hidden_tab_earns_no_dwell(self, notice_service, granted):
        token = granted.access_token
        notice_service.get_disclosure(token, now=NOW)
        status = notice_service.heartbeat(token, 50.0, 20.0, visible=False, sequence=1, now=NOW + timedelta(seconds=20))
        assert status["dwell_seconds"] == 0.0

    def test_stale_sequence_ignored(self, notice_service, granted):
        token = granted.access_token
        notice_service.get_disclosure(token, now=NOW)

        notice_service.heartbeat(token, 30.0, 10.0, sequence=2, now=NOW + timedelta(seconds=10))
        status = notice_service.heartbeat(token, 100.0, 10.0, sequence=1, now=NOW + timedelta(seconds=20))

        assert status["max_scroll_pct"] == 30.0
        assert status["dwell_seconds"] == pytest.approx(10.0)

    def test_thresholds_met_once(self, notice_service, granted, db):
        token = granted.access_token
        notice_service.get_disclosure(token, now=NOW)

        _satisfy_engagement(notice_service, token)
        notice_service.heartbeat(token, 100.0, 10.0, sequence=2, now=NOW + timedelta(seconds=70))

        assert granted.engagement_satisfied_at == NOW + timedelta(seconds=60)
        met = db.query(AuditEventDB).filter(
            AuditEventDB.notice_id == granted.id,
            AuditEventDB.event_type == "engagement_thresholds_met",
        ).count()
        assert met == 1


# =============================================================================
# TEST: CHALLENGE MATCHING
# =============================================================================

class TestChallengeMatching:
    """Lenient comparison against the notice's own facts."""

    @pytest.fixture
    def suspension(self, flow):
        return flow.create()

    @pytest.mark.parametrize("answer", ["suspensión", "SUSPENSION", "suspension sin goce", "suspencion"])
    def test_sanction_type_accepted(self, suspension, answer):
        assert answer_matches(suspension, "sanction_type", answer)

    @pytest.mark.parametrize("answer", ["apercibimiento", "despido", "", "s"])
    def test_sanction_type_rejected(self, suspension, answer):
        assert not answer_matches(suspension, "sanction_type", answer)

    @pytest.mark.parametrize("answer", ["3 días", "3", "tres dias", "Tres"])
    def test_duration_accepted(self, suspension, answer):
        assert answer_matches(suspension, "duration", answer)

    def test_duration_rejected(self, suspension):
        assert not answer_matches(suspension, "duration", "30 dias")

    @pytest.mark.parametrize("answer", ["10/01/2026", "10-01-2026", "2026-01-10", "10 de enero de 2026"])
    def test_incident_date_accepted(self, suspension, answer):
        assert answer_matches(suspension, "incident_date", answer)

    def test_incident_date_is_day_first(self, suspension):
        assert not answer_matches(suspension, "incident_date", "01/10/2026")

    def test_warning_measure(self, flow):
        warning = flow.create(category=NoticeCategory.WARNING)
        assert answer_matches(warning, "sanction_type", "apercibimiento")
        assert not answer_matches(warning, "duration", "3")

    @pytest.mark.parametrize("answer", ["apercibimiento", "advertencia", "suspension"])
    def test_pre_dismissal_rejects_other_measures(self, flow, answer):
        notice = flow.create(category=NoticeCategory.PRE_DISMISSAL_WARNING)
        assert not answer_matches(notice, "sanction_type", answer)

    @pytest.mark.parametrize("answer", ["apercibimiento previo al despido", "ultimo apercibimiento", "pre despido"])
    def test_warning_rejects_pre_dismissal_answers(self, flow, answer):
        notice = flow.create(category=NoticeCategory.WARNING)
        assert not answer_matches(notice, "sanction_type", answer)

    @pytest.mark.parametrize("answer", ["apercibimiento previo al despido", "Último apercibimiento"])
    def test_pre_dismissal_accepts_own_phrases(self, flow, answer):
        notice = flow.create(category=NoticeCategory.PRE_DISMISSAL_WARNING)
        assert answer_matches(notice, "sanction_type", answer)

    def test_leading_article_ignored(self, suspension):
        assert answer_matches(suspension, "sanction_type", "una suspensión")

    def test_parsers(self):
        assert parse_number("cinco dias") == 5
        assert parse_number("nada") is None
        assert parse_date("10 de enero de 2026") == date(2026, 1, 10)
        assert parse_date("") is None


# =============================================================================
# TEST: READ CONFIRMATION
# =============================================================================

class TestConfirmRead:
    """Engagement plus a correct answer moves SENT to READ."""

    def test_disclosure_exposes_challenge_not_answer(self, notice_service, granted):
        disclosure = notice_service.get_disclosure(granted.access_token, now=NOW)

        challenge = disclosure["challenge"]
        assert challenge["field"] in CORRECT_ANSWERS
        assert challenge["question"]
        assert challenge["attempts"] == 0
        assert challenge["max_attempts"] == 3
        assert challenge["frozen"] is False
        assert disclosure["notice"]["content_hash"] == granted.content_hash

    def test_challenge_field_is_stable(self, notice_service, granted):
        first = notice_service.get_disclosure(granted.access_token, now=NOW)["challenge"]["field"]
        for _ in range(5):
            assert notice_service.get_disclosure(granted.access_token, now=NOW)["challenge"]["field"] == first

    def test_confirmation_requires_engagement(self, notice_service, granted):
        field = notice_service.get_disclosure(granted.access_token, now=NOW)["challenge"]["field"]

        with pytest.raises(EngagementIncomplete):
            notice_service.confirm_read(granted.access_token, field, CORRECT_ANSWERS[field], now=NOW)
        assert granted.state == NoticeState.SENT

    def test_wrong_answer_reports_remaining(self, notice_service, granted):
        token = granted.access_token
        field = notice_service.get_disclosure(token, now=NOW)["challenge"]["field"]
        _satisfy_engagement(notice_service, token)

        result = notice_service.confirm_read(token, field, WRONG_ANSWERS[field], now=NOW + timedelta(seconds=61))

        assert result == {"confirmed": False, "remaining_attempts": 2, "frozen": False}
        assert granted.state == NoticeState.SENT

    def test_three_wrong_answers_freeze(self, notice_service, granted, employer):
        token = granted.access_token
        field = notice_service.get_disclosure(token, now=NOW)["challenge"]["field"]
        _satisfy_engagement(notice_service, token)
        later = NOW + timedelta(seconds=61)

        notice_service.confirm_read(token, field, WRONG_ANSWERS[field], now=later)
        notice_service.confirm_read(token, field, WRONG_ANSWERS[field], now=later)
        result = notice_service.confirm_read(token, field, WRONG_ANSWERS[field], now=later)
        assert result["frozen"] is True
        assert result["remaining_attempts"] == 0

        with pytest.raises(ChallengeFrozen):
            notice_service.confirm_read(token, field, CORRECT_ANSWERS[field], now=later)

        notice_service.unfreeze_challenge(granted, employer.id, now=later)
        assert granted.challenge_frozen is False
        assert granted.challenge_attempts == 0
        assert granted.challenge_field != field

        new_field = granted.challenge_field
        result = notice_service.confirm_read(token, new_field, CORRECT_ANSWERS[new_field], now=later)
        assert result["confirmed"] is True

    def test_unfreeze_requires_frozen(self, notice_service, granted, employer):
        with pytest.raises(StateConflict):
            notice_service.unfreeze_challenge(granted, employer.id, now=NOW)

    def test_correct_answer_confirms_and_opens_descargo(self, flow, granted):
        result = flow.read(granted)

        assert result["confirmed"] is True
        assert result["already_confirmed"] is False
        assert len(result["read_confirmation_hash"]) == 64
        assert result["descargo_token"]
        assert granted.state == NoticeState.READ
        assert granted.read_ip == "190.1.1.1"
        assert granted.read_user_agent == "Mozilla/5.0"
        assert granted.descargo.decision == DescargoDecision.PENDING
        assert granted.descargo.expires_at == granted.read_confirmed_at + timedelta(days=10)

    def test_reconfirmation_is_idempotent(self, flow, notice_service, granted):
        first = flow.read(granted)
        again = notice_service.confirm_read(
            granted.access_token, "sanction_type", "lo que sea", now=NOW + timedelta(hours=1)
        )

        assert again["already_confirmed"] is True
        assert again["read_confirmation_hash"] == first["read_confirmation_hash"]
        assert granted.read_confirmed_at == NOW + timedelta(seconds=60)


# =============================================================================
# TEST: FULL SCENARIO
# =============================================================================

class TestSuspensionScenario:
    """3-day suspension for an incident on 10/01/2026, from creation to firmness."""

    def test_end_to_end(self, flow, notice_service, delivery, db):
        from notice_engine.services.notices import NoticeScheduler

        notice = flow.create(incident_date=date(2026, 1, 10), suspension_days=3)
        assert compute_display_state(notice, NOW) == DisplayState.PENDING

        flow.send(notice)
        token = notice.access_token
        opened = notice_service.open_link(token, ip_address="190.1.1.1", user_agent="Mozilla/5.0", now=NOW)
        assert opened["gate"]["next_step"] == "submit_identifier"

        notice_service.gate.submit_identifier(token, EMPLOYEE_CUIL, now=NOW)
        notice_service.gate.request_code(token, now=NOW)
        status = notice_service.gate.verify_code(token, delivery.last_code(), now=NOW)
        assert status["granted"] is True
        assert compute_display_state(notice, NOW) == DisplayState.IDENTITY_VALIDATED

        disclosure = notice_service.get_disclosure(token, now=NOW)
        assert disclosure["notice"]["suspension_days"] == 3
        assert disclosure["notice"]["incident_date"] == "2026-01-10"

        field = disclosure["challenge"]["field"]
        _satisfy_engagement(notice_service, token)
        result = notice_service.confirm_read(
            token, field, CORRECT_ANSWERS[field], ip_address="190.1.1.1", now=NOW + timedelta(seconds=60)
        )
        assert result["confirmed"] is True
        assert compute_display_state(notice, NOW + timedelta(days=1)) == DisplayState.READ

        NoticeScheduler(db).run_firmness_check(now=NOW + timedelta(days=31))
        assert notice.state == NoticeState.FIRM

        events = [
            e.event_type for e in db.query(AuditEventDB)
            .filter(AuditEventDB.notice_id == notice.id)
            .order_by(AuditEventDB.occurred_at)
        ]
        for expected in ("notice_created", "link_opened", "identity_validated", "code_verified",
                         "access_granted", "engagement_thresholds_met", "read_confirmed"):
            assert expected in events
