"""
Traffic-light display state, derived on read and never stored.

    pending -> sent -> identity_validated -> read
            -> upcoming (<= 15 days) -> approaching_due (<= 5 days)
            -> firm | physical_fallback_needed

A disputed notice shows as disputed regardless of the clock.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ...config import APPROACHING_DUE_DAYS, PHYSICAL_FALLBACK_GRACE_HOURS, UPCOMING_DUE_DAYS
from ...models.db_models import DisplayState, NoticeDB, NoticeState


def needs_physical_fallback(notice: NoticeDB, now: datetime) -> bool:
    """
    Delivered electronically but never confirmed: either the provider
    bounced it or the grace period passed without a read confirmation.
    """
    if notice.state != NoticeState.SENT or notice.read_confirmed_at is not None:
        return False
    if notice.physical_notice_sent_at is not None:
        return False
    if notice.delivery_bounced:
        return True
    if notice.sent_at is None:
        return False
    return now > notice.sent_at + timedelta(hours=PHYSICAL_FALLBACK_GRACE_HOURS)


def days_until_due(notice: NoticeDB, now: datetime) -> Optional[int]:
    if notice.due_date is None:
        return None
    return (notice.due_date.date() - now.date()).days


def effective_legal_state(notice: NoticeDB, now: Optional[datetime] = None) -> NoticeState:
    """
    Stored state plus what the clock implies before the scheduler catches up.

    READ past due without dispute reads as FIRM; SENT past the physical
    fallback grace reads as EXPIRED. Nothing is written.
    """
    now = now or datetime.utcnow()
    if notice.state == NoticeState.READ and notice.due_date is not None and now > notice.due_date:
        return NoticeState.FIRM
    if notice.state == NoticeState.SENT and needs_physical_fallback(notice, now):
        return NoticeState.EXPIRED
    return notice.state


def compute_display_state(notice: NoticeDB, now: Optional[datetime] = None) -> DisplayState:
    now = now or datetime.utcnow()

    if notice.state == NoticeState.DRAFT:
        return DisplayState.PENDING
    if notice.state == NoticeState.DISPUTED:
        return DisplayState.DISPUTED
    if notice.state == NoticeState.FIRM:
        return DisplayState.FIRM

    if notice.state == NoticeState.SENT:
        if needs_physical_fallback(notice, now):
            return DisplayState.PHYSICAL_FALLBACK_NEEDED
        if notice.identity_validated_at is not None:
            return DisplayState.IDENTITY_VALIDATED
        return DisplayState.SENT

    # READ
    if notice.due_date is not None and now > notice.due_date:
        return DisplayState.FIRM
    remaining = days_until_due(notice, now)
    if remaining is not None and remaining <= APPROACHING_DUE_DAYS:
        return DisplayState.APPROACHING_DUE
    if remaining is not None and remaining <= UPCOMING_DUE_DAYS:
        return DisplayState.UPCOMING
    return DisplayState.READ


def describe(notice: NoticeDB, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Display summary used by employer listings."""
    now = now or datetime.utcnow()
    return {
        "state": notice.state.value,
        "effective_state": effective_legal_state(notice, now).value,
        "display_state": compute_display_state(notice, now).value,
        "due_date": notice.due_date.isoformat() if notice.due_date else None,
        "days_remaining": days_until_due(notice, now),
    }
