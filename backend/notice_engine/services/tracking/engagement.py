"""
Engagement Tracking

Server-side record of how the notice was read: highest scroll coverage
and cumulative visible dwell time. The server keeps monotonic maxima,
ignores time reported while the page is hidden, and never credits more
dwell than wall-clock time elapsed between heartbeats.

Advisory only: meeting the thresholds enables the acknowledgment
challenge; it does not change legal state. The moment both thresholds
are first met is written to the audit log.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import case
from sqlalchemy.orm import Session

from ...config import MIN_DWELL_SECONDS, READING_WORDS_PER_MINUTE, SCROLL_THRESHOLD_PCT
from ...models.db_models import ActorType, EngagementSessionDB, NoticeDB
from ..audit.audit_log import AuditLog

logger = logging.getLogger(__name__)

# Network jitter allowance when capping dwell against wall-clock time
HEARTBEAT_SLACK_SECONDS = 2.0


def disclosure_text(notice: NoticeDB) -> str:
    """Text the employee is expected to read."""
    parts = [notice.reason or "", notice.facts or "", notice.incident_place or ""]
    return " ".join(p for p in parts if p)


def minimum_dwell_seconds(
    text: str,
    words_per_minute: int = READING_WORDS_PER_MINUTE,
    floor_seconds: int = MIN_DWELL_SECONDS,
) -> int:
    """Reading time for the text at the configured pace, never below the floor."""
    words = len((text or "").split())
    return max(floor_seconds, math.ceil(words * 60 / max(1, words_per_minute)))


class EngagementTracker:
    """Heartbeat intake and threshold evaluation for one disclosure view."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session
        self.audit = AuditLog(db_session)

    def start(self, notice: NoticeDB, now: Optional[datetime] = None) -> EngagementSessionDB:
        """Open the tracking session. Idempotent; caller commits."""
        if notice.engagement is not None:
            return notice.engagement

        now = now or datetime.utcnow()
        session = EngagementSessionDB(
            id=str(uuid4()),
            notice_id=notice.id,
            max_scroll_pct=0.0,
            dwell_seconds=0.0,
            scroll_threshold_pct=SCROLL_THRESHOLD_PCT,
            min_dwell_seconds=minimum_dwell_seconds(disclosure_text(notice)),
            heartbeat_count=0,
            last_sequence=0,
            started_at=now,
        )
        self.db.add(session)
        notice.engagement = session
        self.audit.record(
            event_type="engagement_started",
            description="Disclosure view opened, engagement tracking started",
            actor=ActorType.SYSTEM,
            notice_id=notice.id,
            metadata={
                "scroll_threshold_pct": session.scroll_threshold_pct,
                "min_dwell_seconds": session.min_dwell_seconds,
            },
            occurred_at=now,
        )
        return session

    def heartbeat(
        self,
        notice: NoticeDB,
        scroll_pct: float,
        dwell_seconds: float,
        visible: bool = True,
        sequence: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Apply one client heartbeat.

        scroll_pct is the deepest point the client has seen (0-100).
        dwell_seconds is visible time since the previous heartbeat.
        """
        now = now or datetime.utcnow()
        session = notice.engagement or self.start(notice, now=now)
        self.db.flush()

        if sequence is not None and sequence <= (session.last_sequence or 0):
            logger.info(f"Stale heartbeat {sequence} ignored for notice {notice.id}")
            return self.status(session)

        scroll = scroll_pct if scroll_pct == scroll_pct else 0.0  # NaN
        scroll = min(100.0, max(0.0, float(scroll)))

        accepted_dwell = 0.0
        if visible and dwell_seconds and dwell_seconds > 0:
            since = session.last_heartbeat_at or session.started_at
            elapsed = max(0.0, (now - since).total_seconds())
            accepted_dwell = min(float(dwell_seconds), elapsed + HEARTBEAT_SLACK_SECONDS)

        values = {
            EngagementSessionDB.max_scroll_pct: case(
                (EngagementSessionDB.max_scroll_pct < scroll, scroll),
                else_=EngagementSessionDB.max_scroll_pct,
            ),
            EngagementSessionDB.dwell_seconds: EngagementSessionDB.dwell_seconds + accepted_dwell,
            EngagementSessionDB.heartbeat_count: EngagementSessionDB.heartbeat_count + 1,
            EngagementSessionDB.last_heartbeat_at: now,
        }
        if sequence is not None:
            values[EngagementSessionDB.last_sequence] = sequence

        self.db.query(EngagementSessionDB).filter(
            EngagementSessionDB.id == session.id
        ).update(values, synchronize_session=False)
        self.db.refresh(session)

        if self._thresholds_met(session) and session.satisfied_at is None:
            claimed = self.db.query(EngagementSessionDB).filter(
                EngagementSessionDB.id == session.id,
                EngagementSessionDB.satisfied_at.is_(None),
            ).update({EngagementSessionDB.satisfied_at: now}, synchronize_session=False)
            self.db.refresh(session)
            if claimed == 1:
                notice.engagement_satisfied_at = now
                self.audit.record(
                    event_type="engagement_thresholds_met",
                    description=(
                        f"Content read to {session.max_scroll_pct:.0f}% "
                        f"with {session.dwell_seconds:.0f}s of visible time"
                    ),
                    actor=ActorType.EMPLOYEE,
                    notice_id=notice.id,
                    metadata={
                        "max_scroll_pct": session.max_scroll_pct,
                        "dwell_seconds": session.dwell_seconds,
                        "heartbeats": session.heartbeat_count,
                    },
                    occurred_at=now,
                )
                logger.info(f"Engagement thresholds met for notice {notice.id}")

        self.db.commit()
        return self.status(session)

    @staticmethod
    def _thresholds_met(session: EngagementSessionDB) -> bool:
        return (
            (session.max_scroll_pct or 0.0) >= session.scroll_threshold_pct
            and (session.dwell_seconds or 0.0) >= session.min_dwell_seconds
        )

    def is_satisfied(self, notice: NoticeDB) -> bool:
        session = notice.engagement
        return session is not None and session.satisfied_at is not None

    def status(self, session: Optional[EngagementSessionDB]) -> Dict[str, Any]:
        if session is None:
            return {
                "started": False,
                "max_scroll_pct": 0.0,
                "dwell_seconds": 0.0,
                "scroll_threshold_met": False,
                "dwell_threshold_met": False,
                "thresholds_met": False,
            }
        scroll_met = (session.max_scroll_pct or 0.0) >= session.scroll_threshold_pct
        dwell_met = (session.dwell_seconds or 0.0) >= session.min_dwell_seconds
        return {
            "started": True,
            "max_scroll_pct": session.max_scroll_pct,
            "dwell_seconds": session.dwell_seconds,
            "scroll_threshold_pct": session.scroll_threshold_pct,
            "min_dwell_seconds": session.min_dwell_seconds,
            "scroll_threshold_met": scroll_met,
            "dwell_threshold_met": dwell_met,
            "thresholds_met": scroll_met and dwell_met,
            "satisfied_at": session.satisfied_at.isoformat() if session.satisfied_at else None,
        }
