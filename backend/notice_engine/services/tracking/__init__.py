"""Engagement tracking for disclosure views."""
from .engagement import EngagementTracker, minimum_dwell_seconds, disclosure_text

__all__ = ["EngagementTracker", "minimum_dwell_seconds", "disclosure_text"]
