"""Witnesses, evidence files, incident log, timeline and export packages."""
from .evidence_service import EvidenceService, infer_kind
from .incident_log import IncidentLog
from .package_builder import ExportResult, PackageBuilder, SCOPE_SECTIONS
from .timeline import KIND_PRIORITY, TimelineEvent, collect as collect_timeline, sort_events
from .witness_service import WitnessService

__all__ = [
    "EvidenceService",
    "infer_kind",
    "IncidentLog",
    "ExportResult",
    "PackageBuilder",
    "SCOPE_SECTIONS",
    "KIND_PRIORITY",
    "TimelineEvent",
    "collect_timeline",
    "sort_events",
    "WitnessService",
]
