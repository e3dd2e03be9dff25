"""Notice Engine - Data Models"""
from .db_models import (
    # Enums
    NoticeCategory, Severity, NoticeState, DisplayState, DeliveryChannel, ActorType,
    StampStatus, AnchorStatus, GateState, BiometricOutcome, WitnessState,
    WitnessRelation, EvidenceKind, DescargoDecision, DomicileState, ExportScope,
    # Tables
    EmployerDB, EmployeeDB, NoticeDB, IdentityGateSessionDB, OneTimeCodeDB,
    EngagementSessionDB, WitnessDeclarationDB, EvidenceItemDB, DescargoDB,
    DomicileAgreementDB, IncidentLogDB, AuditEventDB, ExportRecordDB,
    VerificationAttemptDB,
)
from .metadata import (
    ExifMetadata, MediaContainerMetadata, OtherCaptureMetadata, parse_capture_metadata,
    TimeAuthorityPayload, NotaryPayload, BiometricPayload, DeliveryPayload,
    OtherProviderPayload, parse_provider_payload,
)

__all__ = [
    "NoticeCategory", "Severity", "NoticeState", "DisplayState", "DeliveryChannel", "ActorType",
    "StampStatus", "AnchorStatus", "GateState", "BiometricOutcome", "WitnessState",
    "WitnessRelation", "EvidenceKind", "DescargoDecision", "DomicileState", "ExportScope",
    "EmployerDB", "EmployeeDB", "NoticeDB", "IdentityGateSessionDB", "OneTimeCodeDB",
    "EngagementSessionDB", "WitnessDeclarationDB", "EvidenceItemDB", "DescargoDB",
    "DomicileAgreementDB", "IncidentLogDB", "AuditEventDB", "ExportRecordDB",
    "VerificationAttemptDB",
    "ExifMetadata", "MediaContainerMetadata", "OtherCaptureMetadata", "parse_capture_metadata",
    "TimeAuthorityPayload", "NotaryPayload", "BiometricPayload", "DeliveryPayload",
    "OtherProviderPayload", "parse_provider_payload",
]
