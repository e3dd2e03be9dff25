"""
Notice Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Date, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, event,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS FOR NOTICE LIFECYCLE
# =============================================================================

class NoticeCategory(str, Enum):
    """Kind of disciplinary measure."""
    WARNING = "warning"
    SUSPENSION = "suspension"
    PRE_DISMISSAL_WARNING = "pre_dismissal_warning"


class Severity(str, Enum):
    """Severity assigned by the employer."""
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"


class NoticeState(str, Enum):
    """Stored legal state of a notice."""
    DRAFT = "DRAFT"
    SENT = "SENT"
    READ = "READ"
    FIRM = "FIRM"
    DISPUTED = "DISPUTED"
    # Inferred for display only, never persisted
    EXPIRED = "EXPIRED"


class DisplayState(str, Enum):
    """Traffic-light state derived on read."""
    PENDING = "pending"
    SENT = "sent"
    IDENTITY_VALIDATED = "identity_validated"
    READ = "read"
    UPCOMING = "upcoming"
    APPROACHING_DUE = "approaching_due"
    FIRM = "firm"
    DISPUTED = "disputed"
    PHYSICAL_FALLBACK_NEEDED = "physical_fallback_needed"


class DeliveryChannel(str, Enum):
    """Electronic delivery channels."""
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class ActorType(str, Enum):
    """Actor types for the audit log."""
    EMPLOYER = "EMPLOYER"
    EMPLOYEE = "EMPLOYEE"
    WITNESS = "WITNESS"
    SYSTEM = "SYSTEM"
    PUBLIC = "PUBLIC"
    PROVIDER = "PROVIDER"


class StampStatus(str, Enum):
    """Outcome of the immediate time-authority stamp."""
    STAMPED = "STAMPED"
    UNSTAMPED = "UNSTAMPED"


class AnchorStatus(str, Enum):
    """Lifecycle of the deferred public-ledger anchor."""
    NONE = "NONE"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


# =============================================================================
# ENUMS FOR IDENTITY GATE
# =============================================================================

class GateState(str, Enum):
    """States of the identity gate for one access token."""
    UNVERIFIED = "UNVERIFIED"
    ID_MATCHED = "ID_MATCHED"
    CODE_VERIFIED = "CODE_VERIFIED"
    BIOMETRIC_VERIFIED = "BIOMETRIC_VERIFIED"
    GRANTED = "GRANTED"
    LOCKED = "LOCKED"
    EXPIRED = "EXPIRED"


class BiometricOutcome(str, Enum):
    """Tri-state face-match outcome. NEEDS_REVIEW is not an error."""
    APPROVED = "APPROVED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    REJECTED = "REJECTED"


# =============================================================================
# ENUMS FOR CHILD RECORDS
# =============================================================================

class WitnessState(str, Enum):
    PENDING = "pending"
    INVITED = "invited"
    VALIDATED = "validated"
    SIGNED = "signed"
    DECLINED = "declined"
    EXPIRED = "expired"


class WitnessRelation(str, Enum):
    """Witness relationship to the employer."""
    EMPLOYEE = "employee"
    SUPERVISOR = "supervisor"
    CLIENT = "client"
    SUPPLIER = "supplier"
    OTHER = "other"


class EvidenceKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    SCREENSHOT = "screenshot"


class DescargoDecision(str, Enum):
    """Right-of-reply decision."""
    PENDING = "pending"
    EXERCISED = "exercised"
    DECLINED = "declined"
    EXPIRED = "expired"


class DomicileState(str, Enum):
    """Electronic domicile agreement lifecycle."""
    PENDING = "pending"
    SIGNED_DIGITAL = "signed_digital"
    SIGNED_PAPER = "signed_paper"
    EXPIRED = "expired"


class ExportScope(str, Enum):
    """Evidence package scope."""
    FULL = "full"
    TECHNICAL = "technical"
    CHAIN_OF_CUSTODY = "chain-of-custody"
    TIMELINE_ONLY = "timeline-only"


# =============================================================================
# PARTIES
# =============================================================================

class EmployerDB(Base):
    """Issuing company. Also the authenticated principal for employer endpoints."""
    __tablename__ = "employers"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    legal_name = Column(String(255), nullable=False)
    tax_id = Column(String(20), nullable=True)  # CUIT
    created_at = Column(DateTime, default=datetime.utcnow)

    employees = relationship("EmployeeDB", back_populates="employer", cascade="all, delete-orphan")


class EmployeeDB(Base):
    """Notice recipient."""
    __tablename__ = "employees"

    id = Column(String(36), primary_key=True)  # UUID
    employer_id = Column(String(36), ForeignKey("employers.id", ondelete="CASCADE"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    tax_id = Column(String(20), nullable=True)  # CUIL, stored as entered
    employee_number = Column(String(50), nullable=True)  # Legajo
    email = Column(String(255), nullable=True)
    phone = Column(String(30), nullable=True)

    # Biometric processing requires prior consent and an enrolled reference
    biometric_consent = Column(Boolean, default=False)
    biometric_mandatory = Column(Boolean, default=False)
    reference_image_key = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    employer = relationship("EmployerDB", back_populates="employees")
    notices = relationship("NoticeDB", back_populates="employee")
    domicile_agreement = relationship("DomicileAgreementDB", back_populates="employee", uselist=False)


# =============================================================================
# NOTICE
# =============================================================================

class NoticeDB(Base):
    """
    Disciplinary notice.

    due_date is written once at the first SENT transition.
    content_hash is written once at creation.
    """
    __tablename__ = "notices"

    id = Column(String(36), primary_key=True)  # UUID
    employer_id = Column(String(36), ForeignKey("employers.id"), nullable=False, index=True)
    employee_id = Column(String(36), ForeignKey("employees.id"), nullable=False, index=True)
    access_token = Column(String(64), unique=True, nullable=False, index=True)

    # ==========================================================================
    # CONTENT
    # ==========================================================================
    category = Column(SQLEnum(NoticeCategory), nullable=False)
    severity = Column(SQLEnum(Severity), nullable=False, default=Severity.MODERATE)
    reason = Column(String(255), nullable=False)
    facts = Column(Text, nullable=False)
    incident_date = Column(Date, nullable=True)
    incident_time = Column(String(5), nullable=True)  # HH:MM
    incident_place = Column(String(255), nullable=True)
    suspension_days = Column(Integer, nullable=True)
    suspension_start = Column(Date, nullable=True)
    suspension_end = Column(Date, nullable=True)
    document_key = Column(String(500), nullable=True)  # Rendered PDF in blob store

    # ==========================================================================
    # INTEGRITY
    # ==========================================================================
    content_hash = Column(String(64), nullable=False, index=True)
    generated_at = Column(DateTime, nullable=False)
    origin_ip = Column(String(45), nullable=True)

    tsa_status = Column(SQLEnum(StampStatus), nullable=False, default=StampStatus.UNSTAMPED)
    tsa_authority = Column(String(255), nullable=True)
    tsa_token = Column(Text, nullable=True)  # base64 DER TimeStampResp
    tsa_stamped_at = Column(DateTime, nullable=True)

    anchor_status = Column(SQLEnum(AnchorStatus), nullable=False, default=AnchorStatus.NONE)
    anchor_calendar = Column(String(255), nullable=True)
    anchor_receipt = Column(Text, nullable=True)  # base64 .ots
    anchor_submitted_at = Column(DateTime, nullable=True)
    anchor_confirmed_at = Column(DateTime, nullable=True)
    anchor_block_height = Column(Integer, nullable=True)
    anchor_checks = Column(Integer, default=0)
    anchor_last_checked_at = Column(DateTime, nullable=True)

    # ==========================================================================
    # LEGAL STATE
    # ==========================================================================
    state = Column(SQLEnum(NoticeState), nullable=False, default=NoticeState.DRAFT, index=True)
    due_date = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    disputed_at = Column(DateTime, nullable=True)
    dispute_reason = Column(Text, nullable=True)
    firm_at = Column(DateTime, nullable=True)

    # ==========================================================================
    # DELIVERY
    # ==========================================================================
    email_sent_at = Column(DateTime, nullable=True)
    sms_sent_at = Column(DateTime, nullable=True)
    whatsapp_sent_at = Column(DateTime, nullable=True)
    email_message_id = Column(String(255), nullable=True, index=True)
    email_delivered_at = Column(DateTime, nullable=True)
    email_opened_at = Column(DateTime, nullable=True)
    delivery_bounced = Column(Boolean, default=False)
    delivery_attempts = Column(Integer, default=0)
    reminder_sent_at = Column(DateTime, nullable=True)  # Unopened-notice SMS, sent once
    employer_alerts_sent = Column(Integer, default=0)
    last_employer_alert_at = Column(DateTime, nullable=True)

    # ==========================================================================
    # DISCLOSURE
    # ==========================================================================
    link_opened_at = Column(DateTime, nullable=True)
    link_open_ip = Column(String(45), nullable=True)
    link_open_user_agent = Column(String(500), nullable=True)

    identity_validated_at = Column(DateTime, nullable=True)
    submitted_identifier = Column(String(50), nullable=True)
    identity_ip = Column(String(45), nullable=True)
    identity_user_agent = Column(String(500), nullable=True)

    engagement_satisfied_at = Column(DateTime, nullable=True)

    challenge_field = Column(String(30), nullable=True)
    challenge_attempts = Column(Integer, default=0)
    challenge_frozen = Column(Boolean, default=False)

    read_confirmed_at = Column(DateTime, nullable=True)
    read_ip = Column(String(45), nullable=True)
    read_user_agent = Column(String(500), nullable=True)
    read_confirmation_hash = Column(String(64), nullable=True, index=True)

    # ==========================================================================
    # PHYSICAL FALLBACK
    # ==========================================================================
    physical_notice_sent_at = Column(DateTime, nullable=True)
    physical_notice_method = Column(String(50), nullable=True)  # carta documento, telegrama, in-person
    physical_notice_receipt_key = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    employee = relationship("EmployeeDB", back_populates="notices")
    employer = relationship("EmployerDB")
    gate_session = relationship("IdentityGateSessionDB", back_populates="notice", uselist=False, cascade="all, delete-orphan")
    engagement = relationship("EngagementSessionDB", back_populates="notice", uselist=False, cascade="all, delete-orphan")
    witnesses = relationship("WitnessDeclarationDB", back_populates="notice", cascade="all, delete-orphan")
    evidence_items = relationship("EvidenceItemDB", back_populates="notice", cascade="all, delete-orphan")
    descargo = relationship("DescargoDB", back_populates="notice", uselist=False, cascade="all, delete-orphan")


# =============================================================================
# IDENTITY GATE
# =============================================================================

class IdentityGateSessionDB(Base):
    """
    Persisted identity gate for one notice access token.
    Survives page reloads; every step is written before responding.
    """
    __tablename__ = "identity_gate_sessions"

    id = Column(String(36), primary_key=True)  # UUID
    notice_id = Column(String(36), ForeignKey("notices.id", ondelete="CASCADE"), nullable=False, unique=True)
    state = Column(SQLEnum(GateState), nullable=False, default=GateState.UNVERIFIED)

    identifier_failures = Column(Integer, default=0)
    locked_at = Column(DateTime, nullable=True)
    id_matched_at = Column(DateTime, nullable=True)
    code_verified_at = Column(DateTime, nullable=True)

    biometric_required = Column(Boolean, default=False)
    biometric_mandatory = Column(Boolean, default=False)
    biometric_skipped = Column(Boolean, default=False)
    liveness_session_id = Column(String(100), nullable=True)
    liveness_confidence = Column(Float, nullable=True)
    biometric_score = Column(Float, nullable=True)
    biometric_outcome = Column(SQLEnum(BiometricOutcome), nullable=True)
    biometric_attempts = Column(Integer, default=0)
    biometric_verified_at = Column(DateTime, nullable=True)
    needs_review = Column(Boolean, default=False)

    granted_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    notice = relationship("NoticeDB", back_populates="gate_session")
    codes = relationship("OneTimeCodeDB", back_populates="gate_session", cascade="all, delete-orphan")


class OneTimeCodeDB(Base):
    """SMS one-time code. Only the SHA-256 of the code is stored."""
    __tablename__ = "one_time_codes"

    id = Column(String(36), primary_key=True)  # UUID
    gate_session_id = Column(String(36), ForeignKey("identity_gate_sessions.id", ondelete="CASCADE"), nullable=True, index=True)
    domicile_agreement_id = Column(String(36), ForeignKey("domicile_agreements.id", ondelete="CASCADE"), nullable=True, index=True)
    code_hash = Column(String(64), nullable=False)
    phone_masked = Column(String(20), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, nullable=False)
    used = Column(Boolean, default=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    gate_session = relationship("IdentityGateSessionDB", back_populates="codes")


# =============================================================================
# ENGAGEMENT TRACKING
# =============================================================================

class EngagementSessionDB(Base):
    """Server-side maxima of scroll coverage and visible dwell time."""
    __tablename__ = "engagement_sessions"

    id = Column(String(36), primary_key=True)  # UUID
    notice_id = Column(String(36), ForeignKey("notices.id", ondelete="CASCADE"), nullable=False, unique=True)
    max_scroll_pct = Column(Float, default=0.0)
    dwell_seconds = Column(Float, default=0.0)
    scroll_threshold_pct = Column(Float, nullable=False)
    min_dwell_seconds = Column(Integer, nullable=False)
    heartbeat_count = Column(Integer, default=0)
    last_sequence = Column(Integer, default=0)  # Client heartbeat counter, stale ones are dropped
    started_at = Column(DateTime, nullable=False)
    last_heartbeat_at = Column(DateTime, nullable=True)
    satisfied_at = Column(DateTime, nullable=True)

    notice = relationship("NoticeDB", back_populates="engagement")


# =============================================================================
# CHILD RECORDS
# =============================================================================

class WitnessDeclarationDB(Base):
    """
    Witness statement. Statement and signature hash are write-once;
    the token is dead after signing.
    """
    __tablename__ = "witness_declarations"

    id = Column(String(36), primary_key=True)  # UUID
    notice_id = Column(String(36), ForeignKey("notices.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    token_expires_at = Column(DateTime, nullable=False)

    full_name = Column(String(255), nullable=False)
    national_id = Column(String(20), nullable=True)
    position = Column(String(100), nullable=True)
    relationship_to_employer = Column(SQLEnum(WitnessRelation), nullable=False, default=WitnessRelation.EMPLOYEE)
    contact = Column(String(255), nullable=True)
    invitation_channel = Column(SQLEnum(DeliveryChannel), nullable=True)

    present_at_incident = Column(Boolean, nullable=True)
    statement = Column(Text, nullable=True)
    signature_hash = Column(String(64), nullable=True, index=True)
    signed_at = Column(DateTime, nullable=True)
    signed_ip = Column(String(45), nullable=True)
    signed_user_agent = Column(String(500), nullable=True)

    state = Column(SQLEnum(WitnessState), nullable=False, default=WitnessState.PENDING)
    invited_at = Column(DateTime, nullable=True)
    validated_at = Column(DateTime, nullable=True)
    declined_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    notice = relationship("NoticeDB", back_populates="witnesses")


class EvidenceItemDB(Base):
    """Uploaded multimedia proof. Hash re-verified on ingestion."""
    __tablename__ = "evidence_items"

    id = Column(String(36), primary_key=True)  # UUID
    notice_id = Column(String(36), ForeignKey("notices.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(SQLEnum(EvidenceKind), nullable=False)
    filename = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=False)
    content_hash = Column(String(64), nullable=False, index=True)
    description = Column(Text, nullable=True)
    is_principal = Column(Boolean, default=False)
    storage_key = Column(String(500), nullable=False)

    # Tagged union, see models.metadata.CaptureMetadata
    capture_metadata = Column(JSON, nullable=True)
    captured_at = Column(DateTime, nullable=True)

    uploaded_ip = Column(String(45), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    notice = relationship("NoticeDB", back_populates="evidence_items")


class DescargoDB(Base):
    """
    Employee right of reply. The decision and text are write-once;
    employer annotations stay mutable.
    """
    __tablename__ = "descargos"

    id = Column(String(36), primary_key=True)  # UUID
    notice_id = Column(String(36), ForeignKey("notices.id", ondelete="CASCADE"), nullable=False, unique=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    decision = Column(SQLEnum(DescargoDecision), nullable=False, default=DescargoDecision.PENDING)
    decision_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)

    identity_failures = Column(Integer, default=0)
    identity_rechecked_at = Column(DateTime, nullable=True)

    draft_text = Column(Text, nullable=True)
    draft_saved_at = Column(DateTime, nullable=True)
    text = Column(Text, nullable=True)
    sworn_statement = Column(Boolean, default=False)
    confirmation_hash = Column(String(64), nullable=True, index=True)
    confirmed_at = Column(DateTime, nullable=True)
    confirmed_ip = Column(String(45), nullable=True)
    confirmed_user_agent = Column(String(500), nullable=True)

    # Employer annotations (mutable)
    contains_admission = Column(Boolean, nullable=True)
    contains_contradiction = Column(Boolean, nullable=True)
    employer_notes = Column(Text, nullable=True)
    annotated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    notice = relationship("NoticeDB", back_populates="descargo")


class DomicileAgreementDB(Base):
    """Electronic domicile agreement. One per employee."""
    __tablename__ = "domicile_agreements"

    id = Column(String(36), primary_key=True)  # UUID
    employee_id = Column(String(36), ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, unique=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    token_expires_at = Column(DateTime, nullable=False)
    state = Column(SQLEnum(DomicileState), nullable=False, default=DomicileState.PENDING)
    agreement_version = Column(String(10), default="1.0")
    constituted_email = Column(String(255), nullable=True)
    constituted_phone = Column(String(30), nullable=True)

    identifier_failures = Column(Integer, default=0)
    identity_validated_at = Column(DateTime, nullable=True)
    signature_hash = Column(String(64), nullable=True)
    signed_at = Column(DateTime, nullable=True)
    signed_ip = Column(String(45), nullable=True)
    signed_user_agent = Column(String(500), nullable=True)
    paper_scan_key = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    employee = relationship("EmployeeDB", back_populates="domicile_agreement")


class IncidentLogDB(Base):
    """Prior-incident log (bitacora) entry for an employee."""
    __tablename__ = "incident_log"

    id = Column(String(36), primary_key=True)  # UUID
    employee_id = Column(String(36), ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String(50), nullable=False)  # late_arrival, absence, verbal_warning, ...
    category = Column(String(50), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    occurred_on = Column(Date, nullable=False)
    content_hash = Column(String(64), nullable=False, index=True)
    archived = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# AUDIT STORE (INSERT-ONLY)
# =============================================================================

class AuditEventDB(Base):
    """
    Immutable record of every state-relevant occurrence.
    References notices by id only; rows are owned by the audit store.
    """
    __tablename__ = "audit_events"

    id = Column(String(36), primary_key=True)  # UUID
    notice_id = Column(String(36), nullable=True, index=True)
    subject_type = Column(String(50), nullable=False, default="notice")
    subject_id = Column(String(36), nullable=True, index=True)

    event_type = Column(String(50), nullable=False, index=True)
    actor = Column(SQLEnum(ActorType), nullable=False)
    description = Column(Text, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)

    # SHA-256 of the artifact this event produced, if any
    content_hash = Column(String(64), nullable=True)
    # SHA-256 over this row's own canonical payload
    row_hash = Column(String(64), nullable=False)

    # Event Metadata (renamed from 'metadata' which is reserved in SQLAlchemy)
    event_metadata = Column(JSON, nullable=True)

    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class ExportRecordDB(Base):
    """One row per generated evidence package."""
    __tablename__ = "export_records"

    id = Column(String(36), primary_key=True)  # UUID
    notice_id = Column(String(36), ForeignKey("notices.id", ondelete="CASCADE"), nullable=False, index=True)
    scope = Column(SQLEnum(ExportScope), nullable=False)
    requested_by = Column(String(36), nullable=True)
    requested_for = Column(String(255), nullable=True)  # court, expert, counsel
    reason = Column(Text, nullable=True)
    package_hash = Column(String(64), nullable=False, index=True)
    size_bytes = Column(Integer, nullable=False)
    storage_key = Column(String(500), nullable=True)
    contents = Column(JSON, nullable=True)
    missing_artifacts = Column(JSON, nullable=True)
    manifest = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class VerificationAttemptDB(Base):
    """Public digest verification attempt."""
    __tablename__ = "verification_attempts"

    id = Column(String(36), primary_key=True)  # UUID
    digest = Column(String(128), nullable=False)
    found = Column(Boolean, nullable=False)
    match_count = Column(Integer, default=0)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


@event.listens_for(AuditEventDB, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ValueError("audit_events rows are insert-only")


@event.listens_for(AuditEventDB, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ValueError("audit_events rows are insert-only")
