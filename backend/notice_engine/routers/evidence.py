"""
Evidence API Routes (employer)

Witnesses, multimedia evidence and court-ready export packages for a
notice. Exports return the ZIP archive with its whole-package SHA-256 in
the X-Package-SHA256 header. Handlers are plain functions (blob store and
delivery calls block).
"""
import json
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ..auth import get_current_employer
from ..dependencies import (
    Origin, get_evidence_service, get_notice_service, get_origin, get_package_builder,
    get_witness_service,
)
from ..errors import NotFound, ValidationFailed
from ..models.db_models import (
    DeliveryChannel, EmployerDB, EvidenceItemDB, EvidenceKind, ExportRecordDB, ExportScope,
    WitnessDeclarationDB, WitnessRelation,
)
from ..services.evidence import EvidenceService, PackageBuilder, WitnessService
from ..services.notices import NoticeService


router = APIRouter(prefix="/notices", tags=["evidence"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class AddWitnessRequest(BaseModel):
    full_name: str = Field(..., description="Witness full name")
    relationship: WitnessRelation = Field(default=WitnessRelation.EMPLOYEE, description="Relation to the employer")
    national_id: Optional[str] = Field(None, description="DNI, checked when the witness opens the link")
    position: Optional[str] = Field(None, description="Job title")
    contact: Optional[str] = Field(None, description="Email or phone for the invitation")


class InviteWitnessRequest(BaseModel):
    channel: DeliveryChannel = Field(..., description="email, sms or whatsapp")


class ExportRequest(BaseModel):
    """Request an evidence package."""
    scope: ExportScope = Field(default=ExportScope.FULL, description="full, technical, chain-of-custody or timeline-only")
    requested_for: Optional[str] = Field(None, description="Court, expert or counsel the package is for")
    reason: Optional[str] = Field(None, description="Why the package is requested")


# =============================================================================
# WITNESSES
# =============================================================================

@router.post("/{notice_id}/witnesses", response_model=dict, status_code=201)
def add_witness(
    notice_id: str,
    request: AddWitnessRequest,
    notices: NoticeService = Depends(get_notice_service),
    witnesses: WitnessService = Depends(get_witness_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = notices.get_for_employer(notice_id, employer.id)
    witness = witnesses.add(
        notice,
        full_name=request.full_name,
        relationship=request.relationship,
        national_id=request.national_id,
        position=request.position,
        contact=request.contact,
    )
    return {**WitnessService.summary(witness), "link": witnesses.link(witness)}


@router.get("/{notice_id}/witnesses", response_model=list)
def list_witnesses(
    notice_id: str,
    notices: NoticeService = Depends(get_notice_service),
    witnesses: WitnessService = Depends(get_witness_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = notices.get_for_employer(notice_id, employer.id)
    return [WitnessService.summary(w) for w in witnesses.for_notice(notice.id)]


@router.post("/{notice_id}/witnesses/{witness_id}/invite", response_model=dict)
def invite_witness(
    notice_id: str,
    witness_id: str,
    request: InviteWitnessRequest,
    notices: NoticeService = Depends(get_notice_service),
    witnesses: WitnessService = Depends(get_witness_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = notices.get_for_employer(notice_id, employer.id)
    witness = notices.db.query(WitnessDeclarationDB).filter(
        WitnessDeclarationDB.id == witness_id,
        WitnessDeclarationDB.notice_id == notice.id,
    ).first()
    if witness is None:
        raise NotFound("Witness not found")
    witness = witnesses.invite(witness, request.channel)
    return WitnessService.summary(witness)


# =============================================================================
# EVIDENCE
# =============================================================================

@router.post("/{notice_id}/evidence", response_model=dict, status_code=201)
def upload_evidence(
    notice_id: str,
    file: UploadFile = File(...),
    declared_hash: str = Form(..., description="SHA-256 computed by the client before upload"),
    kind: Optional[EvidenceKind] = Form(None),
    description: Optional[str] = Form(None),
    is_principal: bool = Form(False),
    capture_metadata: Optional[str] = Form(None, description="JSON object extracted on the client"),
    origin: Origin = Depends(get_origin),
    notices: NoticeService = Depends(get_notice_service),
    evidence: EvidenceService = Depends(get_evidence_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    """
    Upload one evidence file. The server recomputes the SHA-256 over the
    received bytes; any difference from declared_hash is rejected.
    """
    notice = notices.get_for_employer(notice_id, employer.id)
    metadata = None
    if capture_metadata:
        try:
            metadata = json.loads(capture_metadata)
        except json.JSONDecodeError:
            raise ValidationFailed("capture_metadata must be a JSON object")
        if not isinstance(metadata, dict):
            raise ValidationFailed("capture_metadata must be a JSON object")

    item = evidence.ingest(
        notice,
        filename=file.filename or "archivo",
        data=file.file.read(),
        declared_hash=declared_hash,
        kind=kind,
        mime_type=file.content_type,
        description=description,
        is_principal=is_principal,
        capture_metadata=metadata,
        ip_address=origin.ip_address,
    )
    return EvidenceService.summary(item)


@router.get("/{notice_id}/evidence", response_model=list)
def list_evidence(
    notice_id: str,
    notices: NoticeService = Depends(get_notice_service),
    evidence: EvidenceService = Depends(get_evidence_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = notices.get_for_employer(notice_id, employer.id)
    return [EvidenceService.summary(e) for e in evidence.for_notice(notice.id)]


@router.post("/{notice_id}/evidence/{evidence_id}/verify", response_model=dict)
def verify_evidence(
    notice_id: str,
    evidence_id: str,
    notices: NoticeService = Depends(get_notice_service),
    evidence: EvidenceService = Depends(get_evidence_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    """Re-hash the stored file. A mismatch answers 409 INTEGRITY_MISMATCH."""
    notice = notices.get_for_employer(notice_id, employer.id)
    item = notices.db.query(EvidenceItemDB).filter(
        EvidenceItemDB.id == evidence_id,
        EvidenceItemDB.notice_id == notice.id,
    ).first()
    if item is None:
        raise NotFound("Evidence not found")
    return evidence.verify_item(item)


# =============================================================================
# EXPORT
# =============================================================================

@router.post("/{notice_id}/export")
def export_package(
    notice_id: str,
    request: ExportRequest,
    origin: Origin = Depends(get_origin),
    notices: NoticeService = Depends(get_notice_service),
    builder: PackageBuilder = Depends(get_package_builder),
    employer: EmployerDB = Depends(get_current_employer),
):
    """
    Build an evidence package.

    Missing artifacts are listed inside the manifest; the export itself
    still succeeds.
    """
    notice = notices.get_for_employer(notice_id, employer.id)
    result = builder.build(
        notice,
        scope=request.scope,
        requested_by=employer.id,
        requested_for=request.requested_for,
        reason=request.reason,
        ip_address=origin.ip_address,
    )
    return Response(
        content=result.archive,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{result.filename}"',
            "X-Package-SHA256": result.package_hash,
            "X-Export-Id": result.record.id,
            "X-Missing-Artifacts": str(len(result.manifest["missing_artifacts"])),
        },
    )


@router.get("/{notice_id}/exports", response_model=list)
def list_exports(
    notice_id: str,
    notices: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = notices.get_for_employer(notice_id, employer.id)
    records = (
        notices.db.query(ExportRecordDB)
        .filter(ExportRecordDB.notice_id == notice.id)
        .order_by(ExportRecordDB.created_at.desc())
        .all()
    )
    return [
        {
            "id": r.id,
            "scope": r.scope.value,
            "requested_for": r.requested_for,
            "reason": r.reason,
            "package_hash": r.package_hash,
            "size_bytes": r.size_bytes,
            "missing_artifacts": r.missing_artifacts or [],
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in records
    ]
