"""
Notice API Routes (employer)

Create, deliver and follow notices; record physical fallbacks and
out-of-band disputes; intervene on locked gates and frozen challenges;
annotate descargos; check integrity and the notary anchor.

Handlers are plain functions: they call the time authority, the notary,
the delivery gateway and the blob store synchronously, so FastAPI runs
them in its threadpool.
"""
import base64
import binascii
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, Field

from ..auth import get_current_employer
from ..dependencies import (
    Origin, get_descargo_service, get_integrity_service, get_notice_service, get_origin,
)
from ..errors import NotFound, ValidationFailed
from ..models.db_models import ActorType, DeliveryChannel, EmployerDB, NoticeCategory, Severity
from ..services.descargo import DescargoService
from ..services.evidence import collect_timeline
from ..services.integrity.stamping import IntegrityService
from ..services.notices import NoticeService


router = APIRouter(prefix="/notices", tags=["notices"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateNoticeRequest(BaseModel):
    """Request to create a notice. Content is hashed and stamped immediately."""
    employee_id: str = Field(..., description="Recipient employee id")
    category: NoticeCategory = Field(..., description="warning, suspension or pre_dismissal_warning")
    severity: Severity = Field(default=Severity.MODERATE, description="minor, moderate or severe")
    reason: str = Field(..., description="Short reason (motivo)")
    facts: str = Field(..., description="Full description of the facts")
    incident_date: Optional[date] = Field(None, description="Date of the incident")
    incident_time: Optional[str] = Field(None, description="HH:MM")
    incident_place: Optional[str] = Field(None, description="Where it happened")
    suspension_days: Optional[int] = Field(None, ge=1, description="Suspension length, required for suspensions")
    suspension_start: Optional[date] = Field(None, description="First day of suspension")
    suspension_end: Optional[date] = Field(None, description="Last day of suspension")
    document_base64: Optional[str] = Field(None, description="Rendered PDF, base64")


class SendNoticeRequest(BaseModel):
    channels: Optional[List[DeliveryChannel]] = Field(None, description="Defaults to every channel")


class RecordDisputeRequest(BaseModel):
    reason: str = Field(..., description="Dispute received out of band (e.g. carta documento)")


class AnnotateDescargoRequest(BaseModel):
    contains_admission: Optional[bool] = Field(None, description="Employee admits the facts")
    contains_contradiction: Optional[bool] = Field(None, description="Reply contradicts other evidence")
    notes: Optional[str] = Field(None, description="Employer notes")


# =============================================================================
# NOTICE LIFECYCLE
# =============================================================================

@router.post("", response_model=dict, status_code=201)
def create_notice(
    request: CreateNoticeRequest,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    """
    Create a notice.

    The content hash is computed over the content plus origin IP and
    generation time, then stamped by the time authority and submitted
    to the notary. Stamping failures never block creation.
    """
    document = None
    if request.document_base64:
        try:
            document = base64.b64decode(request.document_base64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationFailed("document_base64 is not valid base64")

    notice = service.create_notice(
        employer_id=employer.id,
        employee_id=request.employee_id,
        category=request.category,
        reason=request.reason,
        facts=request.facts,
        severity=request.severity,
        incident_date=request.incident_date,
        incident_time=request.incident_time,
        incident_place=request.incident_place,
        suspension_days=request.suspension_days,
        suspension_start=request.suspension_start,
        suspension_end=request.suspension_end,
        document=document,
        origin_ip=origin.ip_address,
    )
    return service.summary(notice)


@router.get("", response_model=list)
def list_notices(
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    return service.list_for_employer(employer.id)


@router.get("/{notice_id}", response_model=dict)
def get_notice(
    notice_id: str,
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    return service.summary(notice)


@router.post("/{notice_id}/send", response_model=dict)
def send_notice(
    notice_id: str,
    request: SendNoticeRequest,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    """
    Deliver or resend. The due date is fixed at the first delivery and
    never moves on resends.
    """
    notice = service.get_for_employer(notice_id, employer.id)
    return service.send(notice, channels=request.channels, ip_address=origin.ip_address)


@router.post("/{notice_id}/physical-notice", response_model=dict)
def record_physical_notice(
    notice_id: str,
    method: str = Form(..., description="carta documento, telegrama, in-person"),
    sent_at: Optional[datetime] = Form(None),
    receipt: Optional[UploadFile] = File(None),
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    receipt_bytes = receipt.file.read() if receipt is not None else None
    notice = service.record_physical_notice(
        notice,
        method=method,
        sent_at=sent_at,
        receipt=receipt_bytes,
        receipt_filename=receipt.filename if receipt is not None else None,
    )
    return service.summary(notice)


@router.post("/{notice_id}/dispute", response_model=dict)
def record_dispute(
    notice_id: str,
    request: RecordDisputeRequest,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    """Record a dispute the employee raised outside the platform."""
    notice = service.get_for_employer(notice_id, employer.id)
    notice = service.dispute(notice, request.reason, actor=ActorType.EMPLOYER, ip_address=origin.ip_address)
    return service.summary(notice)


# =============================================================================
# EMPLOYER INTERVENTIONS
# =============================================================================

@router.post("/{notice_id}/reset-lock", response_model=dict)
def reset_identity_lock(
    notice_id: str,
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    return service.gate.reset_lock(notice, employer.id)


@router.post("/{notice_id}/unfreeze-challenge", response_model=dict)
def unfreeze_challenge(
    notice_id: str,
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    notice = service.unfreeze_challenge(notice, employer.id)
    return service.summary(notice)


@router.get("/{notice_id}/descargo", response_model=dict)
def get_descargo(
    notice_id: str,
    service: NoticeService = Depends(get_notice_service),
    descargos: DescargoService = Depends(get_descargo_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    if notice.descargo is None:
        raise NotFound("No descargo for this notice")
    return descargos.summary(notice.descargo, include_annotations=True)


@router.put("/{notice_id}/descargo/annotations", response_model=dict)
def annotate_descargo(
    notice_id: str,
    request: AnnotateDescargoRequest,
    service: NoticeService = Depends(get_notice_service),
    descargos: DescargoService = Depends(get_descargo_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    descargo = descargos.annotate(
        notice,
        employer.id,
        contains_admission=request.contains_admission,
        contains_contradiction=request.contains_contradiction,
        notes=request.notes,
    )
    return descargos.summary(descargo, include_annotations=True)


@router.post("/{notice_id}/descargo/reset-lock", response_model=dict)
def reset_descargo_lock(
    notice_id: str,
    service: NoticeService = Depends(get_notice_service),
    descargos: DescargoService = Depends(get_descargo_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    return descargos.reset_identity_lock(notice, employer.id)


# =============================================================================
# INTEGRITY AND TIMELINE
# =============================================================================

@router.get("/{notice_id}/integrity", response_model=dict)
def check_integrity(
    notice_id: str,
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    """Recompute the content hash. A mismatch answers 409 INTEGRITY_MISMATCH."""
    notice = service.get_for_employer(notice_id, employer.id)
    return service.check_integrity(notice)


@router.post("/{notice_id}/anchor/recheck", response_model=dict)
def recheck_anchor(
    notice_id: str,
    service: NoticeService = Depends(get_notice_service),
    integrity: IntegrityService = Depends(get_integrity_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    status = integrity.check_anchor(notice)
    service.db.commit()
    return {
        "notice_id": notice.id,
        "notary_anchor": status.value,
        "block_height": notice.anchor_block_height,
        "confirmed_at": notice.anchor_confirmed_at.isoformat() if notice.anchor_confirmed_at else None,
        "checks": notice.anchor_checks,
    }


@router.get("/{notice_id}/timeline", response_model=list)
def get_timeline(
    notice_id: str,
    service: NoticeService = Depends(get_notice_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    notice = service.get_for_employer(notice_id, employer.id)
    return [event.to_dict() for event in collect_timeline(service.db, notice)]
