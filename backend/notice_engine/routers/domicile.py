"""
Electronic Domicile API Routes

Employer side issues the agreement link and records paper signatures;
the employee signs at /convenio/{token} with identifier plus SMS code.
No notice is delivered electronically before the agreement is signed.
Handlers are plain functions (SMS and blob store calls block).
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_employer
from ..database import get_db
from ..dependencies import Origin, get_domicile_service, get_origin
from ..errors import NotFound
from ..models.db_models import DomicileAgreementDB, EmployeeDB, EmployerDB
from ..services.notices import DomicileService


router = APIRouter(tags=["domicile"])


class DomicileCodeRequest(BaseModel):
    identifier: str = Field(..., description="CUIL or employee number (legajo)")


class SignDomicileRequest(BaseModel):
    code: str = Field(..., description="6-digit code received by SMS")
    email: Optional[str] = Field(None, description="Email constituted as electronic domicile")
    phone: Optional[str] = Field(None, description="Phone constituted as electronic domicile")


def _agreement_summary(agreement: DomicileAgreementDB) -> dict:
    return {
        "id": agreement.id,
        "employee_id": agreement.employee_id,
        "state": agreement.state.value,
        "version": agreement.agreement_version,
        "expires_at": agreement.token_expires_at.isoformat(),
        "signed_at": agreement.signed_at.isoformat() if agreement.signed_at else None,
        "signature_hash": agreement.signature_hash,
    }


def _employee_for(db: Session, employee_id: str, employer: EmployerDB) -> EmployeeDB:
    employee = db.query(EmployeeDB).filter(
        EmployeeDB.id == employee_id,
        EmployeeDB.employer_id == employer.id,
    ).first()
    if employee is None:
        raise NotFound("Employee not found")
    return employee


# =============================================================================
# EMPLOYER
# =============================================================================

@router.post("/employees/{employee_id}/domicile", response_model=dict, status_code=201)
def create_agreement(
    employee_id: str,
    db: Session = Depends(get_db),
    service: DomicileService = Depends(get_domicile_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    agreement = service.create(_employee_for(db, employee_id, employer))
    return {**_agreement_summary(agreement), "link": service.link(agreement)}


@router.get("/employees/{employee_id}/domicile", response_model=dict)
def get_agreement(
    employee_id: str,
    db: Session = Depends(get_db),
    employer: EmployerDB = Depends(get_current_employer),
):
    employee = _employee_for(db, employee_id, employer)
    if employee.domicile_agreement is None:
        raise NotFound("No agreement issued for this employee")
    return _agreement_summary(employee.domicile_agreement)


@router.post("/employees/{employee_id}/domicile/paper", response_model=dict)
def record_paper_signature(
    employee_id: str,
    scan: UploadFile = File(..., description="Scan of the signed paper agreement"),
    db: Session = Depends(get_db),
    service: DomicileService = Depends(get_domicile_service),
    employer: EmployerDB = Depends(get_current_employer),
):
    agreement = service.record_paper_signature(
        _employee_for(db, employee_id, employer),
        scan.file.read(),
        filename=scan.filename or "convenio.pdf",
        employer_id=employer.id,
    )
    return _agreement_summary(agreement)


# =============================================================================
# EMPLOYEE (LINK BASED)
# =============================================================================

@router.get("/convenio/{token}", response_model=dict)
def view_agreement(token: str, service: DomicileService = Depends(get_domicile_service)):
    return service.view(token)


@router.post("/convenio/{token}/code", response_model=dict)
def request_signing_code(
    token: str,
    request: DomicileCodeRequest,
    origin: Origin = Depends(get_origin),
    service: DomicileService = Depends(get_domicile_service),
):
    return service.request_code(
        token, request.identifier, ip_address=origin.ip_address, user_agent=origin.user_agent
    )


@router.post("/convenio/{token}/sign", response_model=dict)
def sign_agreement(
    token: str,
    request: SignDomicileRequest,
    origin: Origin = Depends(get_origin),
    service: DomicileService = Depends(get_domicile_service),
):
    agreement = service.sign_digital(
        token,
        request.code,
        email=request.email,
        phone=request.phone,
        ip_address=origin.ip_address,
        user_agent=origin.user_agent,
    )
    return _agreement_summary(agreement)
