"""
Descargo API Routes (employee, link based)

The right-of-reply opens when a notice is read and closes after a fixed
window. Exercising it requires a fresh identifier re-check.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..dependencies import Origin, get_descargo_service, get_origin
from ..services.descargo import DescargoService


router = APIRouter(prefix="/descargo/{token}", tags=["descargo"])


class IdentityRecheckRequest(BaseModel):
    identifier: str = Field(..., description="CUIL or employee number (legajo)")


class DraftRequest(BaseModel):
    text: str = Field(..., description="Draft text, saved but not binding")


class ExerciseRequest(BaseModel):
    text: str = Field(..., description="Reply text")
    sworn_statement: bool = Field(..., description="Employee declares the statement true")


@router.get("", response_model=dict)
async def view_descargo(token: str, service: DescargoService = Depends(get_descargo_service)):
    return service.view(token)


@router.post("/identity", response_model=dict)
async def recheck_identity(
    token: str,
    request: IdentityRecheckRequest,
    origin: Origin = Depends(get_origin),
    service: DescargoService = Depends(get_descargo_service),
):
    return service.recheck_identity(
        token, request.identifier, ip_address=origin.ip_address, user_agent=origin.user_agent
    )


@router.put("/draft", response_model=dict)
async def save_draft(
    token: str,
    request: DraftRequest,
    service: DescargoService = Depends(get_descargo_service),
):
    return service.save_draft(token, request.text)


@router.post("/exercise", response_model=dict)
async def exercise(
    token: str,
    request: ExerciseRequest,
    origin: Origin = Depends(get_origin),
    service: DescargoService = Depends(get_descargo_service),
):
    descargo = service.exercise(
        token,
        request.text,
        request.sworn_statement,
        ip_address=origin.ip_address,
        user_agent=origin.user_agent,
    )
    return service.summary(descargo, include_annotations=False)


@router.post("/decline", response_model=dict)
async def decline(
    token: str,
    origin: Origin = Depends(get_origin),
    service: DescargoService = Depends(get_descargo_service),
):
    descargo = service.decline(token, ip_address=origin.ip_address, user_agent=origin.user_agent)
    return service.summary(descargo, include_annotations=False)
