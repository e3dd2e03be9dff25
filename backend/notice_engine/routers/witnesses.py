"""
Witness API Routes (witness, link based)

/testigo/{token}: view the incident, validate identity, sign or decline.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..dependencies import Origin, get_origin, get_witness_service
from ..services.evidence import WitnessService


router = APIRouter(prefix="/testigo/{token}", tags=["witnesses"])


class ValidateWitnessRequest(BaseModel):
    national_id: str = Field(..., description="DNI")


class SignDeclarationRequest(BaseModel):
    statement: str = Field(..., description="What the witness saw or heard")
    present_at_incident: bool = Field(..., description="Witness was present when it happened")


@router.get("", response_model=dict)
async def view_invitation(token: str, service: WitnessService = Depends(get_witness_service)):
    return service.view(token)


@router.post("/validate", response_model=dict)
async def validate_witness(
    token: str,
    request: ValidateWitnessRequest,
    origin: Origin = Depends(get_origin),
    service: WitnessService = Depends(get_witness_service),
):
    witness = service.validate(
        token, request.national_id, ip_address=origin.ip_address, user_agent=origin.user_agent
    )
    return {"state": witness.state.value}


@router.post("/sign", response_model=dict)
async def sign_declaration(
    token: str,
    request: SignDeclarationRequest,
    origin: Origin = Depends(get_origin),
    service: WitnessService = Depends(get_witness_service),
):
    witness = service.sign(
        token,
        request.statement,
        request.present_at_incident,
        ip_address=origin.ip_address,
        user_agent=origin.user_agent,
    )
    return {
        "state": witness.state.value,
        "signature_hash": witness.signature_hash,
        "signed_at": witness.signed_at.isoformat(),
    }


@router.post("/decline", response_model=dict)
async def decline(
    token: str,
    origin: Origin = Depends(get_origin),
    service: WitnessService = Depends(get_witness_service),
):
    witness = service.decline(token, ip_address=origin.ip_address, user_agent=origin.user_agent)
    return {"state": witness.state.value}
