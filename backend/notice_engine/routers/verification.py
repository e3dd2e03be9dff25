"""
Public Verification API Routes

Unauthenticated digest lookup for courts, experts and counsel.
"""
from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel, Field

from ..dependencies import Origin, get_origin, get_public_verifier
from ..services.verification import PublicVerifier


router = APIRouter(prefix="/verify", tags=["verification"])


class VerifyDigestRequest(BaseModel):
    digest: str = Field(..., description="SHA-256 hex digest to look up")


@router.post("", response_model=dict)
async def verify_digest(
    request: VerifyDigestRequest,
    origin: Origin = Depends(get_origin),
    verifier: PublicVerifier = Depends(get_public_verifier),
):
    """Returns {found, matches: [{kind, id, created_at}]}."""
    return verifier.verify(request.digest, ip_address=origin.ip_address, user_agent=origin.user_agent)


@router.post("/file", response_model=dict)
async def verify_file(
    file: UploadFile = File(...),
    origin: Origin = Depends(get_origin),
    verifier: PublicVerifier = Depends(get_public_verifier),
):
    """Hash the uploaded file and look the digest up."""
    return verifier.verify_file(await file.read(), ip_address=origin.ip_address, user_agent=origin.user_agent)
