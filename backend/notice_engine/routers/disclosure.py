"""
Disclosure API Routes (employee, link based)

Everything behind /ver/{token}: the identity gate steps, the gated
notice content, engagement heartbeats, the acknowledgment challenge and
the employee's dispute. No account; the token plus the gate is the
authentication. Every gate step answers with the next required step.
Handlers are plain functions (SMS and biometric calls block).
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..dependencies import Origin, get_notice_service, get_origin
from ..services.notices import NoticeService


router = APIRouter(prefix="/ver/{token}", tags=["disclosure"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class IdentifierRequest(BaseModel):
    identifier: str = Field(..., description="CUIL or employee number (legajo)")


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., description="6-digit code received by SMS")


class BiometricResultRequest(BaseModel):
    liveness_session_id: str = Field(..., description="Session returned by biometric/start")


class HeartbeatRequest(BaseModel):
    """Client reading telemetry. Lower values than stored are ignored."""
    scroll_pct: float = Field(..., ge=0, le=100, description="Deepest scroll position reached, percent")
    dwell_seconds: float = Field(..., ge=0, description="Visible reading time accumulated by the client")
    visible: bool = Field(default=True, description="False while the tab is hidden")
    sequence: Optional[int] = Field(None, description="Client counter, stale heartbeats are dropped")


class AcknowledgeRequest(BaseModel):
    challenge_field: str = Field(..., description="Field the question was asked about")
    answer: str = Field(..., description="Free-text answer")
    attempt_number: Optional[int] = Field(None, description="Client-side attempt counter")


class DisputeRequest(BaseModel):
    reason: str = Field(..., description="Why the employee contests the notice")


# =============================================================================
# GATE
# =============================================================================

@router.get("", response_model=dict)
def open_link(
    token: str,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
):
    """Open the link. Returns the gate status so a reload resumes where it stopped."""
    return service.open_link(token, ip_address=origin.ip_address, user_agent=origin.user_agent)


@router.post("/identifier", response_model=dict)
def submit_identifier(
    token: str,
    request: IdentifierRequest,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
):
    return service.gate.submit_identifier(
        token, request.identifier, ip_address=origin.ip_address, user_agent=origin.user_agent
    )


@router.post("/code/request", response_model=dict)
def request_code(
    token: str,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
):
    return service.gate.request_code(token, ip_address=origin.ip_address, user_agent=origin.user_agent)


@router.post("/code/verify", response_model=dict)
def verify_code(
    token: str,
    request: VerifyCodeRequest,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
):
    return service.gate.verify_code(
        token, request.code, ip_address=origin.ip_address, user_agent=origin.user_agent
    )


@router.post("/biometric/start", response_model=dict)
def start_biometric(
    token: str,
    service: NoticeService = Depends(get_notice_service),
):
    return service.gate.start_biometric(token)


@router.post("/biometric/result", response_model=dict)
def submit_biometric_result(
    token: str,
    request: BiometricResultRequest,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
):
    return service.gate.submit_biometric_result(
        token, request.liveness_session_id, ip_address=origin.ip_address, user_agent=origin.user_agent
    )


@router.post("/biometric/skip", response_model=dict)
def skip_biometric(
    token: str,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
):
    return service.gate.skip_biometric(token, ip_address=origin.ip_address, user_agent=origin.user_agent)


# =============================================================================
# CONTENT, TRACKING AND ACKNOWLEDGMENT (GRANTED ONLY)
# =============================================================================

@router.get("/content", response_model=dict)
def get_content(
    token: str,
    service: NoticeService = Depends(get_notice_service),
):
    return service.get_disclosure(token)


@router.post("/heartbeat", response_model=dict)
def heartbeat(
    token: str,
    request: HeartbeatRequest,
    service: NoticeService = Depends(get_notice_service),
):
    return service.heartbeat(
        token, request.scroll_pct, request.dwell_seconds, visible=request.visible, sequence=request.sequence
    )


@router.post("/acknowledge", response_model=dict)
def acknowledge(
    token: str,
    request: AcknowledgeRequest,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
):
    """
    Answer the knowledge challenge. A wrong answer returns
    confirmed=false with the remaining attempts.
    """
    return service.confirm_read(
        token,
        request.challenge_field,
        request.answer,
        attempt_number=request.attempt_number,
        ip_address=origin.ip_address,
        user_agent=origin.user_agent,
    )


@router.post("/dispute", response_model=dict)
def dispute(
    token: str,
    request: DisputeRequest,
    origin: Origin = Depends(get_origin),
    service: NoticeService = Depends(get_notice_service),
):
    notice = service.dispute_by_token(
        token, request.reason, ip_address=origin.ip_address, user_agent=origin.user_agent
    )
    return {
        "state": notice.state.value,
        "disputed_at": notice.disputed_at.isoformat() if notice.disputed_at else None,
    }
