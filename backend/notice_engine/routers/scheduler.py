"""
Scheduler API Routes

Internal endpoints for system-automatic tasks: firmness, reminders and
employer alerts, notary anchor re-verification, link expiries and the
paper-notice fallback report.
All require X-Internal-Key.
"""
from fastapi import APIRouter, Depends, Header, HTTPException

from ..config import INTERNAL_API_KEY
from ..dependencies import (
    get_descargo_service, get_domicile_service, get_identity_gate,
    get_notary_reverifier, get_notice_scheduler, get_witness_service,
)
from ..services.descargo import DescargoService
from ..services.evidence import WitnessService
from ..services.identity import IdentityGate
from ..services.integrity.stamping import NotaryReverifier
from ..services.notices import DomicileService, NoticeScheduler


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/firmness-check", response_model=dict)
async def run_firmness_check(
    scheduler: NoticeScheduler = Depends(get_notice_scheduler),
    _: bool = Depends(verify_internal_key),
):
    """
    Advance READ notices past their due date to FIRM.

    System-automatic - no user confirmation required.
    """
    return scheduler.run_firmness_check()


@router.post("/reminders", response_model=dict)
def run_reminders(
    scheduler: NoticeScheduler = Depends(get_notice_scheduler),
    _: bool = Depends(verify_internal_key),
):
    """
    Unopened-notice SMS reminder and the staged employer alerts.

    Sends through the delivery gateway, so it runs in the threadpool.
    """
    return scheduler.run_reminders()


@router.post("/anchor-reverify", response_model=dict)
def run_anchor_reverification(
    reverifier: NotaryReverifier = Depends(get_notary_reverifier),
    _: bool = Depends(verify_internal_key),
):
    """Re-check pending notary anchors."""
    return reverifier.run_pending_reverification()


@router.post("/descargo-expiry", response_model=dict)
async def run_descargo_expiry(
    service: DescargoService = Depends(get_descargo_service),
    _: bool = Depends(verify_internal_key),
):
    return service.expire_lapsed()


@router.post("/witness-expiry", response_model=dict)
async def run_witness_expiry(
    service: WitnessService = Depends(get_witness_service),
    _: bool = Depends(verify_internal_key),
):
    return service.expire_lapsed()


@router.post("/domicile-expiry", response_model=dict)
async def run_domicile_expiry(
    service: DomicileService = Depends(get_domicile_service),
    _: bool = Depends(verify_internal_key),
):
    return service.expire_lapsed()


@router.post("/gate-expiry", response_model=dict)
async def run_gate_expiry(
    gate: IdentityGate = Depends(get_identity_gate),
    _: bool = Depends(verify_internal_key),
):
    return gate.expire_stale_sessions()


# =============================================================================
# SCHEDULER STATUS ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/physical-fallback-report", response_model=dict)
async def get_physical_fallback_report(
    scheduler: NoticeScheduler = Depends(get_notice_scheduler),
    _: bool = Depends(verify_internal_key),
):
    """SENT notices unopened past the grace period that need a paper notice."""
    return scheduler.physical_fallback_report()
