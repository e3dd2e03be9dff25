"""
Notice Engine - Provider and Service Wiring

FastAPI dependencies that build the external-provider adapters once per
process and the services once per request. Tests swap any provider via
app.dependency_overrides.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import boto3
import httpx
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .config import (
    AWS_REGION, DELIVERY_GATEWAY_TOKEN, DELIVERY_GATEWAY_URL, HTTP_TIMEOUT_SECONDS,
    S3_BUCKET, S3_ENDPOINT_URL,
)
from .database import get_db
from .services.delivery import DeliveryProvider, HttpDeliveryGateway
from .services.descargo import DescargoService
from .services.evidence import EvidenceService, IncidentLog, PackageBuilder, WitnessService
from .services.identity import BiometricProvider, IdentityGate, RekognitionBiometricProvider
from .services.integrity import NotaryClient, TimeAuthorityClient
from .services.integrity.stamping import IntegrityService, NotaryReverifier
from .services.notices import DomicileService, NoticeScheduler, NoticeService
from .services.storage import BlobStore, S3BlobStore
from .services.verification import PublicVerifier


# =============================================================================
# REQUEST ORIGIN
# =============================================================================

@dataclass
class Origin:
    ip_address: Optional[str]
    user_agent: Optional[str]


def get_origin(request: Request) -> Origin:
    """Client IP (first X-Forwarded-For hop when behind a proxy) and user agent."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return Origin(ip_address=ip_address, user_agent=user_agent[:500] if user_agent else None)


# =============================================================================
# PROVIDERS (PROCESS-WIDE)
# =============================================================================

@lru_cache
def get_http_client() -> httpx.Client:
    return httpx.Client(timeout=HTTP_TIMEOUT_SECONDS, follow_redirects=True)


@lru_cache
def get_blob_store() -> BlobStore:
    client = boto3.client("s3", region_name=AWS_REGION, endpoint_url=S3_ENDPOINT_URL)
    return S3BlobStore(client, S3_BUCKET)


@lru_cache
def get_biometric_provider() -> BiometricProvider:
    return RekognitionBiometricProvider(boto3.client("rekognition", region_name=AWS_REGION))


def get_delivery_provider(http: httpx.Client = Depends(get_http_client)) -> Optional[DeliveryProvider]:
    if not DELIVERY_GATEWAY_URL:
        return None
    return HttpDeliveryGateway(http, DELIVERY_GATEWAY_URL, api_token=DELIVERY_GATEWAY_TOKEN)


def get_time_authority(http: httpx.Client = Depends(get_http_client)) -> TimeAuthorityClient:
    return TimeAuthorityClient(http)


def get_notary(http: httpx.Client = Depends(get_http_client)) -> NotaryClient:
    return NotaryClient(http)


# =============================================================================
# SERVICES (PER REQUEST)
# =============================================================================

def get_integrity_service(
    db: Session = Depends(get_db),
    time_authority: TimeAuthorityClient = Depends(get_time_authority),
    notary: NotaryClient = Depends(get_notary),
) -> IntegrityService:
    return IntegrityService(db, time_authority=time_authority, notary=notary)


def get_identity_gate(
    db: Session = Depends(get_db),
    delivery: Optional[DeliveryProvider] = Depends(get_delivery_provider),
    biometric: BiometricProvider = Depends(get_biometric_provider),
    blob_store: BlobStore = Depends(get_blob_store),
) -> IdentityGate:
    return IdentityGate(db, sms_provider=delivery, biometric_provider=biometric, blob_store=blob_store)


def get_notice_service(
    db: Session = Depends(get_db),
    delivery: Optional[DeliveryProvider] = Depends(get_delivery_provider),
    integrity: IntegrityService = Depends(get_integrity_service),
    gate: IdentityGate = Depends(get_identity_gate),
    blob_store: BlobStore = Depends(get_blob_store),
) -> NoticeService:
    return NoticeService(db, delivery=delivery, integrity=integrity, gate=gate, blob_store=blob_store)


def get_domicile_service(
    db: Session = Depends(get_db),
    delivery: Optional[DeliveryProvider] = Depends(get_delivery_provider),
    blob_store: BlobStore = Depends(get_blob_store),
) -> DomicileService:
    return DomicileService(db, sms_provider=delivery, blob_store=blob_store)


def get_descargo_service(db: Session = Depends(get_db)) -> DescargoService:
    return DescargoService(db)


def get_witness_service(
    db: Session = Depends(get_db),
    delivery: Optional[DeliveryProvider] = Depends(get_delivery_provider),
) -> WitnessService:
    return WitnessService(db, delivery=delivery)


def get_evidence_service(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
) -> EvidenceService:
    return EvidenceService(db, blob_store=blob_store)


def get_incident_log(db: Session = Depends(get_db)) -> IncidentLog:
    return IncidentLog(db)


def get_package_builder(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
) -> PackageBuilder:
    return PackageBuilder(db, blob_store=blob_store)


def get_public_verifier(db: Session = Depends(get_db)) -> PublicVerifier:
    return PublicVerifier(db)


def get_notice_scheduler(
    db: Session = Depends(get_db),
    delivery: Optional[DeliveryProvider] = Depends(get_delivery_provider),
) -> NoticeScheduler:
    return NoticeScheduler(db, delivery=delivery)


def get_notary_reverifier(
    db: Session = Depends(get_db),
    integrity: IntegrityService = Depends(get_integrity_service),
) -> NotaryReverifier:
    return NotaryReverifier(db, integrity)
