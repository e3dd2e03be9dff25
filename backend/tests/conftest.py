"""
Shared fixtures for the Notice Engine test suite.

- In-memory SQLite session (StaticPool) with every table created
- Fakes for each injected provider: delivery/SMS, biometric, blob store,
  time authority and notary calendars (httpx.MockTransport)
- A NoticeFlow helper that walks a notice through delivery, the identity
  gate and read confirmation
- A FastAPI TestClient with get_db and provider dependencies overridden
"""
import os
import re
import sys
from datetime import date, datetime, timedelta
from itertools import count
from uuid import uuid4

os.environ.setdefault("DATABASE_URL", "sqlite://")

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from notice_engine.database import Base
from notice_engine.errors import ExternalProviderUnavailable
from notice_engine.models.db_models import (
    DeliveryChannel, EmployeeDB, EmployerDB, NoticeCategory,
)
from notice_engine.services.delivery import DeliveryReceipt
from notice_engine.services.identity import IdentityGate, LivenessResult
from notice_engine.services.integrity import NotaryClient, TimeAuthority, TimeAuthorityClient
from notice_engine.services.integrity.stamping import IntegrityService
from notice_engine.services.integrity.notary import BITCOIN_ATTESTATION_TAG
from notice_engine.services.notices import DomicileService, NoticeService
from notice_engine.services.storage import InMemoryBlobStore


NOW = datetime(2026, 1, 12, 9, 0, 0)

EMPLOYEE_CUIL = "20-12345678-9"
EMPLOYEE_NUMBER = "1001"

# TimeStampResp { PKIStatusInfo { status 0 }, token }
GRANTED_TSR = bytes.fromhex("300c3003020100") + b"\x04\x05token"
REJECTED_TSR = bytes.fromhex("300c3003020102") + b"\x04\x05token"

# Bitcoin attestation at block height 100
CONFIRMED_OTS = b"\x00" + BITCOIN_ATTESTATION_TAG + b"\x01\x64"

CORRECT_ANSWERS = {
    "sanction_type": "suspensión",
    "duration": "3 días",
    "incident_date": "10/01/2026",
}


# =============================================================================
# PROVIDER FAKES
# =============================================================================

class FakeDelivery:
    """Records every outbound message; channels listed in `failing` raise."""

    def __init__(self):
        self.sent = []
        self.failing = set()
        self._ids = count(1)

    def _deliver(self, channel, to, body, subject=None):
        if channel in self.failing:
            raise ExternalProviderUnavailable(channel.value, f"{channel.value} gateway down")
        message_id = f"msg-{next(self._ids)}"
        self.sent.append({"channel": channel, "to": to, "subject": subject, "body": body, "id": message_id})
        return DeliveryReceipt(channel=channel, message_id=message_id)

    def send_email(self, to, subject, body):
        return self._deliver(DeliveryChannel.EMAIL, to, body, subject=subject)

    def send_sms(self, to, body):
        return self._deliver(DeliveryChannel.SMS, to, body)

    def send_whatsapp(self, to, body):
        return self._deliver(DeliveryChannel.WHATSAPP, to, body)

    def last_code(self):
        """Six-digit code from the latest SMS that carried one."""
        for message in reversed(self.sent):
            if message["channel"] == DeliveryChannel.SMS and "codigo" in message["body"]:
                return re.search(r"\b(\d{6})\b", message["body"]).group(1)
        raise AssertionError("no code was sent")

    def by_channel(self, channel):
        return [m for m in self.sent if m["channel"] == channel]


class FakeBiometric:
    """Liveness always passes; face-match returns the configured similarity."""

    def __init__(self, similarity=99.0, liveness_status="SUCCEEDED", liveness_confidence=99.0):
        self.similarity = similarity
        self.liveness_status = liveness_status
        self.liveness_confidence = liveness_confidence
        self._ids = count(1)
        self.compared = []

    def create_liveness_session(self):
        return f"liveness-{next(self._ids)}"

    def get_liveness_result(self, session_id):
        return LivenessResult(
            session_id=session_id,
            status=self.liveness_status,
            confidence=self.liveness_confidence,
            reference_image=b"selfie-frame",
        )

    def compare_faces(self, source_image, target_image):
        self.compared.append((source_image, target_image))
        return self.similarity


class FakeTimeAuthorityServer:
    """Two RFC 3161 endpoints behind httpx.MockTransport."""

    PRIMARY = "tsa-primary.test"
    BACKUP = "tsa-backup.test"

    def __init__(self):
        self.down = set()
        self.rejecting = set()
        self.requests = []

    def handler(self, request):
        host = request.url.host
        self.requests.append(host)
        if host in self.down:
            raise httpx.ConnectError("connection refused", request=request)
        if host in self.rejecting:
            return httpx.Response(200, content=REJECTED_TSR)
        return httpx.Response(200, content=GRANTED_TSR)

    def client(self):
        return TimeAuthorityClient(
            httpx.Client(transport=httpx.MockTransport(self.handler)),
            authorities=[
                TimeAuthority(self.PRIMARY, f"https://{self.PRIMARY}/tsr"),
                TimeAuthority(self.BACKUP, f"https://{self.BACKUP}/tsr"),
            ],
            retry_attempts=1,
        )


class FakeNotaryServer:
    """OpenTimestamps calendar: pending receipts, confirmation on demand."""

    CALENDAR = "https://calendar.test"

    def __init__(self):
        self.down = False
        self.confirmed = set()

    def handler(self, request):
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        if request.method == "POST" and request.url.path == "/digest":
            return httpx.Response(200, content=b"\xf0\x10ots-pending-receipt")
        if request.method == "GET" and request.url.path.startswith("/timestamp/"):
            digest = request.url.path.rsplit("/", 1)[-1]
            if digest in self.confirmed:
                return httpx.Response(200, content=CONFIRMED_OTS)
            return httpx.Response(404)
        return httpx.Response(400)

    def client(self):
        return NotaryClient(
            httpx.Client(transport=httpx.MockTransport(self.handler)),
            calendars=[self.CALENDAR],
            retry_attempts=1,
        )


# =============================================================================
# FIXTURES: STORE AND PROVIDERS
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    from notice_engine.models import db_models  # noqa: F401  registers tables on Base
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def biometric():
    return FakeBiometric()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def tsa_server():
    return FakeTimeAuthorityServer()


@pytest.fixture
def notary_server():
    return FakeNotaryServer()


@pytest.fixture
def integrity(db, tsa_server, notary_server):
    return IntegrityService(db, time_authority=tsa_server.client(), notary=notary_server.client())


@pytest.fixture
def gate(db, delivery, biometric, blob_store):
    return IdentityGate(db, sms_provider=delivery, biometric_provider=biometric, blob_store=blob_store)


@pytest.fixture
def notice_service(db, delivery, integrity, gate, blob_store):
    return NoticeService(db, delivery=delivery, integrity=integrity, gate=gate, blob_store=blob_store)


# =============================================================================
# FIXTURES: PARTIES
# =============================================================================

@pytest.fixture
def employer(db):
    from notice_engine.auth import hash_password

    employer = EmployerDB(
        id=str(uuid4()),
        email="rrhh@acme-sa.com",
        password_hash=hash_password("securepassword123"),
        legal_name="Acme S.A.",
        tax_id="30-71234567-8",
    )
    db.add(employer)
    db.commit()
    return employer


@pytest.fixture
def unsigned_employee(db, employer):
    employee = EmployeeDB(
        id=str(uuid4()),
        employer_id=employer.id,
        full_name="Juan Pérez",
        tax_id=EMPLOYEE_CUIL,
        employee_number=EMPLOYEE_NUMBER,
        email="juan.perez@example.test",
        phone="+5491155550000",
    )
    db.add(employee)
    db.commit()
    return employee


@pytest.fixture
def employee(db, unsigned_employee, blob_store):
    """Employee whose electronic domicile agreement is signed on paper."""
    DomicileService(db, blob_store=blob_store).record_paper_signature(
        unsigned_employee, b"%PDF-1.4 signed convenio", now=NOW - timedelta(days=10)
    )
    return unsigned_employee


# =============================================================================
# FIXTURES: NOTICE FLOW
# =============================================================================

class NoticeFlow:
    """Walks a notice through its lifecycle with explicit clock values."""

    def __init__(self, service, delivery, employer, employee):
        self.service = service
        self.delivery = delivery
        self.employer = employer
        self.employee = employee

    def create(self, now=NOW, **overrides):
        fields = dict(
            employer_id=self.employer.id,
            employee_id=self.employee.id,
            category=NoticeCategory.SUSPENSION,
            reason="Inasistencia injustificada",
            facts="El trabajador no se presento a su turno ni aviso su ausencia.",
            incident_date=date(2026, 1, 10),
            incident_time="08:00",
            incident_place="Planta Pilar",
            suspension_days=3,
            suspension_start=date(2026, 1, 14),
            origin_ip="10.0.0.1",
            now=now,
        )
        fields.update(overrides)
        return self.service.create_notice(**fields)

    def send(self, notice, now=NOW, channels=None):
        return self.service.send(notice, channels=channels, ip_address="10.0.0.1", now=now)

    def grant(self, notice, now=NOW):
        """Identifier, code request and code verification."""
        token = notice.access_token
        self.service.gate.submit_identifier(token, EMPLOYEE_CUIL, ip_address="190.1.1.1", now=now)
        self.service.gate.request_code(token, ip_address="190.1.1.1", now=now)
        return self.service.gate.verify_code(token, self.delivery.last_code(), ip_address="190.1.1.1", now=now)

    def read(self, notice, now=NOW):
        """Open the content, meet both thresholds and answer the challenge."""
        token = notice.access_token
        disclosure = self.service.get_disclosure(token, now=now)
        later = now + timedelta(seconds=60)
        self.service.heartbeat(token, 100.0, 60.0, visible=True, sequence=1, now=later)
        field = disclosure["challenge"]["field"]
        return self.service.confirm_read(
            token, field, CORRECT_ANSWERS[field],
            ip_address="190.1.1.1", user_agent="Mozilla/5.0", now=later,
        )

    def deliver_and_read(self, now=NOW, **overrides):
        notice = self.create(now=now, **overrides)
        self.send(notice, now=now)
        self.grant(notice, now=now)
        self.read(notice, now=now)
        return notice


@pytest.fixture
def flow(notice_service, delivery, employer, employee):
    return NoticeFlow(notice_service, delivery, employer, employee)


# =============================================================================
# FIXTURES: HTTP
# =============================================================================

@pytest.fixture
def client(db, delivery, biometric, blob_store, tsa_server, notary_server):
    from fastapi.testclient import TestClient

    from notice_engine import dependencies
    from notice_engine.database import get_db
    from notice_engine.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_delivery_provider] = lambda: delivery
    app.dependency_overrides[dependencies.get_biometric_provider] = lambda: biometric
    app.dependency_overrides[dependencies.get_blob_store] = lambda: blob_store
    app.dependency_overrides[dependencies.get_time_authority] = tsa_server.client
    app.dependency_overrides[dependencies.get_notary] = notary_server.client

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(employer):
    from notice_engine.auth import create_access_token

    return {"Authorization": f"Bearer {create_access_token(employer.id, employer.email)}"}
