"""
OpenTimestamps Notary Client

Submits a digest to public OpenTimestamps calendars for a deferred
proof-of-existence anchor in the Bitcoin blockchain. Submission returns a
pending receipt immediately; the Bitcoin attestation only appears hours
later, once the calendar's aggregation transaction is mined.
"""
import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...config import HTTP_RETRY_ATTEMPTS, OTS_CALENDAR_URLS
from ...errors import ExternalProviderUnavailable
from .hashing import is_valid_digest

logger = logging.getLogger(__name__)

OTS_ACCEPT = "application/vnd.opentimestamps.v1"

# Attestation tags from the OpenTimestamps serialization format
BITCOIN_ATTESTATION_TAG = bytes.fromhex("0588960d73d71901")
PENDING_ATTESTATION_TAG = bytes.fromhex("83dfe30d2ef90c8e")


@dataclass
class NotaryReceipt:
    """Pending .ots receipt as returned by a calendar."""
    calendar: str
    receipt: bytes
    submitted_at: datetime

    @property
    def receipt_b64(self) -> str:
        return base64.b64encode(self.receipt).decode("ascii")


@dataclass
class AnchorCheck:
    """Result of asking a calendar for the upgraded timestamp."""
    confirmed: bool
    block_height: Optional[int] = None
    upgraded_receipt: Optional[bytes] = None


def _read_varuint(data: bytes, offset: int):
    value = 0
    shift = 0
    while offset < len(data):
        byte = data[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset
        shift += 7
    raise ValueError("truncated varuint")


def extract_bitcoin_height(timestamp: bytes) -> Optional[int]:
    """
    Block height of the first Bitcoin attestation in a serialized timestamp.

    Attestation layout: 8-byte tag, varbytes payload; the Bitcoin payload
    is a single varuint holding the block height.
    """
    index = timestamp.find(BITCOIN_ATTESTATION_TAG)
    if index < 0:
        return None
    try:
        _, payload_start = _read_varuint(timestamp, index + len(BITCOIN_ATTESTATION_TAG))
        height, _ = _read_varuint(timestamp, payload_start)
    except ValueError:
        return None
    return height


class NotaryClient:
    """Calendar client with ordered fallback across calendars."""

    def __init__(
        self,
        http_client: httpx.Client,
        calendars: Optional[List[str]] = None,
        retry_attempts: int = HTTP_RETRY_ATTEMPTS,
    ):
        self.http = http_client
        self.calendars = [c.rstrip("/") for c in (calendars if calendars is not None else OTS_CALENDAR_URLS)]
        self.retry_attempts = max(1, retry_attempts)

    def submit(self, digest: str, now: Optional[datetime] = None) -> NotaryReceipt:
        """POST the raw digest to {calendar}/digest."""
        if not is_valid_digest(digest):
            raise ValueError("digest must be 64 lowercase hex characters")

        failures: Dict[str, str] = {}
        for calendar in self.calendars:
            try:
                response = self._call(
                    "POST",
                    f"{calendar}/digest",
                    content=bytes.fromhex(digest),
                    headers={"Accept": OTS_ACCEPT, "Content-Type": "application/x-www-form-urlencoded"},
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(f"Notary calendar {calendar} failed: {e}")
                failures[calendar] = str(e) or e.__class__.__name__
                continue

            logger.info(f"Digest {digest[:12]}... submitted to {calendar}")
            return NotaryReceipt(calendar=calendar, receipt=response.content, submitted_at=now or datetime.utcnow())

        raise ExternalProviderUnavailable(
            "notary",
            "All notary calendars failed",
            details={"failures": failures},
        )

    def check(self, digest: str, calendar: str) -> AnchorCheck:
        """
        GET {calendar}/timestamp/{digest}.

        404 means the calendar has not committed it to a block yet.
        """
        try:
            response = self._call(
                "GET",
                f"{calendar.rstrip('/')}/timestamp/{digest}",
                headers={"Accept": OTS_ACCEPT},
            )
        except httpx.HTTPError as e:
            raise ExternalProviderUnavailable("notary", f"Calendar {calendar} unreachable: {e}")

        if response.status_code == 404:
            return AnchorCheck(confirmed=False)
        if response.status_code >= 400:
            raise ExternalProviderUnavailable(
                "notary",
                f"Calendar {calendar} returned {response.status_code}",
            )

        height = extract_bitcoin_height(response.content)
        if height is None:
            return AnchorCheck(confirmed=False, upgraded_receipt=response.content)
        return AnchorCheck(confirmed=True, block_height=height, upgraded_receipt=response.content)

    def _call(self, method: str, url: str, **kwargs) -> httpx.Response:
        for attempt in Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                return self.http.request(method, url, **kwargs)
        raise httpx.TransportError("no attempt made")
