"""
RFC 3161 Time-Stamp Authority Client

Requests an immediate trusted-time attestation for a SHA-256 digest.
Authorities are tried in order; the first valid response wins. When every
authority fails the caller receives ExternalProviderUnavailable and decides
how to degrade (notice creation continues unstamped).
"""
import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...config import HTTP_RETRY_ATTEMPTS, TSA_URLS
from ...errors import ExternalProviderUnavailable
from .hashing import is_valid_digest

logger = logging.getLogger(__name__)

# sha256 OID 2.16.840.1.101.3.4.2.1 with NULL parameters
SHA256_ALGORITHM_IDENTIFIER = bytes.fromhex("300d06096086480165030402010500")

# PKIStatus values that carry a token
GRANTED_STATUSES = (0, 1)

MIN_RESPONSE_BYTES = 10


class InvalidTimestampResponse(Exception):
    """Authority answered, but not with a usable TimeStampResp."""


# =============================================================================
# DER ENCODING
# =============================================================================

def _der_length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    encoded = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(encoded)]) + encoded


def _der(tag: int, content: bytes) -> bytes:
    return bytes([tag]) + _der_length(len(content)) + content


def _der_integer(value: int) -> bytes:
    raw = value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big")
    if raw[0] & 0x80:
        raw = b"\x00" + raw
    return _der(0x02, raw)


def build_timestamp_query(digest: str, nonce: Optional[int] = None) -> bytes:
    """
    DER-encoded TimeStampReq:

        TimeStampReq ::= SEQUENCE {
            version        INTEGER { v1(1) },
            messageImprint MessageImprint,
            nonce          INTEGER OPTIONAL,
            certReq        BOOLEAN DEFAULT FALSE }
    """
    if not is_valid_digest(digest):
        raise ValueError("digest must be 64 lowercase hex characters")
    if nonce is None:
        nonce = secrets.randbits(63)

    message_imprint = _der(0x30, SHA256_ALGORITHM_IDENTIFIER + _der(0x04, bytes.fromhex(digest)))
    body = (
        _der_integer(1)
        + message_imprint
        + _der_integer(nonce)
        + _der(0x01, b"\xff")
    )
    return _der(0x30, body)


# =============================================================================
# DER DECODING (status only)
# =============================================================================

def _read_tlv(data: bytes, offset: int) -> Tuple[int, int, int]:
    """Return (tag, content_start, content_end) of the element at offset."""
    if offset + 2 > len(data):
        raise InvalidTimestampResponse("truncated DER element")
    tag = data[offset]
    first = data[offset + 1]
    pos = offset + 2
    if first & 0x80:
        count = first & 0x7F
        if count == 0 or pos + count > len(data):
            raise InvalidTimestampResponse("unsupported DER length")
        length = int.from_bytes(data[pos:pos + count], "big")
        pos += count
    else:
        length = first
    if pos + length > len(data):
        raise InvalidTimestampResponse("DER length exceeds response")
    return tag, pos, pos + length


def parse_pki_status(response: bytes) -> int:
    """
    Extract PKIStatus from a TimeStampResp:

        TimeStampResp ::= SEQUENCE {
            status         PKIStatusInfo,   -- SEQUENCE { status INTEGER, ... }
            timeStampToken TimeStampToken OPTIONAL }
    """
    if len(response) < MIN_RESPONSE_BYTES:
        raise InvalidTimestampResponse(f"response too short ({len(response)} bytes)")
    tag, start, _ = _read_tlv(response, 0)
    if tag != 0x30:
        raise InvalidTimestampResponse("TimeStampResp is not a SEQUENCE")
    tag, status_start, _ = _read_tlv(response, start)
    if tag != 0x30:
        raise InvalidTimestampResponse("PKIStatusInfo is not a SEQUENCE")
    tag, int_start, int_end = _read_tlv(response, status_start)
    if tag != 0x02:
        raise InvalidTimestampResponse("PKIStatus is not an INTEGER")
    return int.from_bytes(response[int_start:int_end], "big")


# =============================================================================
# CLIENT
# =============================================================================

@dataclass
class TimeAuthority:
    """One RFC 3161 endpoint."""
    name: str
    url: str


@dataclass
class TimestampToken:
    """Granted TimeStampResp as returned by the authority."""
    authority: str
    token: bytes
    stamped_at: datetime

    @property
    def token_b64(self) -> str:
        return base64.b64encode(self.token).decode("ascii")


def default_authorities(urls: Optional[List[str]] = None) -> List[TimeAuthority]:
    """Ordered authority list from configuration (TSA_URLS)."""
    return [TimeAuthority(name=urlparse(url).netloc or url, url=url) for url in (urls or TSA_URLS)]


class TimeAuthorityClient:
    """
    Falls back across an ordered list of authorities.

    Transport errors are retried per authority; an HTTP error status or an
    unusable body moves straight on to the next authority.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        authorities: Optional[List[TimeAuthority]] = None,
        retry_attempts: int = HTTP_RETRY_ATTEMPTS,
    ):
        self.http = http_client
        self.authorities = authorities if authorities is not None else default_authorities()
        self.retry_attempts = max(1, retry_attempts)

    def request_token(self, digest: str, now: Optional[datetime] = None) -> TimestampToken:
        query = build_timestamp_query(digest)
        failures: Dict[str, str] = {}

        for authority in self.authorities:
            try:
                body = self._post_query(authority, query)
                status = parse_pki_status(body)
                if status not in GRANTED_STATUSES:
                    raise InvalidTimestampResponse(f"PKIStatus {status}")
            except (httpx.HTTPError, InvalidTimestampResponse) as e:
                logger.warning(f"Time authority {authority.name} failed: {e}")
                failures[authority.name] = str(e) or e.__class__.__name__
                continue

            logger.info(f"Digest {digest[:12]}... stamped by {authority.name}")
            return TimestampToken(
                authority=authority.name,
                token=body,
                stamped_at=now or datetime.utcnow(),
            )

        raise ExternalProviderUnavailable(
            "time_authority",
            "All time authorities failed",
            details={"failures": failures},
        )

    def _post_query(self, authority: TimeAuthority, query: bytes) -> bytes:
        for attempt in Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                response = self.http.post(
                    authority.url,
                    content=query,
                    headers={"Content-Type": "application/timestamp-query"},
                )
                response.raise_for_status()
                return response.content
        raise InvalidTimestampResponse("no attempt made")
