"""
Content Hashing

SHA-256 over canonical JSON (sort_keys, compact separators, UTF-8).
A digest binds the content together with its provenance envelope
(origin IP and generation timestamp), so the same text produced at a
different moment or from a different origin yields a different digest.
"""
import hashlib
import hmac
import json
import re
from datetime import date, datetime
from typing import Any, Dict, Optional

from ...errors import IntegrityMismatch

HASH_ALGORITHM = "SHA-256"
DIGEST_PATTERN = re.compile(r"^[a-f0-9]{64}$")


def _default(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    return str(value)


def canonicalize(payload: Any) -> bytes:
    """Deterministic JSON bytes for hashing."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_default,
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_payload(payload: Any) -> str:
    """SHA-256 of a JSON-serializable payload."""
    return sha256_hex(canonicalize(payload))


def build_envelope(
    content: Dict[str, Any],
    origin_ip: Optional[str],
    generated_at: datetime,
) -> Dict[str, Any]:
    return {
        "content": content,
        "metadata": {
            "origin_ip": origin_ip or "unknown",
            "generated_at": generated_at.isoformat(),
        },
    }


def compute_digest(
    content: Dict[str, Any],
    origin_ip: Optional[str],
    generated_at: datetime,
) -> str:
    """hash(content) over content plus its provenance envelope."""
    return hash_payload(build_envelope(content, origin_ip, generated_at))


def verify_digest(
    content: Dict[str, Any],
    origin_ip: Optional[str],
    generated_at: datetime,
    digest: str,
) -> bool:
    """Recompute and compare in constant time."""
    if not digest:
        return False
    recomputed = compute_digest(content, origin_ip, generated_at)
    return hmac.compare_digest(recomputed, digest.lower())


def is_valid_digest(value: Optional[str]) -> bool:
    return bool(value) and bool(DIGEST_PATTERN.match(value))


def normalize_digest(value: str) -> str:
    return (value or "").strip().lower()


def assert_bytes_match(subject: str, data: bytes, expected: str) -> str:
    """
    Recompute the digest of raw bytes.

    Raises IntegrityMismatch when it differs from the expected value.
    """
    actual = sha256_hex(data)
    if not hmac.compare_digest(actual, normalize_digest(expected)):
        raise IntegrityMismatch(subject, expected, actual)
    return actual


# =============================================================================
# NOTICE CONTENT
# =============================================================================

def notice_content(notice) -> Dict[str, Any]:
    """Fields of a notice covered by its content hash."""
    return {
        "notice_id": notice.id,
        "employer_id": notice.employer_id,
        "employee_id": notice.employee_id,
        "category": notice.category,
        "severity": notice.severity,
        "reason": notice.reason,
        "facts": notice.facts,
        "incident_date": notice.incident_date,
        "incident_time": notice.incident_time,
        "incident_place": notice.incident_place,
        "suspension_days": notice.suspension_days,
        "suspension_start": notice.suspension_start,
        "suspension_end": notice.suspension_end,
    }


def compute_notice_digest(notice) -> str:
    return compute_digest(notice_content(notice), notice.origin_ip, notice.generated_at)


def verify_notice_digest(notice) -> bool:
    return verify_digest(notice_content(notice), notice.origin_ip, notice.generated_at, notice.content_hash)
