"""
Integrity & Timestamping Services

- hashing: canonical SHA-256 digests with provenance envelope
- timestamp_authority: RFC 3161 client with ordered fallback
- notary: OpenTimestamps calendar client
- stamping: dual stamp orchestration and anchor upgrade job
  (import from .stamping directly; it depends on the audit log)
"""
from .hashing import (
    HASH_ALGORITHM, canonicalize, sha256_hex, hash_payload, compute_digest,
    verify_digest, is_valid_digest, normalize_digest, assert_bytes_match,
    notice_content, compute_notice_digest, verify_notice_digest,
)
from .timestamp_authority import TimeAuthority, TimeAuthorityClient, TimestampToken, default_authorities
from .notary import NotaryClient, NotaryReceipt, AnchorCheck

__all__ = [
    'HASH_ALGORITHM', 'canonicalize', 'sha256_hex', 'hash_payload', 'compute_digest',
    'verify_digest', 'is_valid_digest', 'normalize_digest', 'assert_bytes_match',
    'notice_content', 'compute_notice_digest', 'verify_notice_digest',
    'TimeAuthority', 'TimeAuthorityClient', 'TimestampToken', 'default_authorities',
    'NotaryClient', 'NotaryReceipt', 'AnchorCheck',
]
