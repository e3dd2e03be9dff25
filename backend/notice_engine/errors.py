"""Notice Engine error hierarchy."""
from typing import Any, Dict, Optional


class NoticeEngineError(Exception):
    """Base exception for Notice Engine errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationFailed(NoticeEngineError):
    """Invalid request parameters."""

    code = "INVALID_REQUEST"
    status_code = 400


class NotFound(NoticeEngineError):
    """Resource not found (or token unknown)."""

    code = "NOT_FOUND"
    status_code = 404


class IdentityMismatch(NoticeEngineError):
    """
    Wrong identifier, code or challenge answer.

    The message is deliberately generic: it never says which field failed.
    """

    code = "IDENTITY_MISMATCH"
    status_code = 401

    def __init__(self, remaining_attempts: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        if remaining_attempts is not None:
            details = {**(details or {}), "remaining_attempts": remaining_attempts}
        super().__init__("The data entered does not match our records", details=details)
        self.remaining_attempts = remaining_attempts


class CodeExpired(IdentityMismatch):
    """One-time code expired or exhausted; a new one must be requested."""

    code = "CODE_EXPIRED"

    def __init__(self):
        super().__init__(0, details={"action": "request_new_code"})
        self.message = "The code is no longer valid, request a new one"


class LockedOut(NoticeEngineError):
    """Too many failed identifier attempts. Terminal for the token."""

    code = "LOCKED_OUT"
    status_code = 423

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "Access has been locked. Contact the issuing company to restore it",
            details=details,
        )


class LinkExpired(NoticeEngineError):
    """Access link past its expiry."""

    code = "LINK_EXPIRED"
    status_code = 410


class StepOutOfOrder(NoticeEngineError):
    """A gate or workflow step was attempted before its prerequisite."""

    code = "STEP_OUT_OF_ORDER"
    status_code = 409


class ChallengeFrozen(NoticeEngineError):
    """Acknowledgment challenge exhausted; waits for employer intervention."""

    code = "CHALLENGE_FROZEN"
    status_code = 423


class EngagementIncomplete(NoticeEngineError):
    """Scroll/dwell thresholds not met yet."""

    code = "ENGAGEMENT_INCOMPLETE"
    status_code = 409


class StateConflict(NoticeEngineError):
    """Transition attempted against stale state."""

    code = "ALREADY_PROCESSED"
    status_code = 409

    def __init__(self, message: str = "This action was already processed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class IntegrityMismatch(NoticeEngineError):
    """Recomputed digest differs from the stored one. Never ignored."""

    code = "INTEGRITY_MISMATCH"
    status_code = 409

    def __init__(self, subject: str, expected: Optional[str], actual: Optional[str]):
        super().__init__(
            f"Integrity check failed for {subject}: content does not match its recorded hash",
            details={"subject": subject, "expected": expected, "actual": actual},
        )
        self.subject = subject
        self.expected = expected
        self.actual = actual


class ExternalProviderUnavailable(NoticeEngineError):
    """External dependency failure (delivery, time authority, notary, biometric, storage)."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503

    def __init__(self, provider: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={**(details or {}), "provider": provider})
        self.provider = provider


class PartialExportFailure(NoticeEngineError):
    """
    One referenced artifact could not be included in an export.

    Recorded in the manifest; the export itself still succeeds.
    """

    code = "PARTIAL_EXPORT"
    status_code = 200

    def __init__(self, artifact_path: str, reason: str):
        super().__init__(f"Artifact {artifact_path} omitted: {reason}", details={"path": artifact_path})
        self.artifact_path = artifact_path
        self.reason = reason

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.artifact_path, "reason": self.reason}


class RateLimited(NoticeEngineError):
    """Request repeated before its cooldown elapsed."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after_seconds: int):
        super().__init__(
            "Please wait before requesting again",
            details={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds
