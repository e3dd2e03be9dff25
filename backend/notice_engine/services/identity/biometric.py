"""
Biometric Verification

Liveness session followed by a face-match against the employee's
enrolled reference image. The face-match similarity maps to a tri-state
outcome; the middle band grants access but flags the case for review.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from ...config import BIOMETRIC_APPROVE_THRESHOLD, BIOMETRIC_REVIEW_THRESHOLD
from ...errors import ExternalProviderUnavailable
from ...models.db_models import BiometricOutcome

logger = logging.getLogger(__name__)

LIVENESS_SUCCEEDED = "SUCCEEDED"


@dataclass
class LivenessResult:
    """Provider verdict for one liveness session."""
    session_id: str
    status: str  # SUCCEEDED, IN_PROGRESS, EXPIRED, FAILED
    confidence: float
    reference_image: Optional[bytes] = None


@dataclass(frozen=True)
class BiometricThresholds:
    """Similarity bands (0-100)."""
    approve: float = BIOMETRIC_APPROVE_THRESHOLD
    review: float = BIOMETRIC_REVIEW_THRESHOLD

    def __post_init__(self):
        if self.review > self.approve:
            raise ValueError("review threshold must not exceed approve threshold")


def evaluate_similarity(score: Optional[float], thresholds: BiometricThresholds) -> BiometricOutcome:
    """
    score >= approve            -> APPROVED
    review <= score < approve   -> NEEDS_REVIEW
    otherwise                   -> REJECTED
    """
    if score is None:
        return BiometricOutcome.REJECTED
    if score >= thresholds.approve:
        return BiometricOutcome.APPROVED
    if score >= thresholds.review:
        return BiometricOutcome.NEEDS_REVIEW
    return BiometricOutcome.REJECTED


class BiometricProvider(Protocol):
    """Liveness and face-match operations consumed by the identity gate."""

    def create_liveness_session(self) -> str: ...

    def get_liveness_result(self, session_id: str) -> LivenessResult: ...

    def compare_faces(self, source_image: bytes, target_image: bytes) -> float: ...


class RekognitionBiometricProvider:
    """Amazon Rekognition Face Liveness and CompareFaces."""

    def __init__(self, rekognition_client: Any):
        self.rekognition = rekognition_client

    def create_liveness_session(self) -> str:
        try:
            response = self.rekognition.create_face_liveness_session(
                Settings={"AuditImagesLimit": 1}
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Liveness session creation failed: {e}")
            raise ExternalProviderUnavailable("biometric", "Could not start liveness check")
        return response["SessionId"]

    def get_liveness_result(self, session_id: str) -> LivenessResult:
        try:
            response = self.rekognition.get_face_liveness_session_results(SessionId=session_id)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Liveness result lookup failed for {session_id}: {e}")
            raise ExternalProviderUnavailable("biometric", "Could not read liveness result")

        reference = response.get("ReferenceImage") or {}
        return LivenessResult(
            session_id=session_id,
            status=response.get("Status", "FAILED"),
            confidence=float(response.get("Confidence") or 0.0),
            reference_image=reference.get("Bytes"),
        )

    def compare_faces(self, source_image: bytes, target_image: bytes) -> float:
        """Highest similarity among matched faces, 0.0 when none match."""
        try:
            response = self.rekognition.compare_faces(
                SourceImage={"Bytes": source_image},
                TargetImage={"Bytes": target_image},
                SimilarityThreshold=0,
            )
        except ClientError as e:
            # No detectable face in either image is a non-match, not an outage
            if e.response.get("Error", {}).get("Code") == "InvalidParameterException":
                return 0.0
            logger.error(f"Face comparison failed: {e}")
            raise ExternalProviderUnavailable("biometric", "Could not compare faces")
        except BotoCoreError as e:
            logger.error(f"Face comparison failed: {e}")
            raise ExternalProviderUnavailable("biometric", "Could not compare faces")

        matches = response.get("FaceMatches") or []
        if not matches:
            return 0.0
        return max(float(m.get("Similarity", 0.0)) for m in matches)
