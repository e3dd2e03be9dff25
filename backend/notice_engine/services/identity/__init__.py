"""Identity gate: identifier match, one-time code and optional biometric step."""
from .biometric import (
    BiometricProvider, BiometricThresholds, LivenessResult, RekognitionBiometricProvider,
    evaluate_similarity,
)
from .gate import GATE_CONFIG, IdentityGate
from .otp import code_matches, generate_code, hash_code, identifier_matches

__all__ = [
    "BiometricProvider",
    "BiometricThresholds",
    "LivenessResult",
    "RekognitionBiometricProvider",
    "evaluate_similarity",
    "GATE_CONFIG",
    "IdentityGate",
    "code_matches",
    "generate_code",
    "hash_code",
    "identifier_matches",
]
