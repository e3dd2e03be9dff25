"""
Notice Engine - Runtime Configuration

All tunables are read once from the environment at import time.
Policy constants (thresholds, windows, grace periods) live here so that
operators can change them without touching the services that apply them.
"""
import os


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _list(name: str, default: str) -> list:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# =============================================================================
# SERVICE
# =============================================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/notice_engine"
)
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "notice-engine-secret-key-change-in-production")
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = _list("CORS_ORIGINS", "*")

# =============================================================================
# NOTICE LIFECYCLE
# =============================================================================

DISPUTE_WINDOW_DAYS = _int("DISPUTE_WINDOW_DAYS", 30)
APPROACHING_DUE_DAYS = _int("APPROACHING_DUE_DAYS", 5)
UPCOMING_DUE_DAYS = _int("UPCOMING_DUE_DAYS", 15)
PHYSICAL_FALLBACK_GRACE_HOURS = _int("PHYSICAL_FALLBACK_GRACE_HOURS", 72)
REMINDER_AFTER_HOURS = _int("REMINDER_AFTER_HOURS", 24)
REMINDER_MAX_AGE_DAYS = _int("REMINDER_MAX_AGE_DAYS", 7)
# Hours after sending for employer alerts 1, 2 and 3
EMPLOYER_ALERT_HOURS = [int(h) for h in _list("EMPLOYER_ALERT_HOURS", "72,120,168")]

# =============================================================================
# IDENTITY GATE
# =============================================================================

IDENTIFIER_MAX_ATTEMPTS = _int("IDENTIFIER_MAX_ATTEMPTS", 5)
OTP_LENGTH = 6
OTP_EXPIRY_MINUTES = _int("OTP_EXPIRY_MINUTES", 10)
OTP_MAX_ATTEMPTS = _int("OTP_MAX_ATTEMPTS", 3)
OTP_RESEND_COOLDOWN_SECONDS = _int("OTP_RESEND_COOLDOWN_SECONDS", 60)
OTP_HMAC_KEY = os.getenv("OTP_HMAC_KEY", JWT_SECRET_KEY)
GATE_TOKEN_EXPIRY_DAYS = _int("GATE_TOKEN_EXPIRY_DAYS", 30)

BIOMETRIC_APPROVE_THRESHOLD = _float("BIOMETRIC_APPROVE_THRESHOLD", 95.0)
BIOMETRIC_REVIEW_THRESHOLD = _float("BIOMETRIC_REVIEW_THRESHOLD", 85.0)
LIVENESS_MIN_CONFIDENCE = _float("LIVENESS_MIN_CONFIDENCE", 90.0)

# =============================================================================
# ENGAGEMENT AND ACKNOWLEDGMENT
# =============================================================================

CHALLENGE_MAX_ATTEMPTS = _int("CHALLENGE_MAX_ATTEMPTS", 3)
SCROLL_THRESHOLD_PCT = _float("SCROLL_THRESHOLD_PCT", 90.0)
MIN_DWELL_SECONDS = _int("MIN_DWELL_SECONDS", 30)
READING_WORDS_PER_MINUTE = _int("READING_WORDS_PER_MINUTE", 200)

# =============================================================================
# DESCARGO, WITNESSES, DOMICILE
# =============================================================================

DESCARGO_WINDOW_DAYS = _int("DESCARGO_WINDOW_DAYS", 10)
DESCARGO_RECHECK_VALID_MINUTES = _int("DESCARGO_RECHECK_VALID_MINUTES", 30)
WITNESS_TOKEN_EXPIRY_DAYS = _int("WITNESS_TOKEN_EXPIRY_DAYS", 7)
DOMICILE_TOKEN_EXPIRY_DAYS = _int("DOMICILE_TOKEN_EXPIRY_DAYS", 7)

# =============================================================================
# EXTERNAL PROVIDERS
# =============================================================================

TSA_URLS = _list("TSA_URLS", "https://freetsa.org/tsr,http://timestamp.digicert.com")
OTS_CALENDAR_URLS = _list(
    "OTS_CALENDAR_URLS",
    "https://a.pool.opentimestamps.org,https://b.pool.opentimestamps.org",
)
OTS_REVERIFY_MIN_AGE_HOURS = _int("OTS_REVERIFY_MIN_AGE_HOURS", 1)
OTS_MAX_CHECKS = _int("OTS_MAX_CHECKS", 10)
OTS_BATCH_SIZE = _int("OTS_BATCH_SIZE", 50)

HTTP_TIMEOUT_SECONDS = _float("HTTP_TIMEOUT_SECONDS", 10.0)
HTTP_RETRY_ATTEMPTS = _int("HTTP_RETRY_ATTEMPTS", 2)

DELIVERY_GATEWAY_URL = os.getenv("DELIVERY_GATEWAY_URL", "")
DELIVERY_GATEWAY_TOKEN = os.getenv("DELIVERY_GATEWAY_TOKEN", "")

AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
S3_BUCKET = os.getenv("S3_BUCKET", "notice-engine")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None
