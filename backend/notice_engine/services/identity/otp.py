"""One-time codes and identifier normalization."""
import hashlib
import hmac
import re
import secrets
import unicodedata
from typing import Optional

from ...config import OTP_HMAC_KEY, OTP_LENGTH


def generate_code(length: int = OTP_LENGTH) -> str:
    return str(secrets.randbelow(10 ** length)).zfill(length)


def hash_code(code: str, key: str = OTP_HMAC_KEY) -> str:
    """HMAC-SHA256 of the code, keyed with a server secret."""
    return hmac.new(key.encode("utf-8"), code.strip().encode("utf-8"), hashlib.sha256).hexdigest()


def code_matches(code: str, code_hash: str) -> bool:
    return hmac.compare_digest(hash_code(code or ""), code_hash)


def digits_only(value: Optional[str]) -> str:
    return re.sub(r"[^0-9]", "", value or "")


def normalize_employee_number(value: Optional[str]) -> str:
    return unicodedata.normalize("NFKC", value or "").strip().lower()


def identifier_matches(submitted: str, tax_id: Optional[str], employee_number: Optional[str]) -> bool:
    """
    Accept either the tax identifier (CUIL, compared on digits only, so
    20-12345678-3 and 20123456783 are the same) or the employee number
    (trimmed, case-insensitive).
    """
    submitted_digits = digits_only(submitted)
    expected_digits = digits_only(tax_id)
    if submitted_digits and expected_digits and hmac.compare_digest(submitted_digits, expected_digits):
        return True

    submitted_number = normalize_employee_number(submitted)
    expected_number = normalize_employee_number(employee_number)
    if submitted_number and expected_number and hmac.compare_digest(submitted_number.encode("utf-8"), expected_number.encode("utf-8")):
        return True

    return False
