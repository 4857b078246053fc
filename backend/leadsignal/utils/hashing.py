"""PII canonicalization and one-way hashing.

WHAT:
    Normalizes phone numbers to E.164 and hashes email/phone values with SHA-256.

WHY:
    Ad platforms match conversions on hashed identifiers, and we never want to
    keep or forward plaintext contact details on a canonical event. The same
    person must hash identically regardless of how they typed their email.

REFERENCES:
    - leadsignal/services/event_normalizer.py (only caller on the request path)
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/customer-information-parameters
"""

import hashlib
import re
from typing import Optional

# Domestic numbers are assumed to be North American (country code 1)
DOMESTIC_COUNTRY_CODE = "1"

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Normalize a phone number to E.164.

    WHAT:
        - 10 digits -> +1XXXXXXXXXX
        - 11 digits starting with 1 -> +1XXXXXXXXXX
        - input already starting with "+" -> returned unchanged
        - anything else -> "+" + digits (best effort)

    WHY:
        Hashes only match across systems when the input format is identical.

    Returns:
        E.164 string, or None for empty input or input without digits.
    """
    if not raw or not isinstance(raw, str):
        return None

    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None

    if len(digits) == 10:
        return f"+{DOMESTIC_COUNTRY_CODE}{digits}"
    if len(digits) == 11 and digits.startswith(DOMESTIC_COUNTRY_CODE):
        return f"+{digits}"
    if raw.startswith("+"):
        return raw
    return f"+{digits}"


def hash_pii(raw: Optional[str]) -> Optional[str]:
    """SHA-256 hex digest of a trimmed, lowercased value.

    Returns None for missing or blank input so callers can omit the field.
    """
    if not raw or not isinstance(raw, str):
        return None

    canonical = raw.strip().lower()
    if not canonical:
        return None

    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
