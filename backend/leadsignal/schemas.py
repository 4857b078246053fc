"""Pydantic schemas for the attribution and conversion-event pipeline.

Inbound models (`EventIn` and friends) describe the untrusted request body of
POST /v1/events and are the only place where its shape is checked. Outbound
models (`CanonicalEvent` and friends) are frozen: once the normalizer builds a
canonical event nothing downstream can change it.
"""

import re
from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator


EventName = Literal["lead_submitted", "lead_qualified", "deal_won"]

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Full date and time with seconds and an explicit Z or +HH:MM offset
_EVENT_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


def _new_id() -> str:
    return str(uuid4())


def parse_event_time(value: str) -> datetime:
    """Parse an event timestamp into an aware UTC datetime.

    Accepts only full timestamps with a timezone, e.g. 2025-01-31T12:00:00Z or
    2025-01-31T14:00:00.250+02:00. Epoch numbers, bare dates, naive times and
    instants that fall outside the representable UTC range are rejected.

    Raises:
        ValueError: If the value is not such a timestamp
    """
    match = _EVENT_TIME_RE.match(value.strip())
    if not match:
        raise ValueError("event_time must be an ISO-8601 timestamp with a timezone")

    base, fraction, offset = match.groups()
    micros = ((fraction or "") + "000000")[:6]
    if offset == "Z":
        offset = "+00:00"

    try:
        parsed = datetime.fromisoformat(f"{base}.{micros}{offset}")
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        raise ValueError("event_time is not a valid timestamp in the supported range") from None


# =============================================================================
# ATTRIBUTION
# =============================================================================


class AttributionRecord(BaseModel):
    """How a visitor arrived: campaign tags, click ids, landing context.

    WHAT: UTM parameters, ad click identifiers and first/last touch timestamps
    WHY: Lets conversions be credited to the campaign that produced them

    Campaign and click fields are last-write-wins per field; landing page,
    referrer and first_touch_ts are written once.
    """
    model_config = ConfigDict(extra="ignore")

    utm_source: Optional[StrictStr] = None
    utm_medium: Optional[StrictStr] = None
    utm_campaign: Optional[StrictStr] = None
    utm_content: Optional[StrictStr] = None
    utm_term: Optional[StrictStr] = None
    gclid: Optional[StrictStr] = None
    gbraid: Optional[StrictStr] = None
    wbraid: Optional[StrictStr] = None
    fbclid: Optional[StrictStr] = None
    fbc: Optional[StrictStr] = None
    fbp: Optional[StrictStr] = None
    landing_page_url: Optional[StrictStr] = None
    referrer: Optional[StrictStr] = None
    first_touch_ts: Optional[StrictStr] = None
    last_touch_ts: Optional[StrictStr] = None

    def is_empty(self) -> bool:
        return not any(self.model_dump(exclude_none=True).values())


# =============================================================================
# INBOUND EVENT (untrusted)
# =============================================================================


class EventUserIn(BaseModel):
    """Contact details as submitted. Never stored as-is."""
    model_config = ConfigDict(extra="ignore")

    email: Optional[StrictStr] = None
    phone: Optional[StrictStr] = None

    @field_validator("email")
    @classmethod
    def _looks_like_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        candidate = value.strip()
        if not candidate:
            return None
        if not _EMAIL_RE.match(candidate):
            raise ValueError("value is not a valid email address")
        return value


class EventLeadIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lead_id: StrictStr = Field(default_factory=_new_id)
    form_name: Optional[StrictStr] = None
    value: Optional[float] = Field(default=None, strict=True)
    currency: StrictStr = "USD"


class EventIn(BaseModel):
    """Request body for POST /v1/events.

    Example:
        {
            "event_name": "lead_submitted",
            "user": {"email": "jane@example.com", "phone": "(555) 123-4567"},
            "attribution": {"utm_source": "google", "gclid": "Cj0..."},
            "lead": {"lead_id": "L1", "form_name": "quote_start"}
        }
    """
    model_config = ConfigDict(extra="ignore")

    event_id: StrictStr = Field(default_factory=_new_id)
    event_name: EventName
    event_time: Optional[datetime] = None
    user: EventUserIn = Field(default_factory=EventUserIn)
    attribution: Optional[AttributionRecord] = None
    lead: EventLeadIn = Field(default_factory=EventLeadIn)

    @field_validator("event_time", mode="before")
    @classmethod
    def _iso_string_only(cls, value):
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("event_time must be an ISO-8601 string")
        return parse_event_time(value)


# =============================================================================
# CANONICAL EVENT (normalized, immutable)
# =============================================================================


class CanonicalUser(BaseModel):
    """Hashed identifiers plus request metadata. No plaintext PII."""
    model_config = ConfigDict(frozen=True)

    email_hashed: Optional[str] = None
    phone_hashed: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


class CanonicalLead(BaseModel):
    model_config = ConfigDict(frozen=True)

    lead_id: str
    form_name: Optional[str] = None
    value: Optional[float] = None
    currency: str = "USD"


class CanonicalEvent(BaseModel):
    """Validated, defaulted, privacy-hashed lead/conversion event.

    WHAT: The single record every forwarder and the audit trail consume
    WHY: One shape for storage and fan-out; raw email/phone never reach it
    """
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_name: EventName
    event_time: str
    event_ts: int
    user: CanonicalUser
    attribution: Optional[AttributionRecord] = None
    lead: CanonicalLead

    def to_document(self) -> dict:
        """Storage/response form without null fields."""
        return self.model_dump(exclude_none=True)


# =============================================================================
# FORWARDING / ATTRIBUTION CAPTURE
# =============================================================================


class ForwardResult(BaseModel):
    """Outcome of one vendor forwarder."""
    status: Literal["sent", "skipped"]
    reason: Optional[str] = None


class AttributionTouchRequest(BaseModel):
    """Request body for POST /v1/attribution/touch.

    WHAT: The page the visitor just loaded and where they came from
    WHY: The server merges this visit into the stored attribution record
    """
    url: str = Field(..., description="Full URL of the current page, including query string")
    referrer: Optional[str] = Field(None, description="document.referrer of the page load")
