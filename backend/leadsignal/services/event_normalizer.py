"""Event normalizer for inbound lead/conversion events.

WHAT:
    Turns an untrusted JSON body into a CanonicalEvent:
    1. Validate against the strict schema (whole request or nothing)
    2. Fill defaults (event_id, lead_id, event_time, currency)
    3. Derive event_ts (epoch seconds)
    4. Attach request metadata (client IP, user agent)
    5. Hash email and E.164 phone, drop the plaintext

WHY:
    Everything downstream (storage, vendor forwarders) reads the canonical
    event only, so this is the single place where PII is hashed and where
    malformed input is turned away.

REFERENCES:
    - leadsignal/schemas.py (EventIn, CanonicalEvent)
    - leadsignal/utils/hashing.py
    - leadsignal/routers/events.py (HTTP entry point)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from leadsignal.exceptions import EventValidationError
from leadsignal.schemas import CanonicalEvent, CanonicalLead, CanonicalUser, EventIn
from leadsignal.utils.hashing import hash_pii, normalize_phone
from leadsignal.utils.timestamps import as_utc, to_iso, utc_now

logger = logging.getLogger(__name__)


def extract_client_ip(forwarded_for: Optional[str], remote_addr: Optional[str]) -> Optional[str]:
    """First X-Forwarded-For entry, falling back to the transport address."""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return remote_addr or None


def _validation_issues(error: ValidationError) -> List[Dict[str, Any]]:
    """Flatten pydantic errors into {loc, msg, type} without echoing input values."""
    return [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", "invalid"),
            "type": err.get("type", "value_error"),
        }
        for err in error.errors()
    ]


def normalize_event(
    payload: Any,
    *,
    forwarded_for: Optional[str] = None,
    remote_addr: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CanonicalEvent:
    """Validate, default and hash an inbound event.

    Args:
        payload: Parsed JSON body (anything; non-objects fail validation)
        forwarded_for: X-Forwarded-For header value
        remote_addr: Transport-level client address
        user_agent: User-Agent header value
        now: Receipt time (defaults to current UTC time)

    Returns:
        CanonicalEvent with hashed identifiers only

    Raises:
        EventValidationError: If the payload does not match the schema
    """
    if not isinstance(payload, dict):
        raise EventValidationError([
            {"loc": [], "msg": "request body must be a JSON object", "type": "model_type"}
        ])

    try:
        parsed = EventIn.model_validate(payload)
    except ValidationError as e:
        issues = _validation_issues(e)
        logger.info(
            "[NORMALIZER] Rejected event",
            extra={"issue_count": len(issues), "fields": [".".join(i["loc"]) for i in issues]},
        )
        raise EventValidationError(issues) from e

    received_at = as_utc(now or utc_now())
    event_time = as_utc(parsed.event_time) if parsed.event_time else received_at

    user = CanonicalUser(
        email_hashed=hash_pii(parsed.user.email),
        phone_hashed=hash_pii(normalize_phone(parsed.user.phone)),
        ip=extract_client_ip(forwarded_for, remote_addr),
        user_agent=user_agent or None,
    )

    lead = CanonicalLead(
        lead_id=parsed.lead.lead_id,
        form_name=parsed.lead.form_name,
        value=parsed.lead.value,
        currency=parsed.lead.currency or "USD",
    )

    attribution = parsed.attribution
    if attribution is not None and attribution.is_empty():
        attribution = None

    event = CanonicalEvent(
        event_id=parsed.event_id,
        event_name=parsed.event_name,
        event_time=to_iso(event_time),
        event_ts=int(event_time.timestamp()),
        user=user,
        attribution=attribution,
        lead=lead,
    )

    logger.debug(
        "[NORMALIZER] Normalized event",
        extra={
            "event_id": event.event_id,
            "event_name": event.event_name,
            "has_email": bool(user.email_hashed),
            "has_phone": bool(user.phone_hashed),
            "has_attribution": attribution is not None,
        },
    )
    return event
