"""Lead autosave endpoint.

WHAT:
    PUT /v1/leads upserts a partially filled lead form, keyed by email.

WHY:
    Forms autosave as the visitor types, so most requests are incomplete.
    The endpoint accepts whatever is usable, merges it into one record per
    email address and never overwrites fields with blanks.

KEY:
    leads/email:{url-quoted lowercase email}
    createdAt is written once; updatedAt on every save.

REFERENCES:
    - leadsignal/services/lead_tracker.py (client side of this contract)
"""

import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from leadsignal.deps import get_document_store, rate_limit
from leadsignal.exceptions import PersistenceError
from leadsignal.models import LEADS
from leadsignal.services.document_store import SERVER_TIMESTAMP, DocumentStore
from leadsignal.telemetry.sentry import capture_exception
from leadsignal.utils.hashing import hash_pii

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Leads"])

# Attribution fields as sent (snake_case) -> as stored on the lead (camelCase)
ATTRIBUTION_FIELD_MAP = {
    "utm_source": "utmSource",
    "utm_medium": "utmMedium",
    "utm_campaign": "utmCampaign",
    "utm_content": "utmContent",
    "utm_term": "utmTerm",
    "gclid": "gclid",
    "gbraid": "gbraid",
    "wbraid": "wbraid",
    "fbclid": "fbclid",
    "fbc": "fbc",
    "fbp": "fbp",
    "landing_page_url": "landingPageUrl",
    "referrer": "referrer",
    "first_touch_ts": "firstTouchTs",
    "last_touch_ts": "lastTouchTs",
}

TEXT_FIELDS = ("firstName", "lastName", "email", "phone", "zip", "referral")


def looks_like_email(value: str) -> bool:
    value = value.strip()
    return len(value) > 3 and "@" in value and "." in value


def lead_doc_id(email: str) -> str:
    return f"email:{quote(email.strip().lower(), safe='')}"


def _text(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    return value.strip() if isinstance(value, str) else ""


def build_lead_fields(body: Dict[str, Any], user_agent: Optional[str], referer: Optional[str]) -> Dict[str, Any]:
    """Map a lenient request body to the stored lead fields, dropping blanks."""
    fields: Dict[str, Any] = {"status": "new", "source": "web", "updatedAt": SERVER_TIMESTAMP}

    for key in TEXT_FIELDS:
        value = _text(body, key)
        if value:
            fields[key] = value

    first, last = fields.get("firstName", ""), fields.get("lastName", "")
    name = f"{first} {last}".strip() if (first or last) else _text(body, "name")
    if name:
        fields["name"] = name

    if user_agent:
        fields["userAgent"] = user_agent
    if referer:
        fields["referer"] = referer

    attribution = body.get("attribution")
    if isinstance(attribution, dict):
        for source, target in ATTRIBUTION_FIELD_MAP.items():
            value = attribution.get(source)
            if isinstance(value, str) and value:
                fields[target] = value

    return fields


@router.put(
    "/leads",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit("RATE_LIMIT_LEADS_PER_MINUTE"))],
)
async def autosave_lead(
    request: Request,
    store: DocumentStore = Depends(get_document_store),
):
    """Upsert a partial lead.

    Returns:
        202 {"id": "email:...", "accepted": true}
        400 {"accepted": false, "error": "..."} without a usable email
    """
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    email = _text(body, "email")
    if not looks_like_email(email):
        logger.info("[LEADS] Rejected autosave without usable email")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"accepted": False, "error": "email is required"},
        )

    doc_id = lead_doc_id(email)
    fields = build_lead_fields(body, request.headers.get("user-agent"), request.headers.get("referer"))

    try:
        created = store.set(LEADS, doc_id, fields, on_create={"createdAt": SERVER_TIMESTAMP})
    except PersistenceError as e:
        capture_exception(e, extra={"lead_key": hash_pii(email)})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"accepted": False, "error": "store_failed"},
        )

    logger.info(
        "[LEADS] Autosaved lead",
        extra={"lead_key": hash_pii(email), "created": created, "fields": sorted(fields)},
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"id": doc_id, "accepted": True},
    )
