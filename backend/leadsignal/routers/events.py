"""Conversion event ingestion endpoint.

WHAT:
    POST /v1/events accepts a lead/conversion event, normalizes it into a
    CanonicalEvent, stores it, and forwards it to the configured vendors.

WHY:
    One server-side entry point means PII is hashed in one place and every
    vendor receives the same event_id, which is what they dedupe on.

FLOW:
    1. Rate limit per client IP (429)
    2. Parse + validate the body (400 with machine-readable issues)
    3. Deduplicate by event_id (200 "duplicate", no re-forwarding)
    4. Store in conversion_events (500 if the store fails)
    5. Fan out to vendors; their failures only show up in "forwarding"

REFERENCES:
    - leadsignal/services/event_normalizer.py
    - leadsignal/services/forwarders/
"""

import json
import logging
from typing import List

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from leadsignal.deps import Settings, get_document_store, get_forwarders, get_settings, rate_limit
from leadsignal.exceptions import EventValidationError, PersistenceError
from leadsignal.models import CONVERSION_EVENTS
from leadsignal.services.document_store import SERVER_TIMESTAMP, DocumentStore, StoredDocument
from leadsignal.services.event_normalizer import normalize_event
from leadsignal.services.forwarders import Forwarder, forward_event
from leadsignal.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Events"])


def _validation_failed(issues: list) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_failed", "issues": issues},
    )


def _duplicate(existing: StoredDocument) -> JSONResponse:
    stored_event = {k: v for k, v in existing.data.items() if k != "received_at"}
    return JSONResponse(content={"status": "duplicate", "event": stored_event})


@router.post(
    "/events",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("RATE_LIMIT_EVENTS_PER_MINUTE"))],
)
async def submit_event(
    request: Request,
    store: DocumentStore = Depends(get_document_store),
    forwarders: List[Forwarder] = Depends(get_forwarders),
    settings: Settings = Depends(get_settings),
):
    """Receive, normalize, store and forward one event.

    Returns:
        201 {"event": CanonicalEvent, "forwarding": {vendor: {"status", "reason"?}}}
        200 {"status": "duplicate", "event": CanonicalEvent} for a replayed event_id
    """
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else None
    except ValueError:
        return _validation_failed([{"loc": [], "msg": "request body is not valid JSON", "type": "json_invalid"}])

    try:
        event = normalize_event(
            payload,
            forwarded_for=request.headers.get("x-forwarded-for"),
            remote_addr=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except EventValidationError as e:
        return _validation_failed(e.issues)

    document = event.to_document()

    try:
        existing = store.get(CONVERSION_EVENTS, event.event_id)
        if existing is None:
            try:
                store.create(CONVERSION_EVENTS, {**document, "received_at": SERVER_TIMESTAMP}, doc_id=event.event_id)
            except PersistenceError:
                # A concurrent request with the same event_id may have won the insert
                existing = store.get(CONVERSION_EVENTS, event.event_id)
                if existing is None:
                    raise

        if existing is not None:
            logger.info("[EVENTS] Duplicate event_id", extra={"event_id": event.event_id})
            return _duplicate(existing)
    except PersistenceError as e:
        capture_exception(e, extra={"event_id": event.event_id})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "store_failed"},
        )

    logger.info(
        "[EVENTS] Stored event",
        extra={"event_id": event.event_id, "event_name": event.event_name},
    )

    results = await forward_event(event, forwarders, timeout=settings.VENDOR_TIMEOUT_SECONDS)
    forwarding = {vendor: result.model_dump(exclude_none=True) for vendor, result in results.items()}

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"event": document, "forwarding": forwarding},
    )
