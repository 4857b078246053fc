"""Postmark delivery webhooks (Open / Click tracking).

WHAT:
    POST /v1/webhooks/postmark - authenticated Open/Click callbacks, single
        record or batch array
    GET  /v1/webhooks/postmark - liveness check for the webhook URL

FLOW:
    received -> authenticated (HMAC over the raw body) -> parsed -> applied

    Nothing is parsed or stored before the signature checks out. Every auth
    failure (missing secret, missing header, bad signature) returns the same
    401 body; the actual cause is only logged.

REFERENCES:
    - leadsignal/services/email_tracking_service.py
    - https://postmarkapp.com/developer/webhooks/webhooks-overview
"""

import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from leadsignal.deps import Settings, get_document_store, get_settings
from leadsignal.exceptions import WebhookAuthenticationError
from leadsignal.services.document_store import DocumentStore
from leadsignal.services.email_tracking_service import authenticate, process_webhook_events
from leadsignal.telemetry.sentry import capture_message
from leadsignal.utils.timestamps import to_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks/postmark", tags=["Postmark Webhooks"])

SIGNATURE_HEADER = "X-Postmark-Signature"


@router.post("")
async def receive_postmark_webhook(
    request: Request,
    store: DocumentStore = Depends(get_document_store),
    settings: Settings = Depends(get_settings),
):
    """Apply Postmark Open/Click callbacks.

    Returns:
        200 {"success": true, "processed": {...counts}}

    Raises:
        401 on any authentication failure, 413 on oversized bodies,
        500 if the authenticated body is not JSON
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.WEBHOOK_MAX_BODY_BYTES:
        return JSONResponse(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, content={"error": "Payload too large"})

    raw_body = await request.body()
    if len(raw_body) > settings.WEBHOOK_MAX_BODY_BYTES:
        return JSONResponse(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, content={"error": "Payload too large"})

    try:
        authenticate(raw_body, request.headers.get(SIGNATURE_HEADER), settings.POSTMARK_WEBHOOK_SECRET)
    except WebhookAuthenticationError as e:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": e.message})

    try:
        body = json.loads(raw_body)
    except ValueError:
        logger.error("[POSTMARK] Authenticated webhook body is not valid JSON")
        capture_message(
            "Postmark webhook payload was not valid JSON",
            level="error",
            extra={"body_bytes": len(raw_body)},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook processing failed"},
        )

    events = body if isinstance(body, list) else [body]
    counts = process_webhook_events(store, events)

    logger.info("[POSTMARK] Processed webhook", extra={"records": len(events), **counts})
    return {"success": True, "processed": counts}


@router.get("")
def postmark_webhook_status():
    """Health check endpoint for the webhook URL.

    WHAT: Static acknowledgement, no auth
    WHY: Lets the Postmark dashboard (or an operator) confirm the URL is live
    """
    return {"message": "Postmark webhook endpoint is active", "timestamp": to_iso()}
