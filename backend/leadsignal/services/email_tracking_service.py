"""Email delivery tracking (Postmark opens and clicks).

WHAT:
    - Records each outbound quote email as an email event under its quote,
      plus a messageId index entry pointing back to it
    - Verifies Postmark webhook signatures
    - Applies Open/Click callbacks to the indexed email event

WHY:
    Postmark only knows its own MessageID. The index maps that id to the
    (quote, email event) pair written at send time, so a callback can be
    routed to exactly one document and updated there atomically.

IDEMPOTENCE:
    openedAt/clickedAt are written only if absent, openCount/clickCount are
    incremented. Replaying a callback therefore leaves the first-seen
    timestamp alone and only bumps the counter.

REFERENCES:
    - leadsignal/routers/postmark_webhooks.py
    - https://postmarkapp.com/developer/webhooks/open-tracking-webhook
    - https://postmarkapp.com/developer/webhooks/click-webhook
"""

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from leadsignal.exceptions import PersistenceError, WebhookAuthenticationError
from leadsignal.models import EMAIL_MESSAGE_IDS, email_events_collection
from leadsignal.services.document_store import SERVER_TIMESTAMP, DocumentStore, StoredDocument

logger = logging.getLogger(__name__)

# Postmark RecordType -> internal event type
RECORD_TYPES = {
    "Open": "open",
    "Click": "click",
}

# event type -> (first-seen timestamp field, counter field)
EVENT_FIELDS = {
    "open": ("openedAt", "openCount"),
    "click": ("clickedAt", "clickCount"),
}


@dataclass(frozen=True)
class EmailEventLocator:
    """Where an email event lives: quotes/{parent_id}/emailEvents/{email_event_id}."""
    parent_id: str
    email_event_id: str


# =============================================================================
# SIGNATURE
# =============================================================================


def verify_postmark_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check X-Postmark-Signature against HMAC-SHA256(secret, raw_body).

    WHAT: Constant-time comparison of the decoded digests
    WHY: Rejects forged callbacks before any parsing or storage access

    Args:
        raw_body: Request body exactly as received
        signature: Base64 signature header value
        secret: Shared webhook secret

    Returns:
        True only if every check passes
    """
    if not secret or not signature:
        return False

    try:
        provided = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    if len(provided) != len(expected):
        return False

    return hmac.compare_digest(expected, provided)


def authenticate(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Raise WebhookAuthenticationError unless the signature is valid.

    The specific cause is logged; the exception message stays generic.
    """
    if not secret:
        logger.error("[POSTMARK] POSTMARK_WEBHOOK_SECRET not configured")
        raise WebhookAuthenticationError()
    if not signature:
        logger.warning("[POSTMARK] Missing X-Postmark-Signature header")
        raise WebhookAuthenticationError()
    if not verify_postmark_signature(raw_body, signature, secret):
        logger.warning("[POSTMARK] Invalid webhook signature", extra={"body_bytes": len(raw_body)})
        raise WebhookAuthenticationError()


# =============================================================================
# SEND-TIME INDEXING
# =============================================================================


def record_email_sent(
    store: DocumentStore,
    parent_id: str,
    to: str,
    *,
    message_id: Optional[str],
    status: str = "sent",
    error: Optional[str] = None,
) -> Optional[EmailEventLocator]:
    """Write the email event for a send attempt and index its messageId.

    Failed sends are recorded too (status="failed" with the error) but are
    not indexed, since Postmark will never call back for them.

    Returns:
        Locator of the new email event, or None if the event could not be stored
    """
    data: Dict[str, Any] = {
        "to": to,
        "sentAt": SERVER_TIMESTAMP,
        "status": status,
    }
    if error:
        data["error"] = error
    if message_id:
        data["messageId"] = message_id

    try:
        email_event_id = store.create(email_events_collection(parent_id), data)
    except PersistenceError as e:
        logger.error(f"[EMAIL_EVENTS] Failed to record send: {e.message}", extra={"parent_id": parent_id})
        return None

    locator = EmailEventLocator(parent_id=parent_id, email_event_id=email_event_id)

    if status == "sent" and message_id:
        try:
            store.create(
                EMAIL_MESSAGE_IDS,
                {
                    "messageId": message_id,
                    "quoteId": parent_id,
                    "emailEventId": email_event_id,
                    "createdAt": SERVER_TIMESTAMP,
                },
            )
        except PersistenceError as e:
            # The email event exists; only callback routing is lost
            logger.error(
                f"[EMAIL_EVENTS] Failed to index messageId: {e.message}",
                extra={"message_id": message_id, "parent_id": parent_id},
            )

    return locator


def list_email_events(store: DocumentStore, parent_id: str) -> List[StoredDocument]:
    """Email events of one quote, newest first."""
    return store.query(email_events_collection(parent_id), newest_first=True)


# =============================================================================
# CALLBACK APPLICATION
# =============================================================================


def resolve_locator(store: DocumentStore, message_id: str) -> Optional[EmailEventLocator]:
    """Look up the email event a Postmark MessageID belongs to. None on miss."""
    if not message_id:
        return None
    matches = store.query(EMAIL_MESSAGE_IDS, field_name="messageId", value=message_id, limit=1)
    if not matches:
        return None
    entry = matches[0].data
    parent_id = entry.get("quoteId")
    email_event_id = entry.get("emailEventId")
    if not parent_id or not email_event_id:
        logger.warning("[EMAIL_EVENTS] Malformed index entry", extra={"message_id": message_id})
        return None
    return EmailEventLocator(parent_id=parent_id, email_event_id=email_event_id)


def apply_delivery_event(store: DocumentStore, message_id: str, event_type: str) -> bool:
    """Record an open or click on the indexed email event.

    Returns:
        True if an email event was updated, False on routing miss

    Raises:
        ValueError: Unknown event_type
        PersistenceError: Store failure
    """
    if event_type not in EVENT_FIELDS:
        raise ValueError(f"Unsupported email event type: {event_type}")

    locator = resolve_locator(store, message_id)
    if locator is None:
        logger.warning("[EMAIL_EVENTS] No email event for messageId", extra={"message_id": message_id})
        return False

    timestamp_field, counter_field = EVENT_FIELDS[event_type]
    updated = store.update(
        email_events_collection(locator.parent_id),
        locator.email_event_id,
        increments={counter_field: 1},
        set_if_absent={timestamp_field: SERVER_TIMESTAMP},
    )
    if not updated:
        logger.warning(
            "[EMAIL_EVENTS] Indexed email event is missing",
            extra={"message_id": message_id, "parent_id": locator.parent_id},
        )
    return updated


def process_webhook_events(store: DocumentStore, events: Iterable[Any]) -> Dict[str, int]:
    """Apply a batch of Postmark callbacks in order.

    A failure on one entry is logged and does not stop the rest.

    Returns:
        Counts: {"applied", "unmatched", "ignored", "failed"}
    """
    counts = {"applied": 0, "unmatched": 0, "ignored": 0, "failed": 0}

    for event in events:
        if not isinstance(event, dict):
            logger.warning("[POSTMARK] Skipping non-object webhook entry")
            counts["ignored"] += 1
            continue

        record_type = event.get("RecordType")
        message_id = event.get("MessageID")
        event_type = RECORD_TYPES.get(record_type)
        if event_type is None:
            logger.info(f"[POSTMARK] Unhandled webhook event type: {record_type}", extra={"message_id": message_id})
            counts["ignored"] += 1
            continue
        if not isinstance(message_id, str) or not message_id:
            logger.warning(f"[POSTMARK] {record_type} event without MessageID")
            counts["ignored"] += 1
            continue

        try:
            applied = apply_delivery_event(store, message_id, event_type)
        except PersistenceError as e:
            logger.error(
                f"[POSTMARK] Failed to apply {record_type}: {e.message}",
                extra={"message_id": message_id},
            )
            counts["failed"] += 1
            continue

        counts["applied" if applied else "unmatched"] += 1

    return counts
