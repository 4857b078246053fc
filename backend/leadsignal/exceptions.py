"""
Pipeline Exceptions
===================

Custom exception types for the attribution and conversion-event pipeline.

WHY THIS FILE EXISTS
--------------------
Each stage of the pipeline fails differently, and only some failures are
visible to the caller:
- Validation errors (bad inbound event) -> 400 to the caller
- Authentication errors (forged webhook) -> 401 to the caller
- Vendor forwarding errors -> absorbed into a per-vendor "skipped" result
- Persistence errors on the authoritative path -> 500 to the caller

Routing misses (unknown webhook messageId) are not exceptions at all; the
resolver returns None and the receiver moves on.

RELATED FILES
-------------
- leadsignal/services/event_normalizer.py: Raises EventValidationError
- leadsignal/services/email_tracking_service.py: Raises WebhookAuthenticationError
- leadsignal/services/forwarders/base.py: Raises and absorbs VendorForwardingError
- leadsignal/services/document_store.py: Raises PersistenceError
- leadsignal/services/lead_tracker.py: Raises LeadTrackingError
"""

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    USAGE:
        try:
            event = normalize_event(payload)
        except PipelineError as e:
            logger.warning(f"[PIPELINE] {e.message}")
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EventValidationError(PipelineError):
    """
    Raised when an inbound event fails schema validation.

    WHAT:
        Carries a machine-readable list of issues, one per failed field:
        {"loc": ["lead", "value"], "msg": "...", "type": "float_parsing"}

    WHY:
        The whole request is rejected; nothing is partially accepted.
    """

    def __init__(self, issues: List[Dict[str, Any]]):
        super().__init__(f"Event failed validation ({len(issues)} issue(s))")
        self.issues = issues


class WebhookAuthenticationError(PipelineError):
    """
    Raised when a webhook signature cannot be verified.

    The message is generic. The specific cause (missing secret,
    missing header, bad base64, length or digest mismatch) is only logged.
    """

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class VendorForwardingError(PipelineError):
    """Raised inside a forwarder when a vendor call fails."""

    def __init__(self, message: str, vendor: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.vendor = vendor
        self.status_code = status_code


class PersistenceError(PipelineError):
    """Raised when the document store cannot complete a write or read."""

    def __init__(self, message: str, collection: Optional[str] = None):
        super().__init__(message)
        self.collection = collection


class LeadTrackingError(PipelineError):
    """
    Raised by the lead tracker when the external pipeline rejects a lead.

    Only the authoritative POST path raises this; the local autosave path
    swallows its failures.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
