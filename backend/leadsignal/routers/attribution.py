"""First-party attribution capture endpoints.

WHAT:
    POST /v1/attribution/touch - merge the current page visit into the
        visitor's attribution record and persist it (cookie + durable store)
    GET  /v1/attribution - return the visitor's stored record

WHY:
    Pages call the touch endpoint on load so click ids and UTMs are captured
    on the first page the visitor sees, not only when a form is submitted.

VISITOR ID:
    A random id in its own first-party cookie keys the durable record. It is
    issued on the first touch and refreshed with the same retention window.

REFERENCES:
    - leadsignal/services/attribution_capture.py
"""

import logging
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Request, Response

from leadsignal.deps import Settings, get_document_store, get_settings
from leadsignal.schemas import AttributionRecord, AttributionTouchRequest
from leadsignal.services.attribution_capture import (
    AttributionStore,
    CookieAttributionStore,
    DocumentAttributionStore,
    capture_attribution,
    get_stored_attribution,
)
from leadsignal.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Attribution"])


def _stores(
    request: Request,
    response: Optional[Response],
    store: DocumentStore,
    settings: Settings,
    visitor_id: Optional[str],
) -> List[AttributionStore]:
    stores: List[AttributionStore] = [
        CookieAttributionStore(
            request.cookies,
            response,
            cookie_name=settings.ATTRIBUTION_COOKIE_NAME,
            max_age_days=settings.ATTRIBUTION_MAX_AGE_DAYS,
            secure=settings.is_production,
        )
    ]
    if visitor_id:
        stores.append(DocumentAttributionStore(store, visitor_id, settings.ATTRIBUTION_MAX_AGE_DAYS))
    return stores


@router.post("/attribution/touch", response_model=AttributionRecord, response_model_exclude_none=True)
def touch(
    payload: AttributionTouchRequest,
    request: Request,
    response: Response,
    store: DocumentStore = Depends(get_document_store),
    settings: Settings = Depends(get_settings),
):
    """Capture one page visit.

    Returns the merged record and sets the attribution and visitor cookies.
    """
    visitor_id = request.cookies.get(settings.VISITOR_COOKIE_NAME) or uuid4().hex
    response.set_cookie(
        key=settings.VISITOR_COOKIE_NAME,
        value=visitor_id,
        max_age=settings.ATTRIBUTION_MAX_AGE_DAYS * 24 * 60 * 60,
        path="/",
        samesite="lax",
        secure=settings.is_production,
        httponly=True,
    )

    return capture_attribution(
        payload.url,
        payload.referrer,
        _stores(request, response, store, settings, visitor_id),
        cookies=request.cookies,
    )


@router.get("/attribution", response_model=Optional[AttributionRecord], response_model_exclude_none=True)
def read_attribution(
    request: Request,
    store: DocumentStore = Depends(get_document_store),
    settings: Settings = Depends(get_settings),
):
    """Stored record for this visitor, or null."""
    visitor_id = request.cookies.get(settings.VISITOR_COOKIE_NAME)
    return get_stored_attribution(_stores(request, None, store, settings, visitor_id))
