"""First-party attribution capture.

WHAT:
    Merges the current page visit (URL query params, referrer, Meta cookies)
    into the visitor's stored AttributionRecord and persists the result to
    two independent stores: a first-party cookie and a durable record in the
    document store.

WHY:
    Attribution has to survive page loads and sessions. Keeping it in two
    places means losing either one (cleared cookies, expired durable record)
    does not erase how the visitor originally arrived.

MERGE POLICY:
    - utm_* and click ids: URL value wins when present and non-empty,
      otherwise the stored value is kept (field-level last-write-wins)
    - fbc/fbp: first-party _fbc/_fbp cookies, else a fbc synthesized from a
      new fbclid, else the stored value
    - landing_page_url, referrer, first_touch_ts: written once
    - last_touch_ts: refreshed on every merge

    The merge itself is a pure function; all storage goes through the
    AttributionStore interface so it can be tested without a browser or DB.

REFERENCES:
    - leadsignal/routers/attribution.py (HTTP entry point)
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/fbp-and-fbc
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Iterable, Mapping, Optional
from urllib.parse import parse_qsl, quote, unquote, urlsplit

from starlette.responses import Response

from leadsignal.models import ATTRIBUTION
from leadsignal.schemas import AttributionRecord
from leadsignal.services.document_store import SERVER_TIMESTAMP, DocumentStore
from leadsignal.utils.timestamps import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

# Fields a new visit may override when it carries a non-empty value
URL_FIELDS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "gclid",
    "gbraid",
    "wbraid",
    "fbclid",
)

DEFAULT_COOKIE_NAME = "ls_attr"
DEFAULT_MAX_AGE_DAYS = 90


# =============================================================================
# PURE MERGE
# =============================================================================


def parse_query(url: Optional[str]) -> Dict[str, str]:
    """Flatten a URL's query string into {name: value}; repeated names keep the last value."""
    if not url:
        return {}
    try:
        query = urlsplit(url).query
    except ValueError:
        return {}
    return dict(parse_qsl(query, keep_blank_values=True))


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def synthesize_fbc(fbclid: str, now: datetime) -> str:
    """Build a Meta click cookie value: fb.1.<creation ms>.<fbclid>."""
    return f"fb.1.{int(now.timestamp() * 1000)}.{fbclid}"


def merge_attribution(
    stored: Optional[AttributionRecord],
    query: Mapping[str, str],
    *,
    page_url: Optional[str] = None,
    referrer: Optional[str] = None,
    cookies: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None,
) -> AttributionRecord:
    """Merge one page visit into a stored attribution record.

    Args:
        stored: Previously persisted record, or None on first touch
        query: Current URL query params (see parse_query)
        page_url: Current page URL, used as landing page on first touch
        referrer: Referrer of the current page load
        cookies: First-party cookies (reads _fbc and _fbp)
        now: Merge time (defaults to current UTC time)

    Returns:
        New AttributionRecord; `stored` is not modified
    """
    now = now or utc_now()
    previous = stored.model_dump() if stored else {}
    merged = dict(previous)
    cookies = cookies or {}

    for name in URL_FIELDS:
        value = query.get(name)
        if _present(value):
            merged[name] = value

    new_fbclid = query.get("fbclid") if _present(query.get("fbclid")) else None
    if _present(cookies.get("_fbc")):
        merged["fbc"] = cookies["_fbc"]
    elif new_fbclid:
        merged["fbc"] = synthesize_fbc(new_fbclid, now)
    if _present(cookies.get("_fbp")):
        merged["fbp"] = cookies["_fbp"]

    # Write-once fields. An empty referrer on first touch still counts as
    # captured (direct traffic) so a later visit cannot claim it.
    if previous.get("landing_page_url") is None:
        merged["landing_page_url"] = page_url or ""
    if previous.get("referrer") is None:
        merged["referrer"] = referrer or ""

    timestamp = to_iso(now)
    if previous.get("first_touch_ts") is None:
        merged["first_touch_ts"] = timestamp
    merged["last_touch_ts"] = timestamp

    return AttributionRecord.model_validate(merged)


# =============================================================================
# STORES
# =============================================================================


class AttributionStore(ABC):
    """Somewhere an attribution record can be loaded from and saved to."""

    name = "store"

    @abstractmethod
    def load(self) -> Optional[AttributionRecord]:
        ...

    @abstractmethod
    def save(self, record: AttributionRecord) -> None:
        ...


class CookieAttributionStore(AttributionStore):
    """First-party cookie holding the URL-encoded JSON record.

    WHAT: Reads the record from the request cookies, writes Set-Cookie on the response
    WHY: The browser keeps it across sessions for the retention window, and
         client code can read it too (not HttpOnly)
    """

    name = "cookie"

    def __init__(
        self,
        request_cookies: Mapping[str, str],
        response: Optional[Response] = None,
        cookie_name: str = DEFAULT_COOKIE_NAME,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
        secure: bool = False,
    ):
        self.request_cookies = request_cookies
        self.response = response
        self.cookie_name = cookie_name
        self.max_age_seconds = max_age_days * 24 * 60 * 60
        self.secure = secure

    def load(self) -> Optional[AttributionRecord]:
        raw = self.request_cookies.get(self.cookie_name)
        if not raw:
            return None
        return AttributionRecord.model_validate(json.loads(unquote(raw)))

    def save(self, record: AttributionRecord) -> None:
        if self.response is None:
            raise RuntimeError("CookieAttributionStore has no response to write to")
        value = quote(json.dumps(record.model_dump(exclude_none=True), separators=(",", ":")), safe="")
        self.response.set_cookie(
            key=self.cookie_name,
            value=value,
            max_age=self.max_age_seconds,
            path="/",
            samesite="lax",
            secure=self.secure,
            httponly=False,
        )


class DocumentAttributionStore(AttributionStore):
    """Durable key-value record in the document store, keyed by visitor id.

    The retention window lives on the stored document (expires_at); expired
    records load as None and are overwritten on the next save.
    """

    name = "document"

    def __init__(
        self,
        store: DocumentStore,
        visitor_id: str,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    ):
        self.store = store
        self.visitor_id = visitor_id
        self.max_age = timedelta(days=max_age_days)

    def load(self) -> Optional[AttributionRecord]:
        doc = self.store.get(ATTRIBUTION, self.visitor_id)
        if doc is None:
            return None

        expires_at = parse_iso(doc.data.get("expires_at"))
        if expires_at is not None and expires_at <= utc_now():
            logger.debug(f"[ATTRIBUTION] Durable record expired for visitor {self.visitor_id}")
            return None

        record = doc.data.get("record")
        return AttributionRecord.model_validate(record) if record else None

    def save(self, record: AttributionRecord) -> None:
        self.store.set(
            ATTRIBUTION,
            self.visitor_id,
            {
                "record": record.model_dump(exclude_none=True),
                "expires_at": to_iso(utc_now() + self.max_age),
                "updated_at": SERVER_TIMESTAMP,
            },
            on_create={"created_at": SERVER_TIMESTAMP},
        )


# =============================================================================
# CAPTURE
# =============================================================================


def get_stored_attribution(stores: Iterable[AttributionStore]) -> Optional[AttributionRecord]:
    """Return the first record any store yields; unreadable stores are skipped."""
    for store in stores:
        try:
            record = store.load()
        except Exception as e:
            logger.warning(f"[ATTRIBUTION] Failed to load from {store.name} store: {e}")
            continue
        if record is not None and not record.is_empty():
            return record
    return None


def save_attribution(record: AttributionRecord, stores: Iterable[AttributionStore]) -> int:
    """Write the record to every store independently. Returns how many succeeded."""
    saved = 0
    for store in stores:
        try:
            store.save(record)
            saved += 1
        except Exception as e:
            logger.warning(f"[ATTRIBUTION] Failed to save to {store.name} store: {e}")
    return saved


def capture_attribution(
    url: Optional[str],
    referrer: Optional[str],
    stores: Iterable[AttributionStore],
    *,
    cookies: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None,
) -> AttributionRecord:
    """Run the page-load capture: load, merge, persist.

    Never raises on storage problems; the merged record is returned even if
    neither store could be written.
    """
    stores = list(stores)
    stored = get_stored_attribution(stores)
    merged = merge_attribution(
        stored,
        parse_query(url),
        page_url=url,
        referrer=referrer,
        cookies=cookies,
        now=now,
    )

    saved = save_attribution(merged, stores)
    logger.info(
        "[ATTRIBUTION] Captured visit",
        extra={
            "first_touch": stored is None,
            "utm_source": merged.utm_source,
            "has_gclid": bool(merged.gclid),
            "has_fbclid": bool(merged.fbclid),
            "stores_saved": saved,
        },
    )
    return merged
