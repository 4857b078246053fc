"""Lead submission client.

WHAT:
    Posts a lead built from form input plus the visitor's attribution to
    either the local autosave endpoint or an external normalization pipeline.

WHY:
    The two destinations have different contracts:
    - Local autosave (PUT /v1/leads) is best effort. It must never block or
      fail the form, so it runs as a background task and its errors are
      only logged.
    - The external pipeline (POST) is the authoritative conversion record.
      Its failures are raised to the caller so they are not silently lost.

ATTRIBUTION FALLBACK:
    explicit attribution -> stored record (cookie / durable store)
    -> fresh capture -> empty

REFERENCES:
    - leadsignal/routers/leads.py (local autosave endpoint)
    - leadsignal/routers/events.py (normalization endpoint)
    - leadsignal/services/attribution_capture.py
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Set

import httpx

from leadsignal.exceptions import LeadTrackingError
from leadsignal.schemas import AttributionRecord
from leadsignal.services.attribution_capture import AttributionStore, get_stored_attribution
from leadsignal.utils.hashing import hash_pii

logger = logging.getLogger(__name__)

LOCAL_LEADS_PATH = "/v1/leads"


class LeadTracker:
    """Sends lead payloads with attribution attached.

    Usage:
        ```python
        async with LeadTracker("/v1/leads", base_url="https://api.example.com",
                               stores=[cookie_store]) as tracker:
            await tracker.post_lead({
                "event_name": "lead_submitted",
                "user": {"name": "Jane Doe", "email": "jane@example.com", "phone": "5551234567"},
                "lead": {"lead_id": "L1"},
            })
        ```
    """

    def __init__(
        self,
        endpoint: str,
        *,
        base_url: str = "",
        stores: Iterable[AttributionStore] = (),
        capture: Optional[Callable[[], Optional[AttributionRecord]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        """
        Args:
            endpoint: Path or URL to submit to; paths under /v1/leads use the autosave contract
            base_url: Prefix for relative endpoints
            stores: Attribution stores consulted when the payload has no attribution
            capture: Called to capture attribution when no store has a record
            transport: Custom httpx transport (tests)
            timeout: Per-request timeout in seconds
        """
        self.endpoint = endpoint
        self.stores = list(stores)
        self.capture = capture
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._pending: Set[asyncio.Task] = set()

    async def __aenter__(self) -> "LeadTracker":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    @property
    def is_local(self) -> bool:
        return self.endpoint.startswith(LOCAL_LEADS_PATH)

    def resolve_attribution(self, payload: Dict[str, Any]) -> AttributionRecord:
        explicit = payload.get("attribution")
        if explicit:
            if isinstance(explicit, AttributionRecord):
                return explicit
            return AttributionRecord.model_validate(explicit)

        stored = get_stored_attribution(self.stores)
        if stored is not None:
            return stored

        if self.capture is not None:
            try:
                captured = self.capture()
            except Exception as e:
                logger.warning(f"[LEAD_TRACKER] Attribution capture failed: {e}")
                captured = None
            if captured is not None:
                return captured

        return AttributionRecord()

    async def post_lead(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit a lead.

        Returns:
            {"queued": True} for the local autosave path (request runs in the
            background), otherwise the external pipeline's JSON response.

        Raises:
            LeadTrackingError: External pipeline returned non-2xx or was unreachable
        """
        attribution = self.resolve_attribution(payload)

        if self.is_local:
            user = payload.get("user") or {}
            body = {
                "name": user.get("name"),
                "email": user.get("email"),
                "phone": user.get("phone"),
                "referral": attribution.utm_source or attribution.referrer or None,
            }
            self._spawn_autosave({k: v for k, v in body.items() if v is not None})
            return {"queued": True}

        return await self._post_external(payload, attribution)

    # ------------------------------------------------------------------
    # Local autosave (fire-and-forget)
    # ------------------------------------------------------------------

    def _spawn_autosave(self, body: Dict[str, Any]) -> None:
        task = asyncio.create_task(self._autosave(body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _autosave(self, body: Dict[str, Any]) -> bool:
        lead_key = hash_pii(body.get("email"))
        try:
            response = await self._client.put(self.endpoint, json=body)
        except httpx.HTTPError as e:
            logger.warning(f"[LEAD_TRACKER] Autosave request failed: {e}", extra={"lead_key": lead_key})
            return False

        if response.status_code >= 400:
            logger.warning(
                f"[LEAD_TRACKER] Autosave rejected: {response.status_code}",
                extra={"lead_key": lead_key},
            )
            return False

        logger.debug("[LEAD_TRACKER] Autosave accepted", extra={"lead_key": lead_key})
        return True

    async def drain(self) -> None:
        """Wait for outstanding autosave tasks."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self._client.aclose()

    # ------------------------------------------------------------------
    # External pipeline (authoritative)
    # ------------------------------------------------------------------

    async def _post_external(self, payload: Dict[str, Any], attribution: AttributionRecord) -> Dict[str, Any]:
        body = {**payload, "attribution": attribution.model_dump(exclude_none=True)}
        try:
            response = await self._client.post(self.endpoint, json=body)
        except httpx.HTTPError as e:
            logger.error(f"[LEAD_TRACKER] Pipeline unreachable: {e}")
            raise LeadTrackingError(f"trackLead failed: {e}") from e

        if not response.is_success:
            text = response.text
            logger.error(f"[LEAD_TRACKER] Pipeline rejected lead: {response.status_code}")
            raise LeadTrackingError(
                f"trackLead failed: {response.status_code} {text}",
                status_code=response.status_code,
                body=text,
            )

        return response.json() if response.content else {}
