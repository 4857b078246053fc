"""Vendor forwarder base class.

WHAT:
    Shared gatekeeping and failure isolation for every ad/analytics vendor:
    - Missing credentials -> skipped, no network call
    - Kill-switch off     -> skipped, no network call
    - Vendor error        -> skipped with an "error: ..." reason

WHY:
    Forwarding is a side effect of accepting an event, never a condition of
    it. A broken or unconfigured vendor must not fail the request or any
    other vendor, so `forward()` never raises.

REFERENCES:
    - leadsignal/services/forwarders/__init__.py (concurrent fan-out)
    - leadsignal/routers/events.py
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import httpx

from leadsignal.exceptions import VendorForwardingError
from leadsignal.schemas import CanonicalEvent, ForwardResult
from leadsignal.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 8.0


class Forwarder(ABC):
    """One vendor integration.

    Subclasses set:
        vendor: Result key ("ga4", "google_ads", "meta")
        label: Human name used in skip reasons
        required_settings: Settings fields that must all be non-empty
        enabled_setting: Settings field holding the kill-switch
    """

    vendor: str = ""
    label: str = ""
    required_settings: Iterable[str] = ()
    enabled_setting: Optional[str] = None

    def __init__(
        self,
        settings: Any,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.settings = settings
        self.transport = transport
        self.timeout = timeout

    def setting(self, name: str) -> Optional[str]:
        value = getattr(self.settings, name, None)
        if isinstance(value, str):
            value = value.strip()
        return value or None

    def missing_credentials(self) -> List[str]:
        return [name for name in self.required_settings if not self.setting(name)]

    def is_enabled(self) -> bool:
        if self.enabled_setting is None:
            return True
        return bool(getattr(self.settings, self.enabled_setting, False))

    def skip_reason(self, event: CanonicalEvent) -> Optional[str]:
        """Event-specific reason not to send (e.g. no click id). None to send."""
        return None

    async def forward(self, event: CanonicalEvent) -> ForwardResult:
        """Send the event to this vendor. Never raises."""
        missing = self.missing_credentials()
        if missing:
            logger.debug(
                f"[FORWARD] {self.label} not configured",
                extra={"vendor": self.vendor, "missing": missing},
            )
            return ForwardResult(status="skipped", reason=f"{self.label} env not set")

        if not self.is_enabled():
            return ForwardResult(status="skipped", reason=f"{self.label} forwarding disabled")

        reason = self.skip_reason(event)
        if reason:
            return ForwardResult(status="skipped", reason=reason)

        try:
            await self.send(event)
        except VendorForwardingError as e:
            logger.warning(
                f"[FORWARD] {self.label} rejected event: {e.message}",
                extra={"vendor": self.vendor, "event_id": event.event_id, "status_code": e.status_code},
            )
            capture_exception(e, extra={"vendor": self.vendor, "event_id": event.event_id})
            return ForwardResult(status="skipped", reason=f"error: {e.message}")
        except httpx.HTTPError as e:
            logger.warning(
                f"[FORWARD] {self.label} unreachable: {e}",
                extra={"vendor": self.vendor, "event_id": event.event_id},
            )
            capture_exception(e, extra={"vendor": self.vendor, "event_id": event.event_id})
            return ForwardResult(status="skipped", reason=f"error: {type(e).__name__}")
        except Exception as e:
            logger.exception(
                f"[FORWARD] {self.label} forwarder crashed",
                extra={"vendor": self.vendor, "event_id": event.event_id},
            )
            capture_exception(e, extra={"vendor": self.vendor, "event_id": event.event_id})
            return ForwardResult(status="skipped", reason=f"error: {e}")

        logger.info(
            f"[FORWARD] {self.label} accepted event",
            extra={"vendor": self.vendor, "event_id": event.event_id, "event_name": event.event_name},
        )
        return ForwardResult(status="sent")

    @abstractmethod
    async def send(self, event: CanonicalEvent) -> None:
        """Perform the vendor call. Raise VendorForwardingError on rejection."""

    async def post_json(
        self,
        url: str,
        json: Dict[str, Any],
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """POST a JSON body; raise VendorForwardingError on any 4xx/5xx."""
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            response = await client.post(url, json=json, params=params, headers=headers)

        if response.status_code >= 400:
            raise VendorForwardingError(
                f"{response.status_code}: {_error_message(response)}",
                vendor=self.vendor,
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}


def _error_message(response: httpx.Response) -> str:
    """Best-effort vendor error text, truncated."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])[:200]
    return response.text[:200]
