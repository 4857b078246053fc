"""
Vendor Forwarders
=================

Fan-out of canonical events to ad and analytics vendors.

Components:
- base.py: Forwarder base class (credential gate, kill-switch, failure isolation)
- ga4.py: Google Analytics 4 Measurement Protocol
- google_ads.py: Google Ads click-conversion upload
- meta.py: Meta Conversions API

Usage:
    from leadsignal.services.forwarders import build_forwarders, forward_event

    forwarders = build_forwarders(settings)
    results = await forward_event(event, forwarders, timeout=8.0)
    # {"ga4": ForwardResult(status="sent"), "google_ads": ..., "meta": ...}
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from leadsignal.schemas import CanonicalEvent, ForwardResult
from leadsignal.services.forwarders.base import DEFAULT_TIMEOUT_SECONDS, Forwarder
from leadsignal.services.forwarders.ga4 import GA4Forwarder
from leadsignal.services.forwarders.google_ads import GoogleAdsForwarder
from leadsignal.services.forwarders.meta import MetaForwarder

logger = logging.getLogger(__name__)

FORWARDER_CLASSES = (GA4Forwarder, GoogleAdsForwarder, MetaForwarder)


def build_forwarders(settings: Any, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[Forwarder]:
    """Instantiate every vendor forwarder against the given settings."""
    timeout = getattr(settings, "VENDOR_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
    return [cls(settings, transport=transport, timeout=timeout) for cls in FORWARDER_CLASSES]


async def _run_one(forwarder: Forwarder, event: CanonicalEvent, timeout: float) -> ForwardResult:
    try:
        return await asyncio.wait_for(forwarder.forward(event), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"[FORWARD] {forwarder.label} timed out after {timeout}s",
            extra={"vendor": forwarder.vendor, "event_id": event.event_id},
        )
        return ForwardResult(status="skipped", reason="error: timed out")


async def forward_event(
    event: CanonicalEvent,
    forwarders: Sequence[Forwarder],
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Dict[str, ForwardResult]:
    """Run all forwarders concurrently. Every vendor gets a result; none raises."""
    results = await asyncio.gather(*(_run_one(f, event, timeout) for f in forwarders))
    outcome = {f.vendor: result for f, result in zip(forwarders, results)}

    logger.info(
        "[FORWARD] Fan-out complete",
        extra={
            "event_id": event.event_id,
            "sent": [vendor for vendor, r in outcome.items() if r.status == "sent"],
        },
    )
    return outcome


__all__ = [
    "Forwarder",
    "GA4Forwarder",
    "GoogleAdsForwarder",
    "MetaForwarder",
    "build_forwarders",
    "forward_event",
]
