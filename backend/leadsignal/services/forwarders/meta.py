"""Meta Conversions API (CAPI) forwarder.

WHAT:
    Sends the canonical event to Meta as a server-side website event.

WHY:
    Server-side events survive ad blockers and iOS tracking limits. Sending
    the same event_id as the browser pixel lets Meta dedupe the pair.

HOW:
    POST https://graph.facebook.com/{version}/{pixel_id}/events
    lead_submitted -> Lead, lead_qualified -> QualifiedLead, deal_won -> Purchase

    Email and phone arrive already SHA-256 hashed from the normalizer. The
    phone hash covers the E.164 form including "+".

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/customer-information-parameters
"""

import os
from typing import Any, Dict

from leadsignal.schemas import CanonicalEvent
from leadsignal.services.forwarders.base import Forwarder

META_GRAPH_API_VERSION = os.getenv("META_GRAPH_API_VERSION", "v18.0")
META_GRAPH_BASE_URL = f"https://graph.facebook.com/{META_GRAPH_API_VERSION}"

EVENT_NAMES = {
    "lead_submitted": "Lead",
    "lead_qualified": "QualifiedLead",
    "deal_won": "Purchase",
}


class MetaForwarder(Forwarder):
    vendor = "meta"
    label = "Meta"
    required_settings = ("META_PIXEL_ID", "META_ACCESS_TOKEN")
    enabled_setting = "META_FORWARDING_ENABLED"

    @property
    def events_url(self) -> str:
        return f"{META_GRAPH_BASE_URL}/{self.setting('META_PIXEL_ID')}/events"

    def build_event(self, event: CanonicalEvent) -> Dict[str, Any]:
        """Single CAPI event object with hashed user_data."""
        user_data: Dict[str, Any] = {}
        if event.user.email_hashed:
            user_data["em"] = [event.user.email_hashed]
        if event.user.phone_hashed:
            user_data["ph"] = [event.user.phone_hashed]
        if event.user.ip:
            user_data["client_ip_address"] = event.user.ip
        if event.user.user_agent:
            user_data["client_user_agent"] = event.user.user_agent

        attribution = event.attribution
        if attribution is not None:
            if attribution.fbc:
                user_data["fbc"] = attribution.fbc
            if attribution.fbp:
                user_data["fbp"] = attribution.fbp

        custom_data: Dict[str, Any] = {"currency": event.lead.currency, "lead_id": event.lead.lead_id}
        if event.lead.value is not None:
            custom_data["value"] = event.lead.value
        if event.lead.form_name:
            custom_data["content_name"] = event.lead.form_name

        payload: Dict[str, Any] = {
            "event_name": EVENT_NAMES[event.event_name],
            "event_time": event.event_ts,
            "event_id": event.event_id,  # CRITICAL for deduplication
            "action_source": "website",
            "user_data": user_data,
            "custom_data": custom_data,
        }
        if attribution is not None and attribution.landing_page_url:
            payload["event_source_url"] = attribution.landing_page_url
        return payload

    async def send(self, event: CanonicalEvent) -> None:
        body: Dict[str, Any] = {
            "data": [self.build_event(event)],
            "access_token": self.setting("META_ACCESS_TOKEN"),
        }
        test_event_code = self.setting("META_TEST_EVENT_CODE")
        if test_event_code:
            body["test_event_code"] = test_event_code

        await self.post_json(self.events_url, json=body)
