"""Google Analytics 4 Measurement Protocol forwarder.

WHAT:
    Sends the canonical event to GA4 as a recommended lead-funnel event.

HOW:
    POST https://www.google-analytics.com/mp/collect
        ?measurement_id=<GA4_MEASUREMENT_ID>&api_secret=<GA4_API_SECRET>

    lead_submitted -> generate_lead
    lead_qualified -> qualify_lead
    deal_won       -> close_convert_lead

    The Measurement Protocol needs a client_id. No GA cookie reaches the
    server, so the lead id is used, which keeps all events for one lead on
    the same pseudo-client.

REFERENCES:
    - https://developers.google.com/analytics/devguides/collection/protocol/ga4
    - https://developers.google.com/analytics/devguides/collection/ga4/reference/events
"""

from typing import Any, Dict

from leadsignal.schemas import CanonicalEvent
from leadsignal.services.forwarders.base import Forwarder

GA4_COLLECT_URL = "https://www.google-analytics.com/mp/collect"

EVENT_NAMES = {
    "lead_submitted": "generate_lead",
    "lead_qualified": "qualify_lead",
    "deal_won": "close_convert_lead",
}


class GA4Forwarder(Forwarder):
    vendor = "ga4"
    label = "GA4"
    required_settings = ("GA4_MEASUREMENT_ID", "GA4_API_SECRET")
    enabled_setting = "GA4_FORWARDING_ENABLED"

    def build_payload(self, event: CanonicalEvent) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "event_id": event.event_id,
            "lead_id": event.lead.lead_id,
            "currency": event.lead.currency,
            "engagement_time_msec": 1,
        }
        if event.lead.value is not None:
            params["value"] = event.lead.value
        if event.lead.form_name:
            params["form_name"] = event.lead.form_name[:100]

        attribution = event.attribution
        if attribution is not None:
            for source, target in (
                ("utm_source", "source"),
                ("utm_medium", "medium"),
                ("utm_campaign", "campaign"),
            ):
                value = getattr(attribution, source)
                if value:
                    params[target] = value[:100]

        body: Dict[str, Any] = {
            "client_id": event.lead.lead_id or event.event_id,
            "timestamp_micros": event.event_ts * 1_000_000,
            "events": [{"name": EVENT_NAMES[event.event_name], "params": params}],
        }

        user_data = {}
        if event.user.email_hashed:
            user_data["sha256_email_address"] = [event.user.email_hashed]
        if event.user.phone_hashed:
            user_data["sha256_phone_number"] = [event.user.phone_hashed]
        if user_data:
            body["user_data"] = user_data

        return body

    async def send(self, event: CanonicalEvent) -> None:
        await self.post_json(
            GA4_COLLECT_URL,
            json=self.build_payload(event),
            params={
                "measurement_id": self.setting("GA4_MEASUREMENT_ID"),
                "api_secret": self.setting("GA4_API_SECRET"),
            },
        )
