"""Google Ads click-conversion forwarder.

WHAT:
    Uploads the event as a click conversion so Google Ads can credit the ad
    click (gclid, or gbraid/wbraid for iOS app/web traffic) that produced it.

HOW:
    REST endpoint of ConversionUploadService:
    POST https://googleads.googleapis.com/{version}/customers/{cid}:uploadClickConversions
    Headers: Authorization (OAuth access token), developer-token,
    login-customer-id when accessing through a manager account.

PREREQUISITES:
    1. Conversion action must exist in the Google Ads account
    2. Click id must be captured within the click-through window
    3. Without a click id there is nothing to attribute, so the event is skipped

REFERENCES:
    - https://developers.google.com/google-ads/api/rest/reference/rest/latest/customers/uploadClickConversions
    - https://developers.google.com/google-ads/api/docs/conversions/upload-clicks
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from leadsignal.exceptions import VendorForwardingError
from leadsignal.schemas import CanonicalEvent
from leadsignal.services.forwarders.base import Forwarder

GOOGLE_ADS_API_VERSION = os.getenv("GOOGLE_ADS_API_VERSION", "v17")
GOOGLE_ADS_BASE_URL = f"https://googleads.googleapis.com/{GOOGLE_ADS_API_VERSION}"

CLICK_ID_FIELDS = ("gclid", "gbraid", "wbraid")


def _normalize_customer_id(customer_id: Optional[str]) -> str:
    """Remove dashes from customer ID.

    WHAT: Normalize customer ID to digits only
    WHY: Google Ads API expects 10-digit ID without dashes
    """
    if not customer_id:
        return ""
    return "".join(ch for ch in customer_id if ch.isdigit())


def format_conversion_time(event_ts: int) -> str:
    """'yyyy-mm-dd hh:mm:ss+00:00' as required by ClickConversion.conversionDateTime."""
    return datetime.fromtimestamp(event_ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S+00:00")


class GoogleAdsForwarder(Forwarder):
    vendor = "google_ads"
    label = "Google Ads"
    required_settings = (
        "GADS_CUSTOMER_ID",
        "GADS_DEV_TOKEN",
        "GADS_CONVERSION_ACTION_ID",
        "GADS_ACCESS_TOKEN",
    )
    enabled_setting = "GADS_FORWARDING_ENABLED"

    @property
    def customer_id(self) -> str:
        return _normalize_customer_id(self.setting("GADS_CUSTOMER_ID"))

    def skip_reason(self, event: CanonicalEvent) -> Optional[str]:
        attribution = event.attribution
        if attribution is None or not any(getattr(attribution, f) for f in CLICK_ID_FIELDS):
            return "no Google click id"
        return None

    def build_payload(self, event: CanonicalEvent) -> Dict[str, Any]:
        attribution = event.attribution
        conversion: Dict[str, Any] = {
            "conversionAction": (
                f"customers/{self.customer_id}/conversionActions/"
                f"{self.setting('GADS_CONVERSION_ACTION_ID')}"
            ),
            "conversionDateTime": format_conversion_time(event.event_ts),
            "currencyCode": event.lead.currency,
            # Dedupes re-sent events on Google's side
            "orderId": event.event_id,
        }
        # Exactly one click id per conversion
        for field in CLICK_ID_FIELDS:
            value = getattr(attribution, field)
            if value:
                conversion[field] = value
                break
        if event.lead.value is not None:
            conversion["conversionValue"] = event.lead.value

        identifiers = []
        if event.user.email_hashed:
            identifiers.append({"hashedEmail": event.user.email_hashed})
        if event.user.phone_hashed:
            identifiers.append({"hashedPhoneNumber": event.user.phone_hashed})
        if identifiers:
            conversion["userIdentifiers"] = identifiers

        return {"conversions": [conversion], "partialFailure": True}

    def headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.setting('GADS_ACCESS_TOKEN')}",
            "developer-token": self.setting("GADS_DEV_TOKEN"),
        }
        login_customer_id = _normalize_customer_id(self.setting("GADS_LOGIN_CUSTOMER_ID"))
        if login_customer_id:
            headers["login-customer-id"] = login_customer_id
        return headers

    async def send(self, event: CanonicalEvent) -> None:
        result = await self.post_json(
            f"{GOOGLE_ADS_BASE_URL}/customers/{self.customer_id}:uploadClickConversions",
            json=self.build_payload(event),
            headers=self.headers(),
        )

        # partialFailure=true returns 200 with the per-row error inline
        partial = result.get("partialFailureError")
        if partial:
            raise VendorForwardingError(
                f"partial failure: {partial.get('message', 'unknown')}",
                vendor=self.vendor,
            )
