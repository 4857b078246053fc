"""
Attribution Merge Tests (Unit)
==============================

WHAT: First/last-touch merge rules and the two-store capture flow.
WHY: Attribution is only useful if the original campaign survives later
     untagged visits while fresh click ids still update the record.

REFERENCES:
- backend/leadsignal/services/attribution_capture.py
"""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import unquote

from starlette.responses import Response

from leadsignal.schemas import AttributionRecord
from leadsignal.services.attribution_capture import (
    AttributionStore,
    CookieAttributionStore,
    capture_attribution,
    get_stored_attribution,
    merge_attribution,
    parse_query,
    save_attribution,
)

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=3)


class MemoryStore(AttributionStore):
    name = "memory"

    def __init__(self, record=None):
        self.record = record

    def load(self):
        return self.record

    def save(self, record):
        self.record = record


class BrokenStore(AttributionStore):
    name = "broken"

    def load(self):
        raise RuntimeError("unavailable")

    def save(self, record):
        raise RuntimeError("unavailable")


def test_parse_query_flattens_and_keeps_last_value():
    assert parse_query("https://x.test/p?utm_source=a&utm_source=b&gclid=&x=1") == {
        "utm_source": "b",
        "gclid": "",
        "x": "1",
    }
    assert parse_query(None) == {}


def test_first_touch_sets_landing_context():
    record = merge_attribution(
        None,
        {"utm_source": "google", "gclid": "G1"},
        page_url="https://x.test/?utm_source=google&gclid=G1",
        referrer="https://www.google.com/",
        now=T0,
    )

    assert record.utm_source == "google"
    assert record.gclid == "G1"
    assert record.landing_page_url == "https://x.test/?utm_source=google&gclid=G1"
    assert record.referrer == "https://www.google.com/"
    assert record.first_touch_ts == "2025-01-01T09:00:00.000Z"
    assert record.last_touch_ts == record.first_touch_ts


def test_untagged_visit_keeps_stored_campaign():
    first = merge_attribution(None, {"utm_source": "google", "gclid": "G1"}, page_url="https://x.test/a", now=T0)

    second = merge_attribution(first, {}, page_url="https://x.test/b", referrer="https://x.test/a", now=T1)

    assert second.utm_source == "google"
    assert second.gclid == "G1"
    assert second.last_touch_ts == "2025-01-04T09:00:00.000Z"


def test_new_values_override_per_field():
    first = merge_attribution(None, {"utm_source": "google", "utm_campaign": "spring"}, now=T0)

    second = merge_attribution(first, {"utm_source": "facebook", "utm_campaign": ""}, now=T1)

    assert second.utm_source == "facebook"
    assert second.utm_campaign == "spring"


def test_write_once_fields_never_change():
    first = merge_attribution(None, {}, page_url="https://x.test/landing", referrer="", now=T0)

    second = merge_attribution(first, {"utm_source": "bing"}, page_url="https://x.test/other",
                               referrer="https://bing.com/", now=T1)

    assert second.landing_page_url == "https://x.test/landing"
    assert second.referrer == ""
    assert second.first_touch_ts == first.first_touch_ts


def test_fbc_synthesized_from_fbclid():
    record = merge_attribution(None, {"fbclid": "FBCLID"}, now=T0)

    assert record.fbclid == "FBCLID"
    assert record.fbc == f"fb.1.{int(T0.timestamp() * 1000)}.FBCLID"


def test_meta_cookies_win_over_synthesized_fbc():
    record = merge_attribution(
        None,
        {"fbclid": "FBCLID"},
        cookies={"_fbc": "fb.1.123.cookie", "_fbp": "fb.1.123.456"},
        now=T0,
    )

    assert record.fbc == "fb.1.123.cookie"
    assert record.fbp == "fb.1.123.456"


def test_stored_fbc_retained_without_new_click():
    first = merge_attribution(None, {"fbclid": "FBCLID"}, now=T0)

    second = merge_attribution(first, {}, now=T1)

    assert second.fbc == first.fbc


def test_merge_does_not_mutate_stored_record():
    stored = AttributionRecord(utm_source="google")

    merge_attribution(stored, {"utm_source": "bing"}, now=T0)

    assert stored.utm_source == "google"


class TestCapture:
    def test_capture_saves_to_every_store(self):
        a, b = MemoryStore(), MemoryStore()

        record = capture_attribution("https://x.test/?utm_source=news", None, [a, b], now=T0)

        assert a.record == record
        assert b.record == record
        assert record.utm_source == "news"

    def test_capture_reads_from_first_store_with_a_record(self):
        stored = merge_attribution(None, {"utm_source": "google"}, now=T0)
        cookie, durable = MemoryStore(), MemoryStore(stored)

        record = capture_attribution("https://x.test/", None, [cookie, durable], now=T1)

        assert record.utm_source == "google"
        assert record.first_touch_ts == stored.first_touch_ts
        # Restored into the store that had lost it
        assert cookie.record == record

    def test_store_failures_are_isolated(self):
        good = MemoryStore()

        record = capture_attribution("https://x.test/?gclid=G", None, [BrokenStore(), good], now=T0)

        assert record.gclid == "G"
        assert good.record == record
        assert save_attribution(record, [BrokenStore(), good]) == 1

    def test_get_stored_ignores_empty_records(self):
        assert get_stored_attribution([MemoryStore(AttributionRecord()), MemoryStore()]) is None


class TestCookieStore:
    def test_save_sets_cookie_and_load_reads_it_back(self):
        response = Response()
        record = AttributionRecord(utm_source="google", gclid="G1")

        CookieAttributionStore({}, response, cookie_name="ls_attr", max_age_days=90).save(record)

        header = response.headers["set-cookie"]
        assert header.startswith("ls_attr=")
        assert "Max-Age=7776000" in header
        assert "Path=/" in header
        assert "samesite=lax" in header.lower()
        assert "httponly" not in header.lower()

        value = header.split(";", 1)[0].split("=", 1)[1]
        assert json.loads(unquote(value)) == {"utm_source": "google", "gclid": "G1"}
        assert CookieAttributionStore({"ls_attr": value}).load() == record

    def test_load_without_cookie_is_none(self):
        assert CookieAttributionStore({}).load() is None
