"""
Event Ingestion Endpoint Tests
==============================

WHAT: POST /v1/events end to end against the SQLite document store.
WHY: This is the authoritative path: validation, dedupe, storage and the
     per-vendor forwarding summary are all observable here.
"""

from leadsignal.models import CONVERSION_EVENTS
from leadsignal.utils.hashing import hash_pii

URL = "/v1/events"


def _payload(**overrides):
    payload = {
        "event_id": "evt-100",
        "event_name": "lead_submitted",
        "event_time": "2025-01-31T12:00:00Z",
        "user": {"email": "Jane@Example.com", "phone": "555-123-4567"},
        "attribution": {"utm_source": "google", "gclid": "G1"},
        "lead": {"lead_id": "L1", "form_name": "quote_start"},
    }
    payload.update(overrides)
    return payload


class TestAccepted:
    def test_event_is_stored_and_vendors_skipped_without_credentials(self, client, store):
        response = client.post(URL, json=_payload(), headers={"User-Agent": "pytest-agent"})

        assert response.status_code == 201
        body = response.json()
        assert body["forwarding"] == {
            "ga4": {"status": "skipped", "reason": "GA4 env not set"},
            "google_ads": {"status": "skipped", "reason": "Google Ads env not set"},
            "meta": {"status": "skipped", "reason": "Meta env not set"},
        }
        event = body["event"]
        assert event["event_id"] == "evt-100"
        assert event["event_ts"] == 1738324800
        assert event["user"]["email_hashed"] == hash_pii("jane@example.com")
        assert event["user"]["user_agent"] == "pytest-agent"

        stored = store.get(CONVERSION_EVENTS, "evt-100")
        assert stored is not None
        assert stored.data["received_at"]
        assert stored.data["attribution"] == {"utm_source": "google", "gclid": "G1"}

    def test_plaintext_pii_never_stored(self, client, store):
        client.post(URL, json=_payload())

        stored = str(store.get(CONVERSION_EVENTS, "evt-100").data)
        assert "example.com" not in stored.lower()
        assert "555-123-4567" not in stored
        assert "+15551234567" not in stored

    def test_client_ip_taken_from_forwarded_for(self, client):
        response = client.post(URL, json=_payload(), headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})

        assert response.json()["event"]["user"]["ip"] == "198.51.100.7"

    def test_defaults_filled_for_minimal_event(self, client, store):
        response = client.post(URL, json={"event_name": "deal_won"})

        assert response.status_code == 201
        event = response.json()["event"]
        assert event["lead"]["currency"] == "USD"
        assert event["event_time"].endswith("Z")
        assert store.get(CONVERSION_EVENTS, event["event_id"]) is not None


class TestDuplicates:
    def test_replayed_event_id_is_not_stored_twice(self, client, store):
        first = client.post(URL, json=_payload())
        second = client.post(URL, json=_payload(event_name="deal_won"))

        assert first.status_code == 201
        assert second.status_code == 200
        body = second.json()
        assert body["status"] == "duplicate"
        assert body["event"]["event_name"] == "lead_submitted"
        assert "received_at" not in body["event"]
        assert len(store.query(CONVERSION_EVENTS)) == 1

    def test_event_id_inserted_concurrently_is_a_duplicate(self, app, client, session_factory):
        from leadsignal.deps import get_document_store
        from leadsignal.services.document_store import SqlDocumentStore

        class StaleReadStore(SqlDocumentStore):
            """First lookup misses, as if another request inserted right after it."""
            stale_reads = 1

            def get(self, collection, doc_id):
                if self.stale_reads:
                    self.stale_reads -= 1
                    return None
                return super().get(collection, doc_id)

        racing = StaleReadStore(session_factory)
        racing.create(CONVERSION_EVENTS, {"event_id": "evt-100", "event_name": "lead_submitted"}, doc_id="evt-100")
        app.dependency_overrides[get_document_store] = lambda: racing

        response = client.post(URL, json=_payload(event_name="deal_won"))

        assert response.status_code == 200
        assert response.json() == {
            "status": "duplicate",
            "event": {"event_id": "evt-100", "event_name": "lead_submitted"},
        }
        assert len(racing.query(CONVERSION_EVENTS)) == 1


class TestRejected:
    def test_unknown_event_name(self, client, store):
        response = client.post(URL, json=_payload(event_name="page_view"))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_failed"
        assert ["event_name"] in [issue["loc"] for issue in body["issues"]]
        assert store.query(CONVERSION_EVENTS) == []

    def test_invalid_json(self, client):
        response = client.post(URL, content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["issues"][0]["type"] == "json_invalid"

    def test_empty_body(self, client):
        response = client.post(URL, content=b"")

        assert response.status_code == 400
        assert response.json()["error"] == "validation_failed"

    def test_array_body(self, client):
        response = client.post(URL, json=[_payload()])

        assert response.status_code == 400

    def test_out_of_range_event_time(self, client, store):
        response = client.post(URL, json=_payload(event_time="9999-12-31T23:59:59-01:00"))

        assert response.status_code == 400
        assert ["event_time"] in [issue["loc"] for issue in response.json()["issues"]]
        assert store.query(CONVERSION_EVENTS) == []

    def test_naive_event_time(self, client):
        response = client.post(URL, json=_payload(event_time="2025-01-01T10:00:00"))

        assert response.status_code == 400

    def test_string_value(self, client):
        response = client.post(URL, json=_payload(lead={"lead_id": "L1", "value": "100"}))

        assert response.status_code == 400
        assert ["lead", "value"] in [issue["loc"] for issue in response.json()["issues"]]


class TestRateLimit:
    def test_requests_over_limit_get_429(self, app, client, settings):
        from leadsignal.deps import get_settings

        tight = settings.model_copy(update={"RATE_LIMIT_EVENTS_PER_MINUTE": 2})
        app.dependency_overrides[get_settings] = lambda: tight

        statuses = [
            client.post(URL, json=_payload(event_id=f"evt-{i}")).status_code
            for i in range(3)
        ]

        assert statuses == [201, 201, 429]

    def test_429_carries_retry_after(self, app, client, settings):
        from leadsignal.deps import get_settings

        tight = settings.model_copy(update={"RATE_LIMIT_EVENTS_PER_MINUTE": 1})
        app.dependency_overrides[get_settings] = lambda: tight

        client.post(URL, json=_payload())
        response = client.post(URL, json=_payload(event_id="evt-2"))

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Limit"] == "1"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
