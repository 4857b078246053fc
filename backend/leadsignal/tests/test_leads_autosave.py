"""
Lead Autosave Endpoint Tests
============================

WHAT: PUT /v1/leads upsert semantics against the SQLite document store.
WHY: Partial autosaves arrive repeatedly for the same visitor; each one must
     merge into one record without clobbering earlier fields.
"""

from leadsignal.models import LEADS
from leadsignal.routers.leads import lead_doc_id

URL = "/v1/leads"


def test_lead_doc_id_is_lowercased_and_quoted():
    assert lead_doc_id(" Jane@Example.com ") == "email:jane%40example.com"


def test_autosave_creates_lead(client, store):
    response = client.put(
        URL,
        json={"email": "Jane@Example.com", "firstName": " Jane ", "lastName": "Doe", "zip": "94107"},
        headers={"User-Agent": "pytest-agent", "Referer": "https://x.test/quote"},
    )

    assert response.status_code == 202
    assert response.json() == {"id": "email:jane%40example.com", "accepted": True}

    data = store.get(LEADS, "email:jane%40example.com").data
    assert data["name"] == "Jane Doe"
    assert data["firstName"] == "Jane"
    assert data["zip"] == "94107"
    assert data["status"] == "new"
    assert data["source"] == "web"
    assert data["userAgent"] == "pytest-agent"
    assert data["referer"] == "https://x.test/quote"
    assert data["createdAt"]
    assert data["updatedAt"]


def test_repeat_autosave_merges_and_keeps_created_at(client, store):
    client.put(URL, json={"email": "jane@example.com", "phone": "555-123-4567"})
    created_at = store.get(LEADS, "email:jane%40example.com").data["createdAt"]

    client.put(URL, json={"email": "JANE@example.com", "zip": "10001", "phone": "  "})

    data = store.get(LEADS, "email:jane%40example.com").data
    assert data["createdAt"] == created_at
    assert data["phone"] == "555-123-4567"
    assert data["zip"] == "10001"
    assert len(store.query(LEADS)) == 1


def test_name_used_when_first_and_last_missing(client, store):
    client.put(URL, json={"email": "jo@example.com", "name": "Jo Smith"})

    assert store.get(LEADS, "email:jo%40example.com").data["name"] == "Jo Smith"


def test_attribution_stored_in_camel_case(client, store):
    client.put(URL, json={
        "email": "jane@example.com",
        "attribution": {"utm_source": "google", "gclid": "G1", "landing_page_url": "https://x.test/", "utm_term": ""},
    })

    data = store.get(LEADS, "email:jane%40example.com").data
    assert data["utmSource"] == "google"
    assert data["gclid"] == "G1"
    assert data["landingPageUrl"] == "https://x.test/"
    assert "utmTerm" not in data
    assert "attribution" not in data


def test_missing_email_rejected(client, store):
    response = client.put(URL, json={"firstName": "Jane"})

    assert response.status_code == 400
    assert response.json() == {"accepted": False, "error": "email is required"}
    assert store.query(LEADS) == []


def test_unusable_email_rejected(client):
    assert client.put(URL, json={"email": "a@b"}).status_code == 400
    assert client.put(URL, json={"email": 42}).status_code == 400


def test_non_json_body_rejected_leniently(client):
    response = client.put(URL, content=b"not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["accepted"] is False
