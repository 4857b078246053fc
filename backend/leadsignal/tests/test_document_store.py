"""
SqlDocumentStore Tests
======================

WHAT: create/get/set/update/query semantics of the SQL-backed document store.
WHY: Webhook idempotence and lead upserts depend on set-if-absent, increments
     and on_create behaving exactly as documented.
"""

import pytest

from leadsignal.exceptions import PersistenceError
from leadsignal.services.document_store import SERVER_TIMESTAMP, SqlDocumentStore


class TestCreateAndGet:
    def test_create_generates_id_and_round_trips(self, store):
        doc_id = store.create("things", {"name": "a", "nested": {"n": 1}})

        doc = store.get("things", doc_id)
        assert doc is not None
        assert doc.id == doc_id
        assert doc.data == {"name": "a", "nested": {"n": 1}}

    def test_create_with_existing_id_fails(self, store):
        store.create("things", {"n": 1}, doc_id="fixed")

        with pytest.raises(PersistenceError):
            store.create("things", {"n": 2}, doc_id="fixed")

        assert store.get("things", "fixed").data == {"n": 1}

    def test_get_missing_returns_none(self, store):
        assert store.get("things", "nope") is None

    def test_collections_are_isolated(self, store):
        store.create("a", {"v": 1}, doc_id="same")
        store.create("b", {"v": 2}, doc_id="same")

        assert store.get("a", "same").data == {"v": 1}
        assert store.get("b", "same").data == {"v": 2}


class TestServerTimestamp:
    def test_sentinel_resolved_by_clock(self, session_factory):
        store = SqlDocumentStore(session_factory, clock=lambda: "2026-01-01T00:00:00+00:00")

        doc_id = store.create("things", {"at": SERVER_TIMESTAMP, "inner": {"at": SERVER_TIMESTAMP}})

        data = store.get("things", doc_id).data
        assert data["at"] == "2026-01-01T00:00:00+00:00"
        assert data["inner"]["at"] == "2026-01-01T00:00:00+00:00"


class TestSet:
    def test_set_creates_with_on_create_fields(self, store):
        created = store.set("leads", "k", {"name": "Jane"}, on_create={"createdAt": "first"})

        assert created is True
        assert store.get("leads", "k").data == {"name": "Jane", "createdAt": "first"}

    def test_set_merges_and_skips_on_create_for_existing(self, store):
        store.set("leads", "k", {"name": "Jane", "zip": "12345"}, on_create={"createdAt": "first"})

        created = store.set("leads", "k", {"name": "Jane Doe"}, on_create={"createdAt": "second"})

        assert created is False
        assert store.get("leads", "k").data == {"name": "Jane Doe", "zip": "12345", "createdAt": "first"}

    def test_set_merges_when_insert_loses_race(self, session_factory):
        class LateLockStore(SqlDocumentStore):
            """Misses the row on the first locked read, as a concurrent insert would."""
            misses = 1

            def _locked(self, session, collection, doc_id):
                if self.misses:
                    self.misses -= 1
                    return None
                return super()._locked(session, collection, doc_id)

        racing = LateLockStore(session_factory)
        racing.create("leads", {"name": "Jane", "createdAt": "first"}, doc_id="k")

        created = racing.set("leads", "k", {"zip": "12345"}, on_create={"createdAt": "second"})

        assert created is False
        assert racing.get("leads", "k").data == {"name": "Jane", "zip": "12345", "createdAt": "first"}


class TestUpdate:
    def test_update_missing_document_returns_false(self, store):
        assert store.update("things", "missing", increments={"n": 1}) is False

    def test_increments_accumulate(self, store):
        store.create("things", {"n": 0}, doc_id="d")

        store.update("things", "d", increments={"n": 1, "m": 2})
        store.update("things", "d", increments={"n": 1})

        assert store.get("things", "d").data == {"n": 2, "m": 2}

    def test_set_if_absent_keeps_first_value(self, store):
        store.create("things", {}, doc_id="d")

        store.update("things", "d", set_if_absent={"first": "one"})
        store.update("things", "d", set_if_absent={"first": "two"}, fields={"last": "two"})

        data = store.get("things", "d").data
        assert data["first"] == "one"
        assert data["last"] == "two"


class TestQuery:
    def test_query_exact_field_match(self, store):
        store.create("idx", {"messageId": "m-1", "quoteId": "q1"})
        store.create("idx", {"messageId": "m-2", "quoteId": "q2"})

        matches = store.query("idx", field_name="messageId", value="m-2")

        assert [m.data["quoteId"] for m in matches] == ["q2"]

    def test_query_without_filter_returns_all(self, store):
        store.create("idx", {"n": 1})
        store.create("idx", {"n": 2})
        store.create("other", {"n": 3})

        assert sorted(d.data["n"] for d in store.query("idx")) == [1, 2]

    def test_query_limit(self, store):
        for n in range(3):
            store.create("idx", {"n": n})

        assert len(store.query("idx", limit=2)) == 2
