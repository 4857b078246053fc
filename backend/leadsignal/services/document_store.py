"""Document store interface and SQLAlchemy implementation.

WHAT:
    A narrow persistence interface (create / get / set / update / query) over
    JSON documents addressed by (collection, id), and an implementation backed
    by the `documents` table.

WHY:
    The pipeline only needs single-document atomicity: create a record, read it
    back, merge fields into it, bump counters on it, and find records by an
    exact field match. Keeping the interface that small lets the normalizer,
    the lead autosave and the webhook receiver stay storage-agnostic.

HOW:
    Every operation opens its own short-lived session. `update` locks the row
    (SELECT ... FOR UPDATE) so concurrent webhook deliveries for the same
    record serialize instead of losing increments.

REFERENCES:
    - leadsignal/models.py (Document)
    - leadsignal/services/email_tracking_service.py (atomic counter updates)
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadsignal.exceptions import PersistenceError
from leadsignal.models import Document

logger = logging.getLogger(__name__)


class _ServerTimestamp:
    """Sentinel replaced by the store's clock at write time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass
class StoredDocument:
    """A document as returned by get/query."""
    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


class DocumentStore(ABC):
    """Persistence collaborator used by the pipeline."""

    @abstractmethod
    def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Insert a new document and return its id. Fails if the id exists."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        """Return the document or None."""

    @abstractmethod
    def set(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        on_create: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Merge `data` into the document, creating it if needed.

        `on_create` fields are only written when the document is new.
        Returns True if the document was created.
        """

    @abstractmethod
    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None,
        set_if_absent: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Atomically update one existing document.

        Returns False if the document does not exist.
        """

    @abstractmethod
    def query(
        self,
        collection: str,
        field_name: Optional[str] = None,
        value: Any = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[StoredDocument]:
        """Return documents in a collection, optionally filtered by exact match."""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqlDocumentStore(DocumentStore):
    """DocumentStore backed by the `documents` table.

    Usage:
        ```python
        store = SqlDocumentStore(SessionLocal)
        doc_id = store.create("conversion_events", {"event_name": "lead_submitted"})
        store.update("conversion_events", doc_id, increments={"views": 1})
        ```
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Optional[Callable[[], str]] = None,
    ):
        """
        Args:
            session_factory: sessionmaker (or any callable returning a Session)
            clock: Returns the ISO timestamp used for SERVER_TIMESTAMP
        """
        self._session_factory = session_factory
        self._clock = clock or _utc_now_iso

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self, collection: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[DOC_STORE] Write failed for collection {collection}: {e}")
            raise PersistenceError(f"Document store operation failed: {e}", collection=collection) from e
        finally:
            session.close()

    def _resolve(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Replace SERVER_TIMESTAMP sentinels (including nested ones)."""
        now = None
        resolved: Dict[str, Any] = {}
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                now = now or self._clock()
                resolved[key] = now
            elif isinstance(value, dict):
                resolved[key] = self._resolve(value)
            else:
                resolved[key] = value
        return resolved

    @staticmethod
    def _locked(session: Session, collection: str, doc_id: str) -> Optional[Document]:
        """Load one row with SELECT ... FOR UPDATE."""
        return (
            session.query(Document)
            .filter(Document.collection == collection, Document.id == doc_id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def _to_stored(doc: Document) -> StoredDocument:
        return StoredDocument(id=doc.id, data=dict(doc.data or {}), created_at=doc.created_at)

    # ------------------------------------------------------------------
    # DocumentStore
    # ------------------------------------------------------------------

    def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uuid4().hex
        with self._session(collection) as session:
            session.add(Document(collection=collection, id=doc_id, data=self._resolve(data)))
            session.flush()
        return doc_id

    def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        with self._session(collection) as session:
            doc = session.get(Document, (collection, doc_id))
            return self._to_stored(doc) if doc else None

    def set(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        on_create: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            return self._set_once(collection, doc_id, data, on_create)
        except PersistenceError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            # Lost the first insert to a concurrent writer; the row exists now
            logger.info(f"[DOC_STORE] Insert race on {collection}/{doc_id}, merging instead")
            return self._set_once(collection, doc_id, data, on_create)

    def _set_once(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        on_create: Optional[Dict[str, Any]],
    ) -> bool:
        with self._session(collection) as session:
            doc = self._locked(session, collection, doc_id)
            if doc is None:
                merged = {**(on_create or {}), **data}
                session.add(Document(collection=collection, id=doc_id, data=self._resolve(merged)))
                return True

            # Reassign so the JSON column is flagged dirty
            doc.data = {**(doc.data or {}), **self._resolve(data)}
            return False

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None,
        set_if_absent: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._session(collection) as session:
            doc = self._locked(session, collection, doc_id)
            if doc is None:
                return False

            data = dict(doc.data or {})
            data.update(self._resolve(fields or {}))

            for key, value in self._resolve(set_if_absent or {}).items():
                if data.get(key) is None:
                    data[key] = value

            for key, amount in (increments or {}).items():
                data[key] = int(data.get(key) or 0) + amount

            doc.data = data
            return True

    def query(
        self,
        collection: str,
        field_name: Optional[str] = None,
        value: Any = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[StoredDocument]:
        with self._session(collection) as session:
            q = session.query(Document).filter(Document.collection == collection)
            if field_name is not None:
                q = q.filter(Document.data[field_name].as_string() == str(value))
            if newest_first:
                q = q.order_by(Document.created_at.desc())
            else:
                q = q.order_by(Document.created_at.asc())
            if limit:
                q = q.limit(limit)
            return [self._to_stored(doc) for doc in q.all()]
