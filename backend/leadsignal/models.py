"""SQLAlchemy ORM models.

The pipeline talks to persistence through a document-store interface
(see services/document_store.py). This module defines the single table that
backs it: every record is a JSON document addressed by (collection, id).
Sub-collections use path-style names, e.g. "quotes/Q-123/emailEvents".
"""

from datetime import datetime

from sqlalchemy import Column, String, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Collections ---------------------------------------------------

CONVERSION_EVENTS = "conversion_events"
LEADS = "leads"
ATTRIBUTION = "attribution"
EMAIL_MESSAGE_IDS = "emailMessageIds"


def email_events_collection(parent_id: str) -> str:
    """Sub-collection holding email events for one quote."""
    return f"quotes/{parent_id}/emailEvents"


class Document(Base):
    """One JSON document in a named collection.

    WHAT:
        Generic record with a JSON body and bookkeeping timestamps.

    WHY:
        Canonical events, lead autosaves, attribution records, email events
        and the messageId index all share the same access pattern
        (create / get / merge / atomic field update / exact-match query),
        so one table serves them all.
    """
    __tablename__ = "documents"

    collection = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_documents_collection_created_at", "collection", "created_at"),
    )

    def __str__(self):
        return f"Document({self.collection}/{self.id})"
