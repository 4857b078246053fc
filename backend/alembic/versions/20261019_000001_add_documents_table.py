"""Add documents table backing the pipeline's document store.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    Creates the single `documents` table:
    - collection + id: composite primary key (e.g. "leads", "email:jane%40example.com")
    - data: JSON body of the record
    - created_at / updated_at: bookkeeping timestamps

    Collections stored here:
    - conversion_events: canonical events, keyed by event_id
    - leads: autosaved lead forms, keyed by email
    - attribution: durable attribution records, keyed by visitor id
    - emailMessageIds: Postmark MessageID -> email event index
    - quotes/{id}/emailEvents: per-quote email send records

WHY:
    Every consumer uses the same small access pattern (create, get, merge,
    atomic single-row update, exact-match query), so one JSON table serves
    them all without per-collection migrations.

REFERENCES:
    - leadsignal/models.py (Document)
    - leadsignal/services/document_store.py
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'documents',
        sa.Column('collection', sa.String(), nullable=False),
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('collection', 'id'),
    )
    # Newest-first listing within a collection (email events, audits)
    op.create_index(
        'ix_documents_collection_created_at',
        'documents',
        ['collection', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_documents_collection_created_at', table_name='documents')
    op.drop_table('documents')
