"""Add sync_cursors.page_cursor and deleted_records

Revision ID: 20260315_000002
Revises: 20260301_000001
Create Date: 2026-03-15 09:00:00.000000

WHAT:
    - sync_cursors.page_cursor: resume point inside an unfinished pass over an
      id-ordered stream (checkout events)
    - deleted_records: deletion markers so stale updates cannot recreate
      deleted rows

REFERENCES:
    - storesync/models.py (SyncCursor, DeletedRecord)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260315_000002'
down_revision = '20260301_000001'
branch_labels = None
depends_on = None


resource_type_enum = postgresql.ENUM(
    'customers', 'orders', 'products', 'events',
    name='resourcetypeenum', create_type=False,
)


def upgrade() -> None:
    op.add_column('sync_cursors', sa.Column('page_cursor', sa.Text(), nullable=True))

    op.create_table(
        'deleted_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'tenant_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('tenants.id'), nullable=False, index=True,
        ),
        sa.Column('resource_type', resource_type_enum, nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=False, index=True),
        sa.UniqueConstraint(
            'tenant_id', 'resource_type', 'external_id',
            name='uq_deleted_record_tenant_resource_external',
        ),
    )


def downgrade() -> None:
    op.drop_table('deleted_records')
    op.drop_column('sync_cursors', 'page_cursor')
