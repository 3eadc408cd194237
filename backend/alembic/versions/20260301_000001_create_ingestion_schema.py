"""Create ingestion schema (tenants, canonical mirrors, sync bookkeeping)

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 09:00:00.000000

WHAT:
    - tenants: connected stores with encrypted credentials
    - customers / products / orders / order_line_items / store_events:
      tenant-scoped mirrors keyed by (tenant_id, external_id)
    - sync_cursors: watermark and last outcome per (tenant, resource)
    - webhook_deliveries: dedup log for admitted deliveries
    - rejected_records: malformed records kept for replay

WHY:
    Every natural key is scoped by tenant_id so identical storefront ids in
    two stores never collide.

REFERENCES:
    - storesync/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


resource_type_enum = postgresql.ENUM(
    'customers', 'orders', 'products', 'events',
    name='resourcetypeenum', create_type=False,
)
sync_outcome_enum = postgresql.ENUM(
    'success', 'partial', 'failed',
    name='syncoutcomeenum', create_type=False,
)
delivery_outcome_enum = postgresql.ENUM(
    'admitted', 'applied', 'stale', 'malformed', 'deleted', 'aborted',
    name='deliveryoutcomeenum', create_type=False,
)
event_type_enum = postgresql.ENUM(
    'cart', 'checkout',
    name='eventtypeenum', create_type=False,
)
record_source_enum = postgresql.ENUM(
    'poll', 'webhook',
    name='recordsourceenum', create_type=False,
)

ALL_ENUMS = (
    resource_type_enum,
    sync_outcome_enum,
    delivery_outcome_enum,
    event_type_enum,
    record_source_enum,
)


def _uuid_pk():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True)


def _tenant_fk():
    return sa.Column(
        'tenant_id', postgresql.UUID(as_uuid=True),
        sa.ForeignKey('tenants.id'), nullable=False, index=True,
    )


def _mirror_columns():
    """Watermark, revision and bookkeeping timestamps shared by every mirror."""
    return [
        sa.Column('source_created_at', sa.DateTime(), nullable=True),
        sa.Column('source_updated_at', sa.DateTime(), nullable=False),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enums
    # =========================================================================
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    # =========================================================================
    # STEP 2: Tenants
    # =========================================================================
    op.create_table(
        'tenants',
        _uuid_pk(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('shop_domain', sa.String(), nullable=False),
        sa.Column('credential_enc', sa.Text(), nullable=False),
        sa.Column('credential_rotated_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('deactivated_at', sa.DateTime(), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sync_disabled_reason', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_tenants_shop_domain', 'tenants', ['shop_domain'], unique=True)

    # =========================================================================
    # STEP 3: Canonical mirrors
    # =========================================================================
    op.create_table(
        'customers',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('state', sa.String(), nullable=True),
        sa.Column('verified_email', sa.Boolean(), nullable=True),
        sa.Column('orders_count', sa.Integer(), nullable=True),
        sa.Column('total_spent', sa.Numeric(18, 4), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        *_mirror_columns(),
        sa.UniqueConstraint('tenant_id', 'external_id', name='uq_customer_tenant_external'),
    )

    op.create_table(
        'products',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('handle', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('vendor', sa.String(), nullable=True),
        sa.Column('product_type', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(18, 4), nullable=True),
        sa.Column('total_inventory', sa.Integer(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        *_mirror_columns(),
        sa.UniqueConstraint('tenant_id', 'external_id', name='uq_product_tenant_external'),
    )

    op.create_table(
        'orders',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('external_customer_id', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('order_number', sa.Integer(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('total_price', sa.Numeric(18, 4), nullable=False),
        sa.Column('subtotal_price', sa.Numeric(18, 4), nullable=True),
        sa.Column('total_tax', sa.Numeric(18, 4), nullable=True),
        sa.Column('total_discounts', sa.Numeric(18, 4), nullable=True),
        sa.Column('financial_status', sa.String(), nullable=True),
        sa.Column('fulfillment_status', sa.String(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        *_mirror_columns(),
        sa.UniqueConstraint('tenant_id', 'external_id', name='uq_order_tenant_external'),
    )

    op.create_table(
        'order_line_items',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column(
            'order_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True,
        ),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('external_product_id', sa.String(), nullable=True),
        sa.Column('external_variant_id', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('variant_title', sa.String(), nullable=True),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(18, 4), nullable=False),
        sa.Column('total_discount', sa.Numeric(18, 4), nullable=True),
        sa.UniqueConstraint('order_id', 'external_id', name='uq_line_item_order_external'),
    )

    op.create_table(
        'store_events',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('event_type', event_type_enum, nullable=False),
        sa.Column('token', sa.String(), nullable=True),
        sa.Column('external_customer_id', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('total_price', sa.Numeric(18, 4), nullable=True),
        sa.Column('line_item_count', sa.Integer(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *_mirror_columns(),
        sa.UniqueConstraint('tenant_id', 'external_id', name='uq_store_event_tenant_external'),
    )

    # =========================================================================
    # STEP 4: Sync bookkeeping
    # =========================================================================
    op.create_table(
        'sync_cursors',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('resource_type', resource_type_enum, nullable=False),
        sa.Column('watermark', sa.DateTime(), nullable=True),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('last_outcome', sync_outcome_enum, nullable=True),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_applied_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_malformed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('tenant_id', 'resource_type', name='uq_sync_cursor_tenant_resource'),
    )

    op.create_table(
        'webhook_deliveries',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('delivery_id', sa.String(), nullable=False),
        sa.Column('topic', sa.String(), nullable=False),
        sa.Column('resource_type', resource_type_enum, nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('outcome', delivery_outcome_enum, nullable=False, server_default='admitted'),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('tenant_id', 'delivery_id', name='uq_webhook_delivery_tenant_delivery'),
    )
    op.create_index(
        'ix_webhook_deliveries_outcome_received',
        'webhook_deliveries',
        ['outcome', 'received_at'],
    )

    op.create_table(
        'rejected_records',
        _uuid_pk(),
        _tenant_fk(),
        sa.Column('resource_type', resource_type_enum, nullable=False),
        sa.Column('source', record_source_enum, nullable=False),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('replayed_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('rejected_records')
    op.drop_index('ix_webhook_deliveries_outcome_received', table_name='webhook_deliveries')
    op.drop_table('webhook_deliveries')
    op.drop_table('sync_cursors')
    op.drop_table('store_events')
    op.drop_table('order_line_items')
    op.drop_table('orders')
    op.drop_table('products')
    op.drop_table('customers')
    op.drop_index('ix_tenants_shop_domain', table_name='tenants')
    op.drop_table('tenants')

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
