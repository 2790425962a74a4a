"""Initial sync schema: tenants, device tokens and synchronized records

Revision ID: 20261017_sync
Revises:
Create Date: 2026-10-17

This migration creates:
1. Organizations and stores (the tenant of every record)
2. Device tokens (hashed bearer credentials bound to one store)
3. Synchronized record tables, each with the sync envelope
   (server_id, store_id, client_ref, sync_version, last_synced_at)
4. Stock movements (the only writer of product quantities)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261017_sync'
down_revision = None
branch_labels = None
depends_on = None


def _envelope():
    return [
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('server_id', sa.String(length=32), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('client_ref', sa.String(length=160), nullable=True),
        sa.Column('sync_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_synced_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def _create_synced_table(name, *columns, indexes=()):
    op.create_table(name,
        *_envelope(),
        *columns,
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'client_ref', name=f'uq_{name}_store_client_ref'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table(name, schema=None) as batch_op:
        batch_op.create_index(batch_op.f(f'ix_{name}_server_id'), ['server_id'], unique=True)
        batch_op.create_index(batch_op.f(f'ix_{name}_store_id'), ['store_id'], unique=False)
        for index_name, index_columns in indexes:
            batch_op.create_index(index_name, index_columns, unique=False)


def upgrade():
    # ==========================================================================
    # 1. TENANTS
    # ==========================================================================
    op.create_table('organizations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('organizations', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_organizations_code'), ['code'], unique=True)
        batch_op.create_index(batch_op.f('ix_organizations_is_active'), ['is_active'], unique=False)

    op.create_table('stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('org_id', 'name', name='uq_stores_org_name'),
        sa.UniqueConstraint('org_id', 'code', name='uq_stores_org_code'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stores', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_stores_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stores_code'), ['code'], unique=False)

    # ==========================================================================
    # 2. DEVICE TOKENS
    # ==========================================================================
    op.create_table('device_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('org_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=True),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('device_tokens', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_device_tokens_store_id'), ['store_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_device_tokens_org_id'), ['org_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_device_tokens_token_hash'), ['token_hash'], unique=True)

    # ==========================================================================
    # 3. SYNCHRONIZED RECORDS
    # ==========================================================================
    _create_synced_table('products',
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('category', sa.String(length=120), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost_cents', sa.Integer(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unit', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.UniqueConstraint('store_id', 'sku', name='uq_products_store_sku'),
        indexes=(
            ('ix_products_store_name', ['store_id', 'name']),
            ('ix_products_store_active', ['store_id', 'is_active']),
            ('ix_products_barcode', ['barcode']),
        ),
    )

    _create_synced_table('customers',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=64), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spent_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        indexes=(('ix_customers_store_name', ['store_id', 'name']),),
    )

    _create_synced_table('employees',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=64), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='cashier'),
        sa.Column('hourly_rate_cents', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
    )

    _create_synced_table('sales',
        sa.Column('receipt_number', sa.String(length=64), nullable=True),
        sa.Column('customer_server_id', sa.String(length=32), nullable=True),
        sa.Column('employee_server_id', sa.String(length=32), nullable=True),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='cash'),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='paid'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='completed'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('voided_at', sa.DateTime(), nullable=True),
        sa.Column('void_reason', sa.Text(), nullable=True),
        indexes=(
            ('ix_sales_store_created', ['store_id', 'created_at']),
            ('ix_sales_customer_server_id', ['customer_server_id']),
            ('ix_sales_employee_server_id', ['employee_server_id']),
        ),
    )

    _create_synced_table('credits',
        sa.Column('customer_server_id', sa.String(length=32), nullable=False),
        sa.Column('sale_server_id', sa.String(length=32), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('amount_paid_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        indexes=(
            ('ix_credits_customer_server_id', ['customer_server_id']),
            ('ix_credits_sale_server_id', ['sale_server_id']),
        ),
    )

    _create_synced_table('purchase_orders',
        sa.Column('po_number', sa.String(length=64), nullable=True),
        sa.Column('supplier', sa.String(length=255), nullable=False),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='pending'),
        sa.Column('expected_date', sa.DateTime(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
    )

    _create_synced_table('clock_events',
        sa.Column('employee_server_id', sa.String(length=32), nullable=False),
        sa.Column('event_type', sa.String(length=16), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        indexes=(('ix_clock_events_employee_server_id', ['employee_server_id']),),
    )

    # ==========================================================================
    # 4. STOCK MOVEMENTS
    # ==========================================================================
    _create_synced_table('stock_movements',
        sa.Column('product_server_id', sa.String(length=32), nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=32), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('previous_quantity', sa.Integer(), nullable=False),
        sa.Column('new_quantity', sa.Integer(), nullable=False),
        sa.Column('movement_key', sa.String(length=160), nullable=True),
        sa.Column('ref_type', sa.String(length=32), nullable=True),
        sa.Column('ref_id', sa.String(length=32), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        indexes=(
            ('ix_stock_movements_store_key', ['store_id', 'movement_key']),
            ('ix_stock_movements_product_server_id', ['product_server_id']),
        ),
    )


def downgrade():
    for name in (
        'stock_movements', 'clock_events', 'purchase_orders', 'credits', 'sales',
        'employees', 'customers', 'products', 'device_tokens', 'stores', 'organizations',
    ):
        op.drop_table(name)
