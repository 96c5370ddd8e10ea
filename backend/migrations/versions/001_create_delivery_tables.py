"""
Alembic migration: Create delivery reconciliation tables.

Creates the marketplace tables the reconciler reads (customers, vendors,
orders, order items), the delivery partner table, and the delivery tables
it owns: assignments, pending claims and cancellations. The uniqueness
rules that settle races between concurrent callers live here as indexes
and constraints.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:12:40.118204
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_ASSIGNMENT_PREDICATE = "status NOT IN ('cancelled', 'failed')"


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.Uuid(), nullable=False, comment='Unique identifier for the record'),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
            comment='Timestamp when record was last updated',
        ),
    ]


def upgrade() -> None:
    """
    Create delivery schema.

    Tables are created parents first so foreign keys resolve.
    """
    op.create_table(
        'customers',
        *_base_columns(),
        sa.Column('full_name', sa.String(length=200), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'vendors',
        *_base_columns(),
        sa.Column('business_name', sa.String(length=200), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('address', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'delivery_partners',
        *_base_columns(),
        sa.Column('full_name', sa.String(length=200), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('is_available', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('is_verified', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('current_latitude', sa.Numeric(precision=9, scale=6), nullable=True),
        sa.Column('current_longitude', sa.Numeric(precision=9, scale=6), nullable=True),
        sa.Column(
            'service_pincodes',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
            comment='Postal codes this partner serves',
        ),
        sa.Column('rating', sa.Numeric(precision=3, scale=2), server_default='0', nullable=False),
        sa.Column('total_deliveries', sa.Integer(), server_default='0', nullable=False),
        sa.Column('successful_deliveries', sa.Integer(), server_default='0', nullable=False),
        sa.CheckConstraint('rating >= 0 AND rating <= 5', name='ck_partner_rating_range'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_delivery_partners_dispatchable',
        'delivery_partners',
        ['is_available', 'is_active'],
    )

    op.create_table(
        'orders',
        *_base_columns(),
        sa.Column('order_number', sa.String(length=50), nullable=False, comment='Human-readable order number'),
        sa.Column('customer_id', sa.Uuid(), nullable=True, comment='Customer who placed the order'),
        sa.Column('total_amount', sa.Numeric(precision=10, scale=2), server_default='0', nullable=False),
        sa.Column('status', sa.String(length=32), server_default='pending', nullable=False),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column(
            'delivery_address',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
            comment='Structured delivery address',
        ),
        sa.Column('delivery_assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('picked_up_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number'),
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_items',
        *_base_columns(),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('vendor_id', sa.Uuid(), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), server_default='1', nullable=False),
        sa.Column('unit_price', sa.Numeric(precision=10, scale=2), server_default='0', nullable=False),
        sa.Column('line_total', sa.Numeric(precision=10, scale=2), server_default='0', nullable=False),
        sa.Column('item_status', sa.String(length=32), server_default='pending', nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('vendor_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_vendor_id', 'order_items', ['vendor_id'])

    op.create_table(
        'delivery_assignments',
        *_base_columns(),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('delivery_partner_id', sa.Uuid(), nullable=False),
        sa.Column('order_item_id', sa.Uuid(), nullable=True),
        sa.Column('vendor_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='assigned', nullable=False),
        sa.Column('priority', sa.String(length=10), server_default='normal', nullable=False),
        sa.Column('pickup_otp', sa.String(length=10), nullable=False),
        sa.Column('delivery_otp', sa.String(length=10), nullable=False),
        sa.Column('pickup_otp_verified', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('pickup_otp_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_otp_verified', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('delivery_otp_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('picked_up_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('delivery_fee', sa.Numeric(precision=10, scale=2), server_default='0', nullable=False),
        sa.CheckConstraint(
            "status IN ('assigned', 'accepted', 'picked_up', 'delivered', 'cancelled', 'failed')",
            name='ck_delivery_assignments_status',
        ),
        sa.CheckConstraint(
            "priority IN ('normal', 'urgent')",
            name='ck_delivery_assignments_priority',
        ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['delivery_partner_id'], ['delivery_partners.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['order_item_id'], ['order_items.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_delivery_assignments_order_id', 'delivery_assignments', ['order_id'])
    op.create_index(
        'ix_delivery_assignments_delivery_partner_id',
        'delivery_assignments',
        ['delivery_partner_id'],
    )
    op.create_index('ix_delivery_assignments_status', 'delivery_assignments', ['status'])
    op.create_index(
        'ix_delivery_assignments_partner_status',
        'delivery_assignments',
        ['delivery_partner_id', 'status'],
    )
    # At most one active assignment per order
    op.create_index(
        'uq_delivery_assignments_active_order',
        'delivery_assignments',
        ['order_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_ASSIGNMENT_PREDICATE),
    )

    op.create_table(
        'pending_delivery_claims',
        *_base_columns(),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('order_item_id', sa.Uuid(), nullable=True),
        sa.Column('vendor_id', sa.Uuid(), nullable=True),
        sa.Column('customer_pincode', sa.String(length=12), nullable=True),
        sa.Column('priority', sa.String(length=10), server_default='normal', nullable=False),
        sa.Column('pickup_otp', sa.String(length=10), nullable=False),
        sa.Column('delivery_otp', sa.String(length=10), nullable=False),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_by_partner_id', sa.Uuid(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['order_item_id'], ['order_items.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(
            ['claimed_by_partner_id'], ['delivery_partners.id'], ondelete='SET NULL'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )

    op.create_table(
        'order_cancellations',
        *_base_columns(),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('delivery_partner_id', sa.Uuid(), nullable=True),
        sa.Column('reason', sa.String(length=40), nullable=False),
        sa.Column('additional_details', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(
            ['delivery_partner_id'], ['delivery_partners.id'], ondelete='SET NULL'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )
    op.create_index(
        'ix_order_cancellations_delivery_partner_id',
        'order_cancellations',
        ['delivery_partner_id'],
    )


def downgrade() -> None:
    """Drop delivery schema in reverse dependency order."""
    op.drop_index('ix_order_cancellations_delivery_partner_id', table_name='order_cancellations')
    op.drop_table('order_cancellations')

    op.drop_table('pending_delivery_claims')

    op.drop_index('uq_delivery_assignments_active_order', table_name='delivery_assignments')
    op.drop_index('ix_delivery_assignments_partner_status', table_name='delivery_assignments')
    op.drop_index('ix_delivery_assignments_status', table_name='delivery_assignments')
    op.drop_index('ix_delivery_assignments_delivery_partner_id', table_name='delivery_assignments')
    op.drop_index('ix_delivery_assignments_order_id', table_name='delivery_assignments')
    op.drop_table('delivery_assignments')

    op.drop_index('ix_order_items_vendor_id', table_name='order_items')
    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')

    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_table('orders')

    op.drop_index('ix_delivery_partners_dispatchable', table_name='delivery_partners')
    op.drop_table('delivery_partners')

    op.drop_table('vendors')
    op.drop_table('customers')
