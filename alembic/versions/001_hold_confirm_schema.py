"""Hold and confirm schema

Revision ID: 001_hold_confirm_schema
Revises:
Create Date: 2026-10-18

Tables:
- Tenant config: tenants, business_hours, restaurant_tables
- Reservation core: booking_holds, bookings, booking_status_events, idempotency_records
- Notifications: notification_outbox
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_hold_confirm_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all database tables."""
    bind = op.get_bind()
    is_postgres = bind.dialect.name == 'postgresql'

    json_type = postgresql.JSON if is_postgres else sa.JSON

    # ===========================================
    # 1. TENANTS (provisioned externally)
    # ===========================================
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('slug', sa.String(100), nullable=False, unique=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='UTC'),
        sa.Column('auto_confirm', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('seating_duration_minutes', sa.Integer, nullable=False, server_default='120'),
        sa.Column('slot_interval_minutes', sa.Integer, nullable=False, server_default='15'),
        sa.Column('hold_ttl_seconds', sa.Integer, nullable=True),
        sa.Column('max_covers_per_slot', sa.Integer, nullable=True),
        sa.Column('allocation_preference', sa.String(30), nullable=True),
        sa.Column('min_lead_minutes', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        'business_hours',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('day_of_week', sa.Integer, nullable=False),
        sa.Column('open_time', sa.Time, nullable=True),
        sa.Column('close_time', sa.Time, nullable=True),
        sa.Column('is_closed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.UniqueConstraint('tenant_id', 'day_of_week', name='uq_business_hours_tenant_day'),
    )

    op.create_table(
        'restaurant_tables',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('capacity', sa.Integer, nullable=False),
        sa.Column('min_capacity', sa.Integer, nullable=False, server_default='1'),
        sa.Column('priority', sa.Integer, nullable=False, server_default='100'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_restaurant_tables_tenant_active', 'restaurant_tables', ['tenant_id', 'is_active'])

    # ===========================================
    # 2. HOLDS
    # ===========================================
    op.create_table(
        'booking_holds',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('table_id', sa.String(36), sa.ForeignKey('restaurant_tables.id', ondelete='SET NULL'), nullable=True),
        sa.Column('party_size', sa.Integer, nullable=False),
        sa.Column('slot_time', sa.DateTime, nullable=False),
        sa.Column('ends_at', sa.DateTime, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('request_key', sa.String(255), nullable=True),
        sa.Column('consumed_by_key', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime, nullable=False),
        sa.Column('consumed_at', sa.DateTime, nullable=True),
        sa.Column('expired_at', sa.DateTime, nullable=True),
    )
    # At most one ACTIVE hold per bound (table, slot)
    op.create_index(
        'uq_booking_holds_active_table_slot',
        'booking_holds',
        ['tenant_id', 'table_id', 'slot_time'],
        unique=True,
        postgresql_where=sa.text("status = 'active' AND table_id IS NOT NULL"),
        sqlite_where=sa.text("status = 'active' AND table_id IS NOT NULL"),
    )
    op.create_index('uq_booking_holds_request_key', 'booking_holds', ['tenant_id', 'request_key'], unique=True)
    op.create_index('ix_booking_holds_status_expires', 'booking_holds', ['status', 'expires_at'])
    op.create_index('ix_booking_holds_tenant_window', 'booking_holds', ['tenant_id', 'slot_time', 'ends_at'])

    # ===========================================
    # 3. BOOKINGS + STATUS EVENTS
    # ===========================================
    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('hold_id', sa.String(36), sa.ForeignKey('booking_holds.id', ondelete='SET NULL'), nullable=True),
        sa.Column('table_id', sa.String(36), sa.ForeignKey('restaurant_tables.id', ondelete='SET NULL'), nullable=True),
        sa.Column('guest_name', sa.String(200), nullable=False),
        sa.Column('guest_first_name', sa.String(100), nullable=True),
        sa.Column('guest_last_name', sa.String(100), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('guest_phone', sa.String(20), nullable=True),
        sa.Column('special_requests', sa.Text, nullable=True),
        sa.Column('party_size', sa.Integer, nullable=False),
        sa.Column('booking_time', sa.DateTime, nullable=False),
        sa.Column('ends_at', sa.DateTime, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('confirmation_number', sa.String(20), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('source', sa.String(30), server_default='widget'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('confirmed_at', sa.DateTime, nullable=True),
        sa.Column('seated_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('cancelled_at', sa.DateTime, nullable=True),
        sa.Column('no_show_at', sa.DateTime, nullable=True),
        sa.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_bookings_tenant_idempotency_key'),
        sa.UniqueConstraint('tenant_id', 'confirmation_number', name='uq_bookings_tenant_confirmation'),
        sa.UniqueConstraint('hold_id', name='uq_bookings_hold'),
    )
    op.create_index('ix_bookings_tenant_time', 'bookings', ['tenant_id', 'booking_time'])
    op.create_index('ix_bookings_table_window', 'bookings', ['table_id', 'booking_time', 'ends_at'])
    op.create_index('ix_bookings_status', 'bookings', ['status'])

    op.create_table(
        'booking_status_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('from_status', sa.String(20), nullable=True),
        sa.Column('to_status', sa.String(20), nullable=False),
        sa.Column('actor', sa.String(100), nullable=False),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_booking_status_events_booking', 'booking_status_events', ['booking_id', 'created_at'])

    # ===========================================
    # 4. IDEMPOTENCY RECORDS
    # ===========================================
    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('request_fingerprint', sa.String(64), nullable=True),
        sa.Column('response_json', json_type, nullable=False),
        sa.Column('status_code', sa.Integer, server_default='200'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_idempotency_tenant_key'),
    )
    op.create_index('ix_idempotency_expires', 'idempotency_records', ['expires_at'])

    # ===========================================
    # 5. NOTIFICATION OUTBOX
    # ===========================================
    op.create_table(
        'notification_outbox',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('booking_id', sa.String(36), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('payload', json_type, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer, server_default='0'),
        sa.Column('max_attempts', sa.Integer, server_default='5'),
        sa.Column('next_attempt_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('sent_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_notification_outbox_pending', 'notification_outbox', ['status', 'next_attempt_at'])
    op.create_index('ix_notification_outbox_booking', 'notification_outbox', ['booking_id'])


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    tables = [
        'notification_outbox',
        'idempotency_records',
        'booking_status_events',
        'bookings',
        'booking_holds',
        'restaurant_tables',
        'business_hours',
        'tenants',
    ]
    for table in tables:
        op.drop_table(table)
