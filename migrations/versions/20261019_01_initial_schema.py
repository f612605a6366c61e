"""initial gym booking schema

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '20261019_01'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')

role = sa.Enum('member', 'trainer', 'admin', name='role')
membership_status = sa.Enum(
    'pending_activation', 'active', 'payment_failed', 'cancelled', 'superseded', 'upgraded',
    name='membershipstatus',
)
payment_type = sa.Enum('one_time', 'subscription', name='paymenttype')
session_type = sa.Enum('course', 'open_gym', name='sessiontype')
course_status = sa.Enum('active', 'cancelled', name='coursestatus')
registration_status = sa.Enum('registered', 'waitlist', 'cancelled', name='registrationstatus')
purchase_status = sa.Enum('pending', 'completed', 'failed', name='purchasestatus')
purchase_type = sa.Enum(
    'membership', 'credit_topup', 'membership_upgrade', 'credits_to_subscription', 'product', name='purchasetype'
)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('first_name', sa.String(), nullable=False),
        sa.Column('last_name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('role', role, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'membership_plans',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('booking_rules', JSON_TYPE, nullable=False),
        sa.Column('duration_months', sa.Integer(), nullable=False),
        sa.Column('payment_type', payment_type, nullable=False),
        sa.Column('stripe_price_id', sa.String(), nullable=True),
        sa.Column('price_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('auto_renewal', sa.Boolean(), nullable=False),
        sa.Column('cancellation_allowed', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    op.create_table(
        'memberships',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('plan_id', sa.UUID(), nullable=False),
        sa.Column('status', membership_status, nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('usage_data', JSON_TYPE, nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(), nullable=True),
        sa.Column('auto_renewal', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['plan_id'], ['membership_plans.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_memberships_user_id', 'memberships', ['user_id'])
    op.create_index('ix_memberships_stripe_customer_id', 'memberships', ['stripe_customer_id'])
    op.create_index('ix_memberships_stripe_subscription_id', 'memberships', ['stripe_subscription_id'])
    op.create_index(
        'uq_memberships_one_active_per_user',
        'memberships',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'course_sessions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('session_type', session_type, nullable=False),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('seat_claims', sa.Integer(), server_default='0', nullable=False),
        sa.Column('registration_deadline_minutes', sa.Integer(), nullable=False),
        sa.Column('cancellation_deadline_minutes', sa.Integer(), nullable=False),
        sa.Column('status', course_status, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_course_sessions_starts_at', 'course_sessions', ['starts_at'])

    op.create_table(
        'registrations',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('session_id', sa.UUID(), nullable=False),
        sa.Column('membership_id', sa.UUID(), nullable=True),
        sa.Column('status', registration_status, nullable=False),
        sa.Column('registered_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('seat_claim', sa.Integer(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(), nullable=True),
        sa.Column('credits_debited', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['membership_id'], ['memberships.id']),
        sa.ForeignKeyConstraint(['session_id'], ['course_sessions.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_registrations_user_id', 'registrations', ['user_id'])
    op.create_index('ix_registrations_session_status', 'registrations', ['session_id', 'status'])
    op.create_index(
        'uq_registrations_live_user_session',
        'registrations',
        ['user_id', 'session_id'],
        unique=True,
        postgresql_where=sa.text("status != 'cancelled'"),
        sqlite_where=sa.text("status != 'cancelled'"),
    )

    op.create_table(
        'training_sessions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('session_date', sa.Date(), nullable=False),
        sa.Column('session_type', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'session_date', 'session_type', name='uq_training_sessions_user_day_type'),
    )
    op.create_index('ix_training_sessions_user_id', 'training_sessions', ['user_id'])

    op.create_table(
        'credit_ledger_entries',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('membership_id', sa.UUID(), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['membership_id'], ['memberships.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_credit_ledger_entries_membership_id', 'credit_ledger_entries', ['membership_id'])

    op.create_table(
        'processed_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id'),
    )

    op.create_table(
        'purchase_records',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('stripe_session_id', sa.String(), nullable=False),
        sa.Column('checkout_url', sa.String(), nullable=True),
        sa.Column('purchase_type', purchase_type, nullable=False),
        sa.Column('item_id', sa.UUID(), nullable=True),
        sa.Column('item_name', sa.String(), nullable=True),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('status', purchase_status, nullable=False),
        sa.Column('stripe_payment_intent_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_session_id'),
    )
    op.create_index('ix_purchase_records_user_id', 'purchase_records', ['user_id'])

    op.create_table(
        'shop_products',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('price_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('stock_quantity', sa.Integer(), nullable=False),
        sa.Column('stripe_price_id', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('stock_quantity >= 0', name='ck_shop_products_stock_non_negative'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('shop_products')
    op.drop_index('ix_purchase_records_user_id', table_name='purchase_records')
    op.drop_table('purchase_records')
    op.drop_table('processed_events')
    op.drop_index('ix_credit_ledger_entries_membership_id', table_name='credit_ledger_entries')
    op.drop_table('credit_ledger_entries')
    op.drop_index('ix_training_sessions_user_id', table_name='training_sessions')
    op.drop_table('training_sessions')
    op.drop_index('uq_registrations_live_user_session', table_name='registrations')
    op.drop_index('ix_registrations_session_status', table_name='registrations')
    op.drop_index('ix_registrations_user_id', table_name='registrations')
    op.drop_table('registrations')
    op.drop_index('ix_course_sessions_starts_at', table_name='course_sessions')
    op.drop_table('course_sessions')
    op.drop_index('uq_memberships_one_active_per_user', table_name='memberships')
    op.drop_index('ix_memberships_stripe_subscription_id', table_name='memberships')
    op.drop_index('ix_memberships_stripe_customer_id', table_name='memberships')
    op.drop_index('ix_memberships_user_id', table_name='memberships')
    op.drop_table('memberships')
    op.drop_table('membership_plans')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')

    bind = op.get_bind()
    for enum in (
        purchase_type, purchase_status, registration_status, course_status,
        session_type, payment_type, membership_status, role,
    ):
        enum.drop(bind, checkfirst=True)
