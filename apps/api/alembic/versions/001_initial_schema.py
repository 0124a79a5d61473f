"""Initial schema: organizations, tenants, audit log, payments and webhooks.

Revision ID: 001
Revises:
Create Date: 2024-01-01
"""
from alembic import op
import sqlalchemy as sa

from propledger_api.settings import get_settings


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


AUDIT_APPEND_ONLY_FUNCTION = """
CREATE OR REPLACE FUNCTION audit_log_reject_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'audit_log is append-only: % is not allowed', TG_OP;
END;
$$ LANGUAGE plpgsql
"""

AUDIT_APPEND_ONLY_TRIGGER = """
CREATE TRIGGER audit_log_append_only
BEFORE UPDATE OR DELETE ON audit_log
FOR EACH ROW EXECUTE FUNCTION audit_log_reject_mutation()
"""

APP_ROLE_CREATE = """
DO $$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = '{role}') THEN
        CREATE ROLE "{role}" NOLOGIN;
    END IF;
END
$$
"""

APP_TABLES = (
    "organizations",
    "tenants",
    "charges",
    "payments",
    "allocations",
    "payment_disputes",
    "webhook_events",
    "webhook_failures",
)


def grant_app_role(role: str) -> None:
    """Give the application role full access except UPDATE/DELETE on audit_log."""
    op.execute(APP_ROLE_CREATE.format(role=role))
    op.execute(f'GRANT SELECT, INSERT, UPDATE, DELETE ON {", ".join(APP_TABLES)} TO "{role}"')
    op.execute(f'GRANT USAGE, SELECT ON SEQUENCE webhook_failures_id_seq TO "{role}"')
    op.execute(f'REVOKE ALL ON audit_log FROM "{role}"')
    op.execute(f'GRANT SELECT, INSERT ON audit_log TO "{role}"')
    op.execute(f'GRANT USAGE, SELECT ON SEQUENCE audit_log_id_seq TO "{role}"')


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'tenants',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('org_id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tenants_org_id', 'tenants', ['org_id'])

    # Audit log (append-only, hash-chained)
    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('org_id', sa.String(length=36), nullable=False),
        sa.Column('entity', sa.String(length=100), nullable=False),
        sa.Column('entity_id', sa.String(length=255), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('actor_id', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('prev_hash', sa.LargeBinary(length=32), nullable=True),
        sa.Column('hash', sa.LargeBinary(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_log_id', 'audit_log', ['id'])
    op.create_index('ix_audit_log_org_id', 'audit_log', ['org_id'])
    op.create_index('ix_audit_log_action', 'audit_log', ['action'])
    op.create_index(
        'ix_audit_log_chain', 'audit_log', ['org_id', 'entity', 'entity_id', 'created_at', 'id']
    )

    op.create_table(
        'charges',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('org_id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.CheckConstraint('amount_cents >= 0', name='ck_charges_amount_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_charges_org_id', 'charges', ['org_id'])
    op.create_index(
        'ix_charges_tenant_outstanding', 'charges', ['tenant_id', 'status', 'due_date', 'created_at']
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('org_id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('provider_payment_id', sa.String(length=255), nullable=False),
        sa.Column('provider_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.CheckConstraint('amount_cents >= 0', name='ck_payments_amount_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_payment_id', name='uq_payments_provider_payment')
    )
    op.create_index('ix_payments_org_id', 'payments', ['org_id'])
    op.create_index('ix_payments_tenant_id', 'payments', ['tenant_id'])
    op.create_index('ix_payments_provider_payment_intent_id', 'payments', ['provider_payment_intent_id'])

    op.create_table(
        'allocations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('org_id', sa.String(length=36), nullable=False),
        sa.Column('payment_id', sa.String(length=36), nullable=False),
        sa.Column('charge_id', sa.String(length=36), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ),
        sa.ForeignKeyConstraint(['charge_id'], ['charges.id'], ),
        sa.CheckConstraint('amount_cents > 0', name='ck_allocations_amount_positive'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_allocations_org_id', 'allocations', ['org_id'])
    op.create_index('ix_allocations_payment_id', 'allocations', ['payment_id'])
    op.create_index('ix_allocations_charge_id', 'allocations', ['charge_id'])

    op.create_table(
        'payment_disputes',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('org_id', sa.String(length=36), nullable=False),
        sa.Column('provider_dispute_id', sa.String(length=255), nullable=False),
        sa.Column('provider_charge_id', sa.String(length=255), nullable=True),
        sa.Column('provider_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('reason', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('evidence_due_by', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_dispute_id')
    )
    op.create_index('ix_payment_disputes_org_id', 'payment_disputes', ['org_id'])
    op.create_index(
        'ix_payment_disputes_provider_payment_intent_id', 'payment_disputes', ['provider_payment_intent_id']
    )

    # Webhook envelopes (deduplication) and dead letters
    op.create_table(
        'webhook_events',
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('provider', 'event_id', name='pk_webhook_events')
    )

    op.create_table(
        'webhook_failures',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=False),
        sa.Column('error_stack', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_retry_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_failures_provider_event')
    )
    op.create_index('ix_webhook_failures_id', 'webhook_failures', ['id'])

    # Enforce append-only audit log at the database level (PostgreSQL only)
    if op.get_bind().dialect.name == 'postgresql':
        op.execute(AUDIT_APPEND_ONLY_FUNCTION)
        op.execute(AUDIT_APPEND_ONLY_TRIGGER)
        op.execute("REVOKE UPDATE, DELETE, TRUNCATE ON audit_log FROM PUBLIC")
        grant_app_role(get_settings().app_db_role)


def downgrade() -> None:
    if op.get_bind().dialect.name == 'postgresql':
        op.execute("DROP TRIGGER IF EXISTS audit_log_append_only ON audit_log")
        op.execute("DROP FUNCTION IF EXISTS audit_log_reject_mutation()")

    op.drop_index('ix_webhook_failures_id', table_name='webhook_failures')
    op.drop_table('webhook_failures')
    op.drop_table('webhook_events')
    op.drop_index('ix_payment_disputes_provider_payment_intent_id', table_name='payment_disputes')
    op.drop_index('ix_payment_disputes_org_id', table_name='payment_disputes')
    op.drop_table('payment_disputes')
    op.drop_index('ix_allocations_charge_id', table_name='allocations')
    op.drop_index('ix_allocations_payment_id', table_name='allocations')
    op.drop_index('ix_allocations_org_id', table_name='allocations')
    op.drop_table('allocations')
    op.drop_index('ix_payments_provider_payment_intent_id', table_name='payments')
    op.drop_index('ix_payments_tenant_id', table_name='payments')
    op.drop_index('ix_payments_org_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_charges_tenant_outstanding', table_name='charges')
    op.drop_index('ix_charges_org_id', table_name='charges')
    op.drop_table('charges')
    op.drop_index('ix_audit_log_chain', table_name='audit_log')
    op.drop_index('ix_audit_log_action', table_name='audit_log')
    op.drop_index('ix_audit_log_org_id', table_name='audit_log')
    op.drop_index('ix_audit_log_id', table_name='audit_log')
    op.drop_table('audit_log')
    op.drop_index('ix_tenants_org_id', table_name='tenants')
    op.drop_table('tenants')
    op.drop_table('organizations')

