"""Create attribution engine schema.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    Creates every table of the attribution engine:
    - reference data: tenants, channels, vendors, teams, agents,
      event_sources, currencies, products
    - identity: customers, customer_identifiers
    - events: interactions, interaction_participants, conversion_events
    - attribution: attribution_models, attribution_runs, attribution_results

WHY:
    Identity resolution relies on the (tenant_id, type, value) unique
    constraint for insert-ignore semantics, and reruns rely on the
    (run, conversion, interaction) unique constraint for replace semantics.
    Both must exist in the database, not only in the ORM.

REFERENCES:
    - attribution_engine/models.py
    - attribution_engine/services/identity_service.py
    - attribution_engine/services/attribution_run_service.py
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Reference data
    # =========================================================================
    op.create_table(
        'tenants',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('code', sa.String(), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'channels',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'vendors',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('tenant_id', 'code', name='uq_vendor_tenant_code'),
    )
    op.create_table(
        'teams',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'agents',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=True),
        sa.Column('team_id', sa.Integer(), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('external_agent_id', sa.String(), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'event_sources',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('type', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'currencies',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(length=3), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=True),
    )
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('external_product_id', sa.String(), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    # =========================================================================
    # STEP 2: Identity
    # =========================================================================
    # WHAT: One customer per tenant, identifiers unique per (tenant, type, value)
    # WHY: ON CONFLICT DO NOTHING targets this constraint
    op.create_table(
        'customers',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_customers_tenant_id', 'customers', ['tenant_id'])

    op.create_table(
        'customer_identifiers',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('customer_id', sa.BigInteger(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('value', sa.String(), nullable=False),
        sa.Column('source_system', sa.String(), nullable=True),
        sa.Column('is_primary', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('tenant_id', 'type', 'value', name='uq_customer_identifier_tenant_type_value'),
    )
    op.create_index('ix_customer_identifiers_customer_id', 'customer_identifiers', ['customer_id'])

    # =========================================================================
    # STEP 3: Interactions and conversion events
    # =========================================================================
    op.create_table(
        'interactions',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('customer_id', sa.BigInteger(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('external_interaction_id', sa.String(), nullable=False),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('channels.id'), nullable=False),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('direction', sa.String(), nullable=True),
        sa.Column('language', sa.String(), nullable=True),
        sa.Column('transcript_location', sa.String(), nullable=True),
        sa.Column('primary_intent', sa.String(), nullable=True),
        sa.Column('secondary_intents', sa.JSON(), nullable=True),
        sa.Column('outcome_prediction', sa.String(), nullable=True),
        sa.Column('purchase_probability', sa.Float(), nullable=True),
        sa.Column('raw_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_interactions_tenant_external', 'interactions', ['tenant_id', 'external_interaction_id'])
    op.create_index('ix_interactions_customer_started', 'interactions', ['customer_id', 'started_at'])

    op.create_table(
        'interaction_participants',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('interaction_id', sa.BigInteger(),
                  sa.ForeignKey('interactions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('participant_type', sa.String(), nullable=False),
        sa.Column('agent_id', sa.Integer(), sa.ForeignKey('agents.id'), nullable=True),
        sa.Column('role', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_interaction_participants_interaction_id', 'interaction_participants', ['interaction_id'])

    op.create_table(
        'conversion_events',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('customer_id', sa.BigInteger(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('event_source_id', sa.Integer(), sa.ForeignKey('event_sources.id'), nullable=False),
        sa.Column('external_event_id', sa.String(), nullable=True),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=True),
        sa.Column('currency_id', sa.Integer(), sa.ForeignKey('currencies.id'), nullable=False),
        sa.Column('amount_decimal', sa.Numeric(14, 2), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversion_events_customer_id', 'conversion_events', ['customer_id'])
    op.create_index('ix_conversion_events_tenant_occurred', 'conversion_events', ['tenant_id', 'occurred_at'])

    # =========================================================================
    # STEP 4: Attribution
    # =========================================================================
    op.create_table(
        'attribution_models',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('params', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'attribution_runs',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('model_id', sa.Integer(), sa.ForeignKey('attribution_models.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('conversions_total', sa.Integer(), nullable=True),
        sa.Column('conversions_attributed', sa.Integer(), nullable=True),
        sa.Column('conversions_skipped', sa.Integer(), nullable=True),
        sa.Column('conversions_failed', sa.Integer(), nullable=True),
        sa.Column('error_summary', sa.JSON(), nullable=True),
        sa.Column('cancelled', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_attribution_runs_tenant_id', 'attribution_runs', ['tenant_id'])

    # WHAT: Write-once credit rows
    # WHY: Unique (run, conversion, interaction) makes a rerun replace, never duplicate
    op.create_table(
        'attribution_results',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('attribution_run_id', sa.BigInteger(), sa.ForeignKey('attribution_runs.id'), nullable=False),
        sa.Column('conversion_event_id', sa.BigInteger(), sa.ForeignKey('conversion_events.id'), nullable=False),
        sa.Column('interaction_id', sa.BigInteger(), sa.ForeignKey('interactions.id'), nullable=False),
        sa.Column('customer_id', sa.BigInteger(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('agent_id', sa.Integer(), sa.ForeignKey('agents.id'), nullable=True),
        sa.Column('team_id', sa.Integer(), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=True),
        sa.Column('model_id', sa.Integer(), sa.ForeignKey('attribution_models.id'), nullable=False),
        sa.Column('attribution_weight', sa.Float(), nullable=False),
        sa.Column('attributed_amount', sa.Numeric(18, 6), nullable=False),
        sa.Column('is_primary_touch', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('attribution_run_id', 'conversion_event_id', 'interaction_id',
                            name='uq_attribution_result_run_conversion_interaction'),
    )
    op.create_index('ix_attribution_results_conversion_event_id', 'attribution_results', ['conversion_event_id'])
    op.create_index('ix_attribution_results_tenant_agent', 'attribution_results', ['tenant_id', 'agent_id'])


def downgrade() -> None:
    op.drop_table('attribution_results')
    op.drop_table('attribution_runs')
    op.drop_table('attribution_models')
    op.drop_table('conversion_events')
    op.drop_table('interaction_participants')
    op.drop_table('interactions')
    op.drop_table('customer_identifiers')
    op.drop_table('customers')
    op.drop_table('products')
    op.drop_table('currencies')
    op.drop_table('event_sources')
    op.drop_table('agents')
    op.drop_table('teams')
    op.drop_table('vendors')
    op.drop_table('channels')
    op.drop_table('tenants')
