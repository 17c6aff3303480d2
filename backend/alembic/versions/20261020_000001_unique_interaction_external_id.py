"""Make interactions unique per (tenant_id, external_interaction_id).

Revision ID: 20261020_000001
Revises: 20261019_000001
Create Date: 2026-10-20 09:00:00.000000

WHAT:
    Replaces the plain lookup index ix_interactions_tenant_external with the
    unique constraint uq_interaction_tenant_external.

WHY:
    Source systems redeliver webhooks and retry POSTs. A second row for the
    same call put the call into journeys twice and gave it two shares of
    credit. Ingestion now returns the existing interaction, and the
    constraint catches concurrent duplicates.

    Tenants that already hold duplicates must merge them before upgrading;
    the constraint cannot be created otherwise.

REFERENCES:
    - attribution_engine/models.py:Interaction
    - attribution_engine/services/ingestion_service.py
"""

from alembic import op


# revision identifiers, used by Alembic.
revision = '20261020_000001'
down_revision = '20261019_000001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.drop_index('ix_interactions_tenant_external', table_name='interactions')
    # batch mode so the constraint can be added on SQLite as well
    with op.batch_alter_table('interactions') as batch_op:
        batch_op.create_unique_constraint(
            'uq_interaction_tenant_external', ['tenant_id', 'external_interaction_id']
        )


def downgrade() -> None:
    with op.batch_alter_table('interactions') as batch_op:
        batch_op.drop_constraint('uq_interaction_tenant_external', type_='unique')
    op.create_index('ix_interactions_tenant_external', 'interactions', ['tenant_id', 'external_interaction_id'])
