"""Add attribution engine tables.

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 09:00:00.000000

WHAT:
    Creates the credit engine schema:
    - tenants: isolation root
    - attribution_settings: per-tenant models/windows/mode/parameters
    - attribution_touchpoints, attribution_conversions: ingested inputs
    - attribution_runs: one row per run controller invocation
    - attribution_results: credit per (conversion, touchpoint, model, window)
    - attribution_conversion_states: per-conversion processing state machine
    - attribution_channel_summary: daily rollup (rebuildable)
    - attribution_channel_spend: externally supplied spend for ROAS/CPA

WHY:
    Results are replaced per conversion and tracked by a processing state so
    runs are restartable; the unique keys enforce one row per result key and
    one summary row per (tenant, date, model, window, channel, platform).
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261017_000001'
down_revision = None
branch_labels = None
depends_on = None


def _id_column():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('gen_random_uuid()'))


def _tenant_column():
    return sa.Column('tenant_id', postgresql.UUID(as_uuid=True),
                     sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Tenants and settings
    # =========================================================================
    op.create_table(
        'tenants',
        _id_column(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
    )

    # WHAT: One settings row per tenant; lists/weights stored as JSON
    # WHY: The run controller snapshots this row once per run
    op.create_table(
        'attribution_settings',
        _id_column(),
        _tenant_column(),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('default_model', sa.String(), nullable=False, server_default='time_decay'),
        sa.Column('default_window', sa.String(), nullable=False, server_default='7d'),
        sa.Column('attribution_mode', sa.String(), nullable=False, server_default='clicks_only'),
        sa.Column('enabled_models', sa.JSON(), nullable=False),
        sa.Column('enabled_windows', sa.JSON(), nullable=False),
        sa.Column('time_decay_half_life_hours', sa.Float(), nullable=False, server_default='168'),
        sa.Column('position_based_weights', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', name='uq_attribution_settings_tenant'),
    )

    # =========================================================================
    # STEP 2: Inputs (touchpoints, conversions)
    # =========================================================================
    # WHAT: Immutable marketing interactions
    # WHY: Journeys are rebuilt from these rows on every (re)calculation;
    #      created_at doubles as the ingestion sequence
    op.create_table(
        'attribution_touchpoints',
        _id_column(),
        _tenant_column(),
        sa.Column('visitor_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('customer_id', sa.String(), nullable=True),
        sa.Column('channel', sa.String(), nullable=False, server_default='direct'),
        sa.Column('source', sa.String(), nullable=True),
        sa.Column('medium', sa.String(), nullable=True),
        sa.Column('campaign', sa.String(), nullable=True),
        sa.Column('content', sa.String(), nullable=True),
        sa.Column('term', sa.String(), nullable=True),
        sa.Column('platform', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('fbclid', sa.String(), nullable=True),
        sa.Column('gclid', sa.String(), nullable=True),
        sa.Column('ttclid', sa.String(), nullable=True),
        sa.Column('msclkid', sa.String(), nullable=True),
        sa.Column('touchpoint_type', sa.String(), nullable=False, server_default='click'),
        sa.Column('landing_page', sa.String(), nullable=True),
        sa.Column('referrer', sa.String(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_touchpoints_tenant_visitor', 'attribution_touchpoints', ['tenant_id', 'visitor_id'])
    op.create_index('ix_touchpoints_tenant_customer', 'attribution_touchpoints', ['tenant_id', 'customer_id'])
    op.create_index('ix_touchpoints_tenant_session', 'attribution_touchpoints', ['tenant_id', 'session_id'])
    op.create_index('ix_touchpoints_tenant_created', 'attribution_touchpoints', ['tenant_id', 'created_at'])

    op.create_table(
        'attribution_conversions',
        _id_column(),
        _tenant_column(),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('order_number', sa.String(), nullable=True),
        sa.Column('customer_id', sa.String(), nullable=True),
        sa.Column('visitor_id', sa.String(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('revenue', sa.Numeric(14, 3), nullable=True),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('conversion_type', sa.String(), nullable=False, server_default='purchase'),
        sa.Column('is_first_purchase', sa.Boolean(), server_default=sa.text('false')),
        sa.Column('converted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', 'order_id', name='uq_conversion_tenant_order'),
    )
    op.create_index('ix_conversions_tenant_converted_at', 'attribution_conversions',
                    ['tenant_id', 'converted_at'])

    # =========================================================================
    # STEP 3: Runs
    # =========================================================================
    op.create_table(
        'attribution_runs',
        _id_column(),
        _tenant_column(),
        sa.Column('run_type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('since', sa.DateTime(), nullable=True),
        sa.Column('processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )

    # =========================================================================
    # STEP 4: Results and processing state
    # =========================================================================
    # WHAT: One credit row per (conversion, touchpoint, model, window)
    # WHY: Unique key makes replace-per-conversion the only way to change rows
    op.create_table(
        'attribution_results',
        _id_column(),
        _tenant_column(),
        sa.Column('conversion_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('attribution_conversions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('touchpoint_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('attribution_touchpoints.id', ondelete='CASCADE'), nullable=False),
        sa.Column('model', sa.String(), nullable=False),
        sa.Column('attribution_window', sa.String(), nullable=False),
        sa.Column('credit', sa.Numeric(8, 6), nullable=False),
        sa.Column('attributed_revenue', sa.Numeric(14, 3), nullable=False),
        sa.Column('touchpoint_position', sa.Integer(), nullable=False),
        sa.Column('total_touchpoints', sa.Integer(), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('attribution_runs.id', ondelete='SET NULL'), nullable=True),
        sa.Column('calculated_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('conversion_id', 'touchpoint_id', 'model', 'attribution_window',
                            name='uq_attribution_result_key'),
        sa.CheckConstraint('credit >= 0 AND credit <= 1', name='ck_attribution_result_credit_range'),
    )
    op.create_index('ix_attribution_results_tenant_conversion', 'attribution_results',
                    ['tenant_id', 'conversion_id'])

    # WHAT: pending → processing → completed | failed | invalid, plus settings fingerprint
    # WHY: At-most-once processing and crash recovery (stale processing reclaim)
    op.create_table(
        'attribution_conversion_states',
        _id_column(),
        _tenant_column(),
        sa.Column('conversion_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('attribution_conversions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('settings_fingerprint', sa.String(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('conversion_id', name='uq_conversion_state_conversion'),
    )
    op.create_index('ix_conversion_states_tenant_status', 'attribution_conversion_states',
                    ['tenant_id', 'status'])

    # =========================================================================
    # STEP 5: Rollup and spend
    # =========================================================================
    # NOTE: platform is '' rather than NULL so the unique key holds on Postgres
    op.create_table(
        'attribution_channel_summary',
        _id_column(),
        _tenant_column(),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('model', sa.String(), nullable=False),
        sa.Column('attribution_window', sa.String(), nullable=False),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('platform', sa.String(), nullable=False, server_default=''),
        sa.Column('touchpoints', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('revenue', sa.Numeric(16, 3), nullable=False, server_default='0'),
        sa.Column('spend', sa.Numeric(16, 3), nullable=True),
        sa.Column('roas', sa.Numeric(12, 4), nullable=True),
        sa.Column('cpa', sa.Numeric(12, 4), nullable=True),
        sa.Column('conversion_rate', sa.Numeric(12, 6), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', 'date', 'model', 'attribution_window', 'channel', 'platform',
                            name='uq_channel_summary_key'),
    )

    op.create_table(
        'attribution_channel_spend',
        _id_column(),
        _tenant_column(),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('platform', sa.String(), nullable=False, server_default=''),
        sa.Column('spend', sa.Numeric(16, 3), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', 'date', 'channel', 'platform', name='uq_channel_spend_key'),
    )


def downgrade() -> None:
    # Drop tables in reverse order (respect foreign keys)
    op.drop_table('attribution_channel_spend')
    op.drop_table('attribution_channel_summary')
    op.drop_index('ix_conversion_states_tenant_status', table_name='attribution_conversion_states')
    op.drop_table('attribution_conversion_states')
    op.drop_index('ix_attribution_results_tenant_conversion', table_name='attribution_results')
    op.drop_table('attribution_results')
    op.drop_table('attribution_runs')
    op.drop_index('ix_conversions_tenant_converted_at', table_name='attribution_conversions')
    op.drop_table('attribution_conversions')
    op.drop_index('ix_touchpoints_tenant_created', table_name='attribution_touchpoints')
    op.drop_index('ix_touchpoints_tenant_session', table_name='attribution_touchpoints')
    op.drop_index('ix_touchpoints_tenant_customer', table_name='attribution_touchpoints')
    op.drop_index('ix_touchpoints_tenant_visitor', table_name='attribution_touchpoints')
    op.drop_table('attribution_touchpoints')
    op.drop_table('attribution_settings')
    op.drop_table('tenants')
