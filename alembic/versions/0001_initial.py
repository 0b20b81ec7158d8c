from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'telemetry',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('ext_id', sa.String(512), nullable=False),
        sa.Column('tenant', sa.String(64), nullable=False, index=True),
        sa.Column('kind', sa.String(16), nullable=False, index=True),
        sa.Column('query_name', sa.String(256)),
        sa.Column('app_name', sa.String(256), nullable=False),
        sa.Column('app_version', sa.String(64), nullable=False),
        sa.Column('time_generated', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('time_ingested', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('dupe_count', sa.Integer, nullable=False, server_default='1'),
        sa.Column('seeded', sa.Boolean, nullable=False, server_default=sa.false(), index=True),
        sa.Column('data', sa.JSON, nullable=False),
    )
    op.create_index('ix_telemetry_tenant_ext_id', 'telemetry', ['tenant', 'ext_id'], unique=True)
    op.create_table(
        'query_state',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('tenant', sa.String(64), nullable=False, index=True),
        sa.Column('query_name', sa.String(256), nullable=False),
        sa.Column('fingerprint', sa.String(64), nullable=False),
        sa.Column('queried_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_query_state_tenant_fingerprint', 'query_state', ['tenant', 'fingerprint'], unique=True)


def downgrade():
    op.drop_index('ix_query_state_tenant_fingerprint', table_name='query_state')
    op.drop_table('query_state')
    op.drop_index('ix_telemetry_tenant_ext_id', table_name='telemetry')
    op.drop_table('telemetry')
