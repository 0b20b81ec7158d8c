from alembic import op
import sqlalchemy as sa

revision = '0002_add_alerts_table'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'alerts',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('telemetry_id', sa.Integer, sa.ForeignKey('telemetry.id'), nullable=False, unique=True),
        sa.Column('state', sa.String(16), nullable=False, index=True),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('channel', sa.String(128)),
        sa.Column('message', sa.Text),
        sa.Column('thread_ts', sa.String(64)),
        sa.Column('last_error', sa.String(512)),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )


def downgrade():
    op.drop_table('alerts')
