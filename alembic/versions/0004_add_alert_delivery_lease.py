from alembic import op
import sqlalchemy as sa

revision = '0004_add_alert_delivery_lease'
down_revision = '0003_add_dead_letter_table'
branch_labels = None
depends_on = None


def upgrade():
    op.add_column('alerts', sa.Column('claimed_until', sa.DateTime(timezone=True)))
    op.add_column('alerts', sa.Column('next_attempt_at', sa.DateTime(timezone=True)))
    op.create_index('ix_alerts_next_attempt_at', 'alerts', ['next_attempt_at'])


def downgrade():
    op.drop_index('ix_alerts_next_attempt_at', table_name='alerts')
    op.drop_column('alerts', 'next_attempt_at')
    op.drop_column('alerts', 'claimed_until')
