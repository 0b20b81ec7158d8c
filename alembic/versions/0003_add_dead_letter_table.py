from alembic import op
import sqlalchemy as sa

revision = '0003_add_dead_letter_table'
down_revision = '0002_add_alerts_table'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'ingestion_dead_letter',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant', sa.String(64), index=True),
        sa.Column('query_name', sa.String(256)),
        sa.Column('payload', sa.JSON),
        sa.Column('error', sa.String(512)),
        sa.Column('created_at', sa.DateTime(timezone=True), index=True),
    )


def downgrade():
    op.drop_table('ingestion_dead_letter')
