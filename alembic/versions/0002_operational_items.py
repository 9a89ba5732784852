"""
operational items mirrored to Trello cards

Revision ID: 0002_operational_items
Revises: 0001_onboarding_core
Create Date: 2026-09-30
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_operational_items'
down_revision = '0001_onboarding_core'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'operational_items',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('idempotency_key', sa.String(length=120), nullable=True),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('title', sa.String(length=220), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('client_id', sa.String(length=36), sa.ForeignKey('clients.id', ondelete='SET NULL'), nullable=True),
        sa.Column('owner', sa.String(length=180), nullable=False, server_default=''),
        sa.Column('priority', sa.String(length=16), nullable=False, server_default='medium'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('due_at', sa.Integer(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('trello_card_id', sa.String(length=120), nullable=True),
        sa.Column('trello_card_url', sa.String(length=1000), nullable=True),
        sa.Column('trello_list_id', sa.String(length=120), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('idempotency_key', name='uq_operational_items_idempotency_key'),
    )
    op.create_index('ix_operational_items_client_id', 'operational_items', ['client_id'])
    op.create_index('ix_operational_items_updated_at', 'operational_items', ['updated_at'])


def downgrade() -> None:
    op.drop_table('operational_items')
