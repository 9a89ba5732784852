"""
relevo dates schedule and reminder logs with partial unique claim index

Revision ID: 0003_reminders
Revises: 0002_operational_items
Create Date: 2026-10-02
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0003_reminders'
down_revision = '0002_operational_items'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'relevo_dates',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('client_id', sa.String(length=36), sa.ForeignKey('clients.id', ondelete='CASCADE'), nullable=True),
        sa.Column('phone_e164', sa.String(length=32), nullable=True),
        sa.Column('relevo_date', sa.Date(), nullable=False),
        sa.Column('reminder_type', sa.String(length=80), nullable=False, server_default='relevo'),
        sa.Column('timezone', sa.String(length=120), nullable=False, server_default='America/Belem'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_relevo_dates_relevo_date', 'relevo_dates', ['relevo_date'])
    op.create_index('ix_relevo_dates_client_id', 'relevo_dates', ['client_id'])

    op.create_table(
        'reminder_logs',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('client_id', sa.String(length=36), sa.ForeignKey('clients.id', ondelete='SET NULL'), nullable=True),
        sa.Column('phone_e164', sa.String(length=32), nullable=False),
        sa.Column('relevo_date', sa.Date(), nullable=False),
        sa.Column('reminder_type', sa.String(length=80), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('provider_message_id', sa.String(length=220), nullable=True),
        sa.Column('sent_at', sa.Integer(), nullable=True),
        sa.Column('error_summary', sa.String(length=240), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint("status IN ('dry_run','sent','failed')", name='ck_reminder_logs_status'),
    )
    # at most one claimed row per phone/date/type
    op.create_index(
        'uq_reminder_logs_claim',
        'reminder_logs',
        ['phone_e164', 'relevo_date', 'reminder_type'],
        unique=True,
        postgresql_where=sa.text("status IN ('sent', 'dry_run')"),
        sqlite_where=sa.text("status IN ('sent', 'dry_run')"),
    )


def downgrade() -> None:
    op.drop_index('uq_reminder_logs_claim', table_name='reminder_logs')
    op.drop_table('reminder_logs')
    op.drop_table('relevo_dates')
