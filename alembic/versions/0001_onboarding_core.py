"""
onboarding core: clients, sessions, messages, status history, events ledger

Revision ID: 0001_onboarding_core
Revises:
Create Date: 2026-09-28
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_onboarding_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'clients',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=180), nullable=True),
        sa.Column('email', sa.String(length=180), nullable=True),
        sa.Column('whatsapp_phone', sa.String(length=32), nullable=False),
        sa.Column('onboarding_status', sa.String(length=32), nullable=True),
        sa.Column('onboarding_status_at', sa.Integer(), nullable=True),
        sa.Column('drive_folder_id', sa.String(length=128), nullable=True),
        sa.Column('drive_folder_url', sa.String(length=512), nullable=True),
        sa.Column('drive_folder_created_at', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_clients_whatsapp_phone', 'clients', ['whatsapp_phone'], unique=True)

    op.create_table(
        'onboarding_sessions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tracking_token', sa.String(length=36), nullable=False),
        sa.Column('phone_e164', sa.String(length=32), nullable=False),
        sa.Column('client_id', sa.String(length=36), sa.ForeignKey('clients.id', ondelete='SET NULL'), nullable=True),
        sa.Column('current_status', sa.String(length=32), nullable=False, server_default='new'),
        sa.Column('status_updated_at', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_message_at', sa.Integer(), nullable=True),
        sa.Column('last_provider_message_id', sa.String(length=200), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint(
            "current_status IN ('new','started','in_progress','awaiting_client','completed','failed')",
            name='ck_onboarding_sessions_status',
        ),
    )
    op.create_index('ix_onboarding_sessions_tracking_token', 'onboarding_sessions', ['tracking_token'], unique=True)
    op.create_index('ix_onboarding_sessions_phone_e164', 'onboarding_sessions', ['phone_e164'], unique=True)
    op.create_index('ix_onboarding_sessions_client_id', 'onboarding_sessions', ['client_id'])
    op.create_index('ix_onboarding_sessions_status_updated', 'onboarding_sessions', ['status_updated_at'])

    op.create_table(
        'onboarding_messages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(length=36), sa.ForeignKey('onboarding_sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider_message_id', sa.String(length=200), nullable=False),
        sa.Column('direction', sa.String(length=16), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('event_timestamp', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('provider_message_id', name='uq_onboarding_messages_provider_message_id'),
        sa.CheckConstraint("direction IN ('inbound','outbound','system')", name='ck_onboarding_messages_direction'),
    )
    op.create_index('ix_onboarding_messages_session_id', 'onboarding_messages', ['session_id'])

    op.create_table(
        'onboarding_status_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(length=36), sa.ForeignKey('onboarding_sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_status', sa.String(length=32), nullable=True),
        sa.Column('to_status', sa.String(length=32), nullable=False),
        sa.Column('reason', sa.String(length=240), nullable=True),
        sa.Column('provider_message_id', sa.String(length=200), nullable=True),
        sa.Column('changed_at', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_onboarding_status_history_session_id', 'onboarding_status_history', ['session_id'])

    op.create_table(
        'events_ledger',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('ts', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.Text(), nullable=True),
    )
    op.create_index('ix_events_ledger_ts', 'events_ledger', ['ts'])


def downgrade() -> None:
    op.drop_table('events_ledger')
    op.drop_table('onboarding_status_history')
    op.drop_table('onboarding_messages')
    op.drop_table('onboarding_sessions')
    op.drop_table('clients')
