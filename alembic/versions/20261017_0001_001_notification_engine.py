"""Notification engine schema - rules, delivery queue, history, settings and push subscriptions.

Revision ID: 001
Revises: None
Create Date: 2026-10-17

This migration adds:
- brainstorms and notes tables (counted by template variables)
- notification_rules for recurring administrator-defined notifications
- scheduled_deliveries, the time-ordered delivery queue
- notification_history, one row per delivered notification
- notification_settings, per-user preferences
- push_subscriptions for Web Push endpoints

users and tasks are owned by the auth/task layer and only created here
when missing (fresh databases).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    if not _has_table('users'):
        op.create_table(
            'users',
            sa.Column('id', sa.Uuid(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_users_email', 'users', ['email'], unique=True)
    else:
        op.execute("ALTER TABLE users ADD COLUMN IF NOT EXISTS is_admin BOOLEAN NOT NULL DEFAULT FALSE")

    if not _has_table('tasks'):
        op.create_table(
            'tasks',
            sa.Column('id', sa.Uuid(), nullable=False),
            sa.Column('user_id', sa.Uuid(), nullable=False),
            sa.Column('title', sa.String(length=200), nullable=False),
            sa.Column('is_completed', sa.Boolean(), nullable=False),
            sa.Column('due_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id']),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_tasks_user_id', 'tasks', ['user_id'])
        op.create_index('ix_tasks_is_completed', 'tasks', ['is_completed'])

    for table in ('brainstorms', 'notes'):
        op.create_table(
            table,
            sa.Column('id', sa.Uuid(), nullable=False),
            sa.Column('user_id', sa.Uuid(), nullable=False),
            sa.Column('title', sa.String(length=200), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id']),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index(f'ix_{table}_user_id', table, ['user_id'])

    op.create_table(
        'notification_rules',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.String(length=2000), nullable=False),
        sa.Column('schedule_type', sa.Enum('DAILY', 'WEEKLY', 'MONTHLY', name='scheduletype'), nullable=False),
        sa.Column('schedule_time', sa.String(length=5), nullable=False),
        sa.Column('schedule_day', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['created_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notification_rules_is_active', 'notification_rules', ['is_active'])

    op.create_table(
        'scheduled_deliveries',
        sa.Column('queue_key', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.String(), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('fire_at_ms', sa.BigInteger(), nullable=False),
        sa.Column('item_id', sa.String(length=255), nullable=True),
        sa.Column('item_type', sa.String(length=50), nullable=True),
        sa.Column('notification_type', sa.String(length=50), nullable=False),
        sa.Column('status', sa.Enum('QUEUED', 'CLAIMED', name='queuestatus'), nullable=False),
        sa.Column('claimed_by', sa.String(length=100), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('queue_key'),
    )
    op.create_index('ix_scheduled_deliveries_user_id', 'scheduled_deliveries', ['user_id'])
    op.create_index('ix_scheduled_deliveries_fire_at_ms', 'scheduled_deliveries', ['fire_at_ms'])
    op.create_index('ix_scheduled_deliveries_status', 'scheduled_deliveries', ['status'])

    op.create_table(
        'notification_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('delivery_key', sa.String(length=255), nullable=True),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.String(), nullable=False),
        sa.Column('notification_type', sa.String(length=50), nullable=False),
        sa.Column('item_id', sa.String(length=255), nullable=True),
        sa.Column('item_type', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('clicked_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('delivery_key'),
    )
    op.create_index('ix_notification_history_user_id', 'notification_history', ['user_id'])
    op.create_index('ix_notification_history_created_at', 'notification_history', ['created_at'])

    op.create_table(
        'notification_settings',
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('notifications_enabled', sa.Boolean(), nullable=False),
        sa.Column('sound_enabled', sa.Boolean(), nullable=False),
        sa.Column('push_enabled', sa.Boolean(), nullable=False),
        sa.Column('browser_enabled', sa.Boolean(), nullable=False),
        sa.Column('first_reminder_time', sa.Integer(), nullable=True),
        sa.Column('second_reminder_time', sa.Integer(), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('endpoint', sa.String(length=2048), nullable=False),
        sa.Column('auth', sa.String(length=255), nullable=False),
        sa.Column('p256dh', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('endpoint'),
    )
    op.create_index('ix_push_subscriptions_user_id', 'push_subscriptions', ['user_id'])


def downgrade() -> None:
    op.drop_table('push_subscriptions')
    op.drop_table('notification_settings')
    op.drop_table('notification_history')
    op.drop_table('scheduled_deliveries')
    op.drop_table('notification_rules')
    op.drop_table('notes')
    op.drop_table('brainstorms')

    op.execute("DROP TYPE IF EXISTS queuestatus")
    op.execute("DROP TYPE IF EXISTS scheduletype")
