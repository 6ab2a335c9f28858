"""Create calendars, events, reminders and reminder watermarks

Revision ID: 5b2e9c7d1a40
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5b2e9c7d1a40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'calendars',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('account_id', sa.String(length=255), nullable=False),
        sa.Column('week_start', sa.Integer(), server_default='0', nullable=False),
        sa.Column('timezone', sa.String(length=100), server_default='UTC', nullable=False),
        sa.Column('source_provider', sa.String(length=64), nullable=True),
        sa.Column('source_calendar_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_calendar_user', 'calendars', ['user_id'], unique=False)

    op.create_table(
        'calendar_events',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('calendar_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('account_id', sa.String(length=255), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_ms', sa.BigInteger(), nullable=False),
        sa.Column('busy', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('recurrence', sa.JSON(), nullable=True),
        sa.Column('exceptions', sa.JSON(), nullable=False),
        sa.Column(
            'has_modified_overrides', sa.Boolean(), server_default='false', nullable=False
        ),
        sa.Column('reminder_offsets', sa.JSON(), nullable=False),
        sa.Column('remote_id', sa.String(length=1024), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['calendar_id'], ['calendars.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_event_calendar_start',
        'calendar_events',
        ['calendar_id', 'start_time'],
        unique=False,
    )
    op.create_index('ix_event_end', 'calendar_events', ['end_time'], unique=False)

    op.create_table(
        'calendar_event_reminders',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('account_id', sa.String(length=255), nullable=False),
        sa.Column('remind_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['event_id'], ['calendar_events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', 'remind_at', name='uq_event_reminder_remind_at'),
    )
    op.create_index(
        'ix_event_reminder_remind_at',
        'calendar_event_reminders',
        ['remind_at'],
        unique=False,
    )

    op.create_table(
        'event_reminder_watermarks',
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('expanded_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['event_id'], ['calendar_events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('event_id'),
    )


def downgrade() -> None:
    op.drop_table('event_reminder_watermarks')
    op.drop_index('ix_event_reminder_remind_at', table_name='calendar_event_reminders')
    op.drop_table('calendar_event_reminders')
    op.drop_index('ix_event_end', table_name='calendar_events')
    op.drop_index('ix_event_calendar_start', table_name='calendar_events')
    op.drop_table('calendar_events')
    op.drop_index('ix_calendar_user', table_name='calendars')
    op.drop_table('calendars')
