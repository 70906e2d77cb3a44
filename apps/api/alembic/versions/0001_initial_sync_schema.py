"""initial sync schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    ]


def _json(name, default):
    return sa.Column(name, postgresql.JSONB(), nullable=False, server_default=sa.text(f"'{default}'::jsonb"))


def upgrade() -> None:
    op.create_table(
        'apps',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False, server_default=''),
        sa.Column('type', sa.Text(), nullable=False),
        _json('options', '{}'),
        sa.Column('state', sa.Text(), nullable=False, server_default='draft'),
        sa.Column('locked', sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'sources',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('app_id', sa.Text(), sa.ForeignKey('apps.id'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False, server_default=''),
        sa.Column('type', sa.Text(), nullable=False),
        _json('options', '{}'),
        _json('mapping', '{}'),
        sa.Column('state', sa.Text(), nullable=False, server_default='draft'),
        sa.Column('locked', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_sources_app_id', 'sources', ['app_id'])

    op.create_table(
        'schedules',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('source_id', sa.Text(), sa.ForeignKey('sources.id'), nullable=False, unique=True),
        sa.Column('name', sa.Text(), nullable=False, server_default=''),
        _json('options', '{}'),
        sa.Column('recurring', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('recurring_frequency_s', sa.Integer(), nullable=True),
        sa.Column('state', sa.Text(), nullable=False, server_default='draft'),
        sa.Column('locked', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    op.create_table(
        'runs',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('schedule_id', sa.Text(), sa.ForeignKey('schedules.id'), nullable=False),
        sa.Column('state', sa.Text(), nullable=False, server_default='running'),
        _json('high_water_mark', '{}'),
        sa.Column('imports_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_runs_schedule_id', 'runs', ['schedule_id'])

    op.create_table(
        'properties',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('source_id', sa.Text(), sa.ForeignKey('sources.id'), nullable=False),
        sa.Column('key', sa.Text(), nullable=False, unique=True),
        sa.Column('type', sa.Text(), nullable=False, server_default='string'),
        sa.Column('is_array', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('unique', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        _json('options', '{}'),
        _json('filters', '[]'),
        sa.Column('directly_mapped', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('state', sa.Text(), nullable=False, server_default='draft'),
        sa.Column('locked', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_properties_source_id', 'properties', ['source_id'])

    op.create_table(
        'profiles',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('state', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('destroyed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'profile_properties',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('profile_id', sa.Text(), sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('property_id', sa.Text(), sa.ForeignKey('properties.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('raw_value', sa.Text(), nullable=True),
        sa.Column('unique', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('state', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('state_changed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('value_changed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('profile_id', 'property_id', 'position', name='uq_profile_property_position'),
    )
    op.create_index('ix_profile_properties_profile_id', 'profile_properties', ['profile_id'])
    op.create_index('ix_profile_properties_state_started_at', 'profile_properties', ['state', 'started_at'])
    op.create_index('ix_profile_properties_property_raw_value', 'profile_properties', ['property_id', 'raw_value'])

    op.create_table(
        'imports',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('source_id', sa.Text(), sa.ForeignKey('sources.id'), nullable=True),
        sa.Column('run_id', sa.Text(), sa.ForeignKey('runs.id'), nullable=True),
        sa.Column('profile_id', sa.Text(), sa.ForeignKey('profiles.id', ondelete='SET NULL'), nullable=True),
        _json('data', '{}'),
        sa.Column('state', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('created_profile', sa.Boolean(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('imported_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_imports_source_id', 'imports', ['source_id'])
    op.create_index('ix_imports_run_id', 'imports', ['run_id'])
    op.create_index('ix_imports_profile_id', 'imports', ['profile_id'])

    op.create_table(
        'groups',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False, unique=True),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('match_type', sa.Text(), nullable=False, server_default='all'),
        _json('rules', '[]'),
        sa.Column('state', sa.Text(), nullable=False, server_default='draft'),
        sa.Column('locked', sa.Text(), nullable=True),
        sa.Column('calculated_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'group_members',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('profile_id', sa.Text(), sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('group_id', sa.Text(), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('profile_id', 'group_id', name='uq_group_member'),
    )
    op.create_index('ix_group_members_profile_id', 'group_members', ['profile_id'])
    op.create_index('ix_group_members_group_id', 'group_members', ['group_id'])

    op.create_table(
        'destinations',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('app_id', sa.Text(), sa.ForeignKey('apps.id'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False, server_default=''),
        sa.Column('type', sa.Text(), nullable=False),
        _json('options', '{}'),
        _json('mapping', '{}'),
        sa.Column('group_id', sa.Text(), sa.ForeignKey('groups.id'), nullable=True),
        _json('group_mappings', '{}'),
        sa.Column('sync_mode', sa.Text(), nullable=False, server_default='sync'),
        sa.Column('state', sa.Text(), nullable=False, server_default='draft'),
        sa.Column('locked', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_destinations_app_id', 'destinations', ['app_id'])
    op.create_index('ix_destinations_group_id', 'destinations', ['group_id'])

    op.create_table(
        'export_processors',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('destination_id', sa.Text(), sa.ForeignKey('destinations.id'), nullable=False),
        sa.Column('remote_key', sa.Text(), nullable=False),
        _json('profile_ids', '[]'),
        sa.Column('process_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('state', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_export_processors_destination_id', 'export_processors', ['destination_id'])

    op.create_table(
        'exports',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('profile_id', sa.Text(), sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('destination_id', sa.Text(), sa.ForeignKey('destinations.id'), nullable=False),
        _json('old_profile_properties', '{}'),
        _json('new_profile_properties', '{}'),
        _json('old_groups', '[]'),
        _json('new_groups', '[]'),
        sa.Column('to_delete', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('has_changes', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('state', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('send_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_level', sa.Text(), nullable=True),
        sa.Column('export_processor_id', sa.Text(), sa.ForeignKey('export_processors.id'), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_exports_destination_state_send_at', 'exports', ['destination_id', 'state', 'send_at'])
    op.create_index('ix_exports_profile_destination', 'exports', ['profile_id', 'destination_id'])
    op.create_index('ix_exports_export_processor_id', 'exports', ['export_processor_id'])

    op.create_table(
        'task_failures',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('task_name', sa.Text(), nullable=False),
        sa.Column('task_id', sa.Text(), nullable=True),
        _json('args', '[]'),
        _json('kwargs', '{}'),
        sa.Column('error', sa.Text(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_task_failures_task_name', 'task_failures', ['task_name'])


def downgrade() -> None:
    for table in (
        'task_failures',
        'exports',
        'export_processors',
        'destinations',
        'group_members',
        'groups',
        'imports',
        'profile_properties',
        'profiles',
        'properties',
        'runs',
        'schedules',
        'sources',
        'apps',
    ):
        op.drop_table(table)
