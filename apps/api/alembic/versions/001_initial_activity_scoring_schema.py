"""initial activity scoring schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps(*names):
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False)
        for name in names
    ]


def upgrade() -> None:
    op.create_table(
        'app_user',
        sa.Column('id', sa.String(36), primary_key=True),
        *_timestamps('created_at'),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('email', sa.Text(), nullable=True, unique=True),
        sa.Column('strava_athlete_id', sa.BigInteger(), nullable=True, unique=True),
        sa.Column('strava_access_token', sa.Text(), nullable=True),
        sa.Column('strava_refresh_token', sa.Text(), nullable=True),
        sa.Column('strava_token_expires_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_app_user_strava_athlete_id', 'app_user', ['strava_athlete_id'])

    op.create_table(
        'strava_activity',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('strava_activity_id', sa.BigInteger(), nullable=False, unique=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('app_user.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('sport_type', sa.Text(), nullable=True),
        sa.Column('distance_m', sa.Float(), nullable=False),
        sa.Column('moving_time_s', sa.Integer(), nullable=False),
        sa.Column('elapsed_time_s', sa.Integer(), nullable=True),
        sa.Column('total_elevation_gain', sa.Float(), nullable=True),
        sa.Column('average_speed', sa.Float(), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('start_date_local', sa.DateTime(timezone=False), nullable=False),
        sa.Column('timezone', sa.Text(), nullable=True),
        sa.Column('best_efforts', JSONType, nullable=True),
        sa.Column('raw_data', JSONType, nullable=True),
        *_timestamps('created_at', 'updated_at'),
    )
    op.create_index('ix_strava_activity_user_id', 'strava_activity', ['user_id'])
    op.create_index('ix_strava_activity_user_start', 'strava_activity', ['user_id', 'start_date_local'])

    op.create_table(
        'best_effort',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('app_user.id', ondelete='CASCADE'), nullable=False),
        sa.Column('effort_name', sa.Text(), nullable=False),
        sa.Column('strava_activity_id', sa.BigInteger(), nullable=False),
        sa.Column('elapsed_time', sa.Integer(), nullable=False),
        sa.Column('moving_time', sa.Integer(), nullable=True),
        sa.Column('distance', sa.Float(), nullable=True),
        sa.Column('start_date_local', sa.DateTime(timezone=False), nullable=True),
        *_timestamps('updated_at'),
        sa.UniqueConstraint('user_id', 'effort_name', name='uq_best_effort_user_effort'),
    )
    op.create_index('ix_best_effort_strava_activity_id', 'best_effort', ['strava_activity_id'])

    op.create_table(
        'event',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        *_timestamps('created_at'),
    )

    op.create_table(
        'event_participant',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(36), sa.ForeignKey('event.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('app_user.id', ondelete='CASCADE'), nullable=False),
        sa.Column('team_id', sa.String(36), nullable=True),
        sa.Column('total_km', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_points', sa.Float(), nullable=False, server_default='0'),
        sa.Column('activity_count', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps('updated_at'),
        sa.UniqueConstraint('event_id', 'user_id', name='uq_event_participant'),
    )
    op.create_index('ix_event_participant_event_id', 'event_participant', ['event_id'])
    op.create_index('ix_event_participant_user_id', 'event_participant', ['user_id'])
    op.create_index('ix_event_participant_team_id', 'event_participant', ['team_id'])

    op.create_table(
        'event_rule',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(36), sa.ForeignKey('event.id', ondelete='CASCADE'), nullable=False),
        sa.Column('rule_type', sa.Text(), nullable=False),
        sa.Column('config', JSONType, nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps('created_at'),
    )
    op.create_index('ix_event_rule_event_id', 'event_rule', ['event_id'])

    op.create_table(
        'scored_activity',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('app_user.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_id', sa.String(36), sa.ForeignKey('event.id', ondelete='CASCADE'), nullable=False),
        sa.Column('activity_date', sa.Date(), nullable=False),
        sa.Column('strava_activity_id', sa.BigInteger(), nullable=False),
        sa.Column('distance_km', sa.Float(), nullable=False),
        sa.Column('moving_time_s', sa.Integer(), nullable=True),
        sa.Column('pace_min_per_km', sa.Float(), nullable=True),
        sa.Column('base_points', sa.Float(), nullable=False),
        sa.Column('final_points', sa.Float(), nullable=False),
        sa.Column('bonus_applied', sa.Text(), nullable=True),
        sa.Column('bonus_multiplier', sa.Float(), nullable=False, server_default='1'),
        sa.Column('bonus_message', sa.Text(), nullable=True),
        sa.Column('rejected_bonuses', JSONType, nullable=True),
        sa.Column('blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('block_reason', sa.Text(), nullable=True),
        sa.Column('rule_log', JSONType, nullable=True),
        *_timestamps('created_at', 'updated_at'),
        sa.UniqueConstraint('user_id', 'event_id', 'activity_date', name='uq_scored_activity_user_event_day'),
    )
    op.create_index('ix_scored_activity_strava_activity_id', 'scored_activity', ['strava_activity_id'])
    op.create_index('ix_scored_activity_event_day', 'scored_activity', ['event_id', 'activity_date'])

    op.create_table(
        'sync_watermark',
        sa.Column('user_id', sa.String(36), sa.ForeignKey('app_user.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_status', sa.Text(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_synced_count', sa.Integer(), nullable=False, server_default='0'),
    )

    op.create_table(
        'strava_activity_cache',
        sa.Column('activity_id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('cached_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_strava_activity_cache_expires_at', 'strava_activity_cache', ['expires_at'])

    op.create_table(
        'strava_webhook_event',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscription_id', sa.BigInteger(), nullable=True),
        sa.Column('object_type', sa.Text(), nullable=False),
        sa.Column('aspect_type', sa.Text(), nullable=False),
        sa.Column('object_id', sa.BigInteger(), nullable=False),
        sa.Column('owner_id', sa.BigInteger(), nullable=False),
        sa.Column('event_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_payload', JSONType, nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps('created_at'),
    )
    op.create_index('ix_strava_webhook_event_object_id', 'strava_webhook_event', ['object_id'])


def downgrade() -> None:
    op.drop_index('ix_strava_webhook_event_object_id', table_name='strava_webhook_event')
    op.drop_table('strava_webhook_event')
    op.drop_index('ix_strava_activity_cache_expires_at', table_name='strava_activity_cache')
    op.drop_table('strava_activity_cache')
    op.drop_table('sync_watermark')
    op.drop_index('ix_scored_activity_event_day', table_name='scored_activity')
    op.drop_index('ix_scored_activity_strava_activity_id', table_name='scored_activity')
    op.drop_table('scored_activity')
    op.drop_index('ix_event_rule_event_id', table_name='event_rule')
    op.drop_table('event_rule')
    op.drop_index('ix_event_participant_team_id', table_name='event_participant')
    op.drop_index('ix_event_participant_user_id', table_name='event_participant')
    op.drop_index('ix_event_participant_event_id', table_name='event_participant')
    op.drop_table('event_participant')
    op.drop_table('event')
    op.drop_index('ix_best_effort_strava_activity_id', table_name='best_effort')
    op.drop_table('best_effort')
    op.drop_index('ix_strava_activity_user_start', table_name='strava_activity')
    op.drop_index('ix_strava_activity_user_id', table_name='strava_activity')
    op.drop_table('strava_activity')
    op.drop_index('ix_app_user_strava_athlete_id', table_name='app_user')
    op.drop_table('app_user')
