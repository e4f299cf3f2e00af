"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(100), nullable=True),
        sa.Column('avatar', sa.Text(), nullable=True),
        sa.Column('bio', sa.Text(), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='USER'),
        sa.Column('permissions', JSONB(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('locale', sa.String(10), nullable=False, server_default='en'),
        sa.Column('referral_code', sa.String(32), nullable=True),
        sa.Column('email_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_referral_code', 'users', ['referral_code'], unique=True)

    op.create_table(
        'verification_tokens',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False, unique=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_verification_tokens_email', 'verification_tokens', ['email'])

    op.create_table(
        'masters',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('name_en', sa.String(255), nullable=True),
        sa.Column('name_ja', sa.String(255), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('title_en', sa.String(255), nullable=True),
        sa.Column('title_ja', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('description_en', sa.Text(), nullable=True),
        sa.Column('description_ja', sa.Text(), nullable=True),
        sa.Column('bio', sa.Text(), nullable=True),
        sa.Column('bio_en', sa.Text(), nullable=True),
        sa.Column('bio_ja', sa.Text(), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('location_en', sa.String(255), nullable=True),
        sa.Column('location_ja', sa.String(255), nullable=True),
        sa.Column('hero_image', sa.Text(), nullable=True),
        sa.Column('profile_video', sa.Text(), nullable=True),
        sa.Column('intro_video', sa.Text(), nullable=True),
        sa.Column('story_content', sa.Text(), nullable=True),
        sa.Column('top_clips', sa.Text(), nullable=True),
        sa.Column('mission_card', sa.Text(), nullable=True),
        sa.Column('has_trip_product', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('trip_booking_url', sa.Text(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_masters_is_active', 'masters', ['is_active'])

    op.create_table(
        'interests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('master_id', UUID(as_uuid=True), sa.ForeignKey('masters.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='INTERESTED'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'master_id', name='uq_interests_user_master'),
    )
    op.create_index('ix_interests_user_id', 'interests', ['user_id'])
    op.create_index('ix_interests_master_id', 'interests', ['master_id'])

    op.create_table(
        'contents',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('title_en', sa.String(255), nullable=True),
        sa.Column('title_ja', sa.String(255), nullable=True),
        sa.Column('slug', sa.String(255), nullable=False),
        sa.Column('type', sa.String(30), nullable=False, server_default='article'),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('excerpt', sa.Text(), nullable=False, server_default=''),
        sa.Column('excerpt_en', sa.Text(), nullable=True),
        sa.Column('excerpt_ja', sa.Text(), nullable=True),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('cover_image', sa.Text(), nullable=True),
        sa.Column('meta_title', sa.String(255), nullable=True),
        sa.Column('meta_description', sa.Text(), nullable=True),
        sa.Column('author_id', UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('last_edited_by', UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_contents_slug', 'contents', ['slug'], unique=True)
    op.create_index('ix_contents_status', 'contents', ['status'])

    op.create_table(
        'referral_links',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('code', sa.String(20), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('target_url', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('click_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_referral_links_user_id', 'referral_links', ['user_id'])
    op.create_index('ix_referral_links_code', 'referral_links', ['code'], unique=True)

    op.create_table(
        'referral_clicks',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('referral_id', UUID(as_uuid=True),
                  sa.ForeignKey('referral_links.id', ondelete='CASCADE'), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('referer', sa.Text(), nullable=True),
        sa.Column('device', sa.String(100), nullable=True),
        sa.Column('browser', sa.String(100), nullable=True),
        sa.Column('country', sa.String(100), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_referral_clicks_referral_created', 'referral_clicks', ['referral_id', 'created_at'])

    op.create_table(
        'conversions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('referral_id', UUID(as_uuid=True),
                  sa.ForeignKey('referral_links.id', ondelete='CASCADE'), nullable=False),
        sa.Column('click_id', UUID(as_uuid=True), nullable=True),
        sa.Column('order_id', sa.String(255), nullable=False),
        sa.Column('order_value_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('commission_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('product_type', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('referral_id', 'order_id', name='uq_conversions_referral_order'),
    )
    op.create_index('ix_conversions_referral_status', 'conversions', ['referral_id', 'status'])

    op.create_table(
        'contributions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('referral_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_contributions_user_id', 'contributions', ['user_id'])
    op.create_index('ix_contributions_user_type', 'contributions', ['user_id', 'type'])

    op.create_table(
        'admin_logs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('entity_type', sa.String(30), nullable=True),
        sa.Column('entity_id', sa.String(64), nullable=True),
        sa.Column('details', JSONB(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_admin_logs_user_id', 'admin_logs', ['user_id'])
    op.create_index('ix_admin_logs_created', 'admin_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('admin_logs')
    op.drop_table('contributions')
    op.drop_table('conversions')
    op.drop_table('referral_clicks')
    op.drop_table('referral_links')
    op.drop_table('contents')
    op.drop_table('interests')
    op.drop_table('masters')
    op.drop_table('verification_tokens')
    op.drop_table('users')
