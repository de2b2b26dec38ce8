"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create merchants table
    # ========================================================================
    op.create_table(
        'merchants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('shop_domain', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('plan_tier', sa.String(20), nullable=False, server_default='FREE'),
        sa.Column('platform_access_token', sa.String(255), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('installed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('uninstalled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('shop_domain', name='uq_merchants_shop_domain'),
        sa.CheckConstraint("plan_tier IN ('FREE', 'GROWTH', 'PRO')", name='ck_merchant_plan_tier'),
        sa.CheckConstraint('usage_count >= 0', name='ck_merchant_usage_non_negative'),
    )
    op.create_index('idx_merchants_active', 'merchants', ['is_active'])

    # ========================================================================
    # Create social_auths table
    # ========================================================================
    op.create_table(
        'social_auths',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('page_id', sa.String(64), nullable=True),
        sa.Column('business_account_id', sa.String(64), nullable=False),
        sa.Column('access_token_enc', sa.Text(), nullable=False),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auth_variant', sa.String(20), nullable=False),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('invalid_reason', sa.String(255), nullable=True),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('merchant_id', name='uq_social_auths_merchant_id'),
        sa.UniqueConstraint('business_account_id', name='uq_social_auths_business_account_id'),
        sa.CheckConstraint("auth_variant IN ('page-login', 'direct-login')", name='ck_social_auth_variant'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_social_auths_merchant', ondelete='CASCADE'),
    )
    op.create_index('idx_social_auths_expires', 'social_auths', ['token_expires_at'])

    # ========================================================================
    # Create automation_settings table
    # ========================================================================
    op.create_table(
        'automation_settings',
        sa.Column('merchant_id', UUID(as_uuid=True), primary_key=True),
        sa.Column('dm_automation_enabled', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('comment_automation_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('enabled_post_ids', ARRAY(sa.String(64)), nullable=False, server_default='{}'),
        sa.Column('disabled_post_ids', ARRAY(sa.String(64)), nullable=False, server_default='{}'),
        sa.Column('tone', sa.String(20), nullable=False, server_default='friendly'),
        sa.Column('custom_instruction', sa.Text(), nullable=True),
        sa.Column('followup_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("tone IN ('friendly', 'expert', 'casual')", name='ck_settings_tone'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_settings_merchant', ondelete='CASCADE'),
    )

    # ========================================================================
    # Create product_mappings table
    # ========================================================================
    op.create_table(
        'product_mappings',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('media_id', sa.String(64), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('variant_id', sa.String(255), nullable=False),
        sa.Column('product_handle', sa.String(255), nullable=True),
        sa.Column('variant_explicit', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('variant_count', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('merchant_id', 'media_id', name='uq_product_mapping_media'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_mappings_merchant', ondelete='CASCADE'),
    )

    # ========================================================================
    # Create messages table (message log and reply ledger)
    # ========================================================================
    op.create_table(
        'messages',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('channel', sa.String(10), nullable=False),
        sa.Column('sender_id', sa.String(64), nullable=False),
        sa.Column('sender_username', sa.String(255), nullable=True),
        sa.Column('media_id', sa.String(64), nullable=True),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('event_timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('intent', sa.String(32), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('sentiment', sa.String(16), nullable=True),
        sa.Column('classified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('outcome', sa.String(20), nullable=True),
        sa.Column('reason', sa.String(40), nullable=True),
        sa.Column('reply_text', sa.Text(), nullable=True),
        sa.Column('reply_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('replied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('external_message_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('merchant_id', 'external_id', name='uq_message_event'),
        sa.CheckConstraint("channel IN ('dm', 'comment')", name='ck_message_channel'),
        sa.CheckConstraint('confidence IS NULL OR (confidence >= 0 AND confidence <= 1)', name='ck_message_confidence_range'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_messages_merchant', ondelete='CASCADE'),
    )
    op.create_index('idx_messages_sender', 'messages', ['merchant_id', 'sender_id', 'created_at'])
    op.create_index('idx_messages_reason', 'messages', ['merchant_id', 'reason'])

    # ========================================================================
    # Create short_links, links_sent and link_clicks tables
    # ========================================================================
    op.create_table(
        'short_links',
        sa.Column('link_id', sa.String(32), primary_key=True),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('target_url', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_short_links_merchant', ondelete='CASCADE'),
    )

    op.create_table(
        'links_sent',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('link_id', sa.String(32), nullable=False),
        sa.Column('message_id', UUID(as_uuid=True), nullable=False),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('channel', sa.String(10), nullable=False),
        sa.Column('target_url', sa.Text(), nullable=False),
        sa.Column('reply_text', sa.Text(), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=True),
        sa.Column('variant_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('extra_link_ids', ARRAY(sa.String(32)), nullable=False, server_default='{}'),

        # At most one sent link per reply
        sa.UniqueConstraint('link_id', name='uq_links_sent_link_id'),
        sa.UniqueConstraint('message_id', name='uq_links_sent_message_id'),
        sa.ForeignKeyConstraint(['message_id'], ['messages.id'], name='fk_links_sent_message', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_links_sent_merchant', ondelete='CASCADE'),
    )
    op.create_index('idx_links_sent_merchant', 'links_sent', ['merchant_id', 'created_at'])
    op.create_index('idx_links_sent_extra_link_ids', 'links_sent', ['extra_link_ids'], postgresql_using='gin')

    op.create_table(
        'link_clicks',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('link_id', sa.String(32), nullable=False),
        sa.Column('user_agent', sa.String(512), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('clicked_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('idx_link_clicks_link', 'link_clicks', ['link_id'])

    # ========================================================================
    # Create order_attributions table
    # ========================================================================
    op.create_table(
        'order_attributions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('link_id', sa.String(32), nullable=False),
        sa.Column('message_id', UUID(as_uuid=True), nullable=True),
        sa.Column('channel', sa.String(10), nullable=True),
        sa.Column('total_price', sa.String(32), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('merchant_id', 'order_id', name='uq_order_attribution'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_order_attributions_merchant', ondelete='CASCADE'),
    )
    op.create_index('idx_order_attributions_link', 'order_attributions', ['link_id'])

    # ========================================================================
    # Create contact_opt_outs table
    # ========================================================================
    op.create_table(
        'contact_opt_outs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('sender_id', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('merchant_id', 'sender_id', name='uq_contact_opt_out'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_opt_outs_merchant', ondelete='CASCADE'),
    )

    # ========================================================================
    # Create followups table (one PRO follow-up per message and link)
    # ========================================================================
    op.create_table(
        'followups',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('message_id', UUID(as_uuid=True), nullable=False),
        sa.Column('link_id', sa.String(32), nullable=False),
        sa.Column('external_message_id', sa.String(255), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),

        sa.UniqueConstraint('message_id', 'link_id', name='uq_followup_message_link'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], name='fk_followups_merchant', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['message_id'], ['messages.id'], name='fk_followups_message', ondelete='CASCADE'),
    )
    op.create_index('idx_followups_merchant', 'followups', ['merchant_id', 'sent_at'])

    # ========================================================================
    # Create webhook_events table (durable inbound queue)
    # ========================================================================
    op.create_table(
        'webhook_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('dedup_key', sa.String(300), nullable=False),
        sa.Column('business_account_id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(16), nullable=False),
        sa.Column('field', sa.String(32), nullable=True),
        sa.Column('payload', JSONB(), nullable=False),
        sa.Column('entry_time', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('not_before', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('outcome', sa.String(20), nullable=True),
        sa.Column('reason', sa.String(40), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('dedup_key', name='uq_webhook_events_dedup_key'),
        sa.CheckConstraint("status IN ('pending', 'processing', 'done', 'failed')", name='ck_webhook_event_status'),
    )
    op.create_index('idx_webhook_events_ready', 'webhook_events', ['status', 'not_before'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('webhook_events')
    op.drop_table('followups')
    op.drop_table('contact_opt_outs')
    op.drop_table('order_attributions')
    op.drop_table('link_clicks')
    op.drop_table('links_sent')
    op.drop_table('short_links')
    op.drop_table('messages')
    op.drop_table('product_mappings')
    op.drop_table('automation_settings')
    op.drop_table('social_auths')
    op.drop_table('merchants')
