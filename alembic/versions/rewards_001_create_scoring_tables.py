"""Create feedback scoring tables

Revision ID: rewards_001
Revises:
Create Date: 2026-10-19

Adds tables for:
- ai_categorization_cache: AI category flags keyed by normalized comment hash
- feedback_analysis: one analysis row per feedback item
- point_ledger: point grants, unique per (user, source type, reference)
- referral_counters: per-referrer count of paid referrals

Expects the application's users and feedback tables to exist.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'rewards_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'ai_categorization_cache',
        sa.Column('comment_hash', sa.String(64), nullable=False),
        sa.Column('has_teaching', sa.Boolean(), nullable=False),
        sa.Column('has_assessment', sa.Boolean(), nullable=False),
        sa.Column('has_materials', sa.Boolean(), nullable=False),
        sa.Column('has_tips', sa.Boolean(), nullable=False),
        sa.Column('hit_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_accessed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('comment_hash')
    )
    op.create_index('idx_categorization_cache_last_accessed', 'ai_categorization_cache', ['last_accessed_at'])

    op.create_table(
        'feedback_analysis',
        sa.Column('feedback_id', sa.Integer(), nullable=False),
        sa.Column('has_teaching', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_assessment', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_materials', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_tips', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('word_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('feedback_id'),
        sa.ForeignKeyConstraint(['feedback_id'], ['feedback.id'], ondelete='CASCADE')
    )

    op.create_table(
        'point_ledger',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('source_type', sa.String(32), nullable=False),
        sa.Column('reference_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.UniqueConstraint('user_id', 'source_type', 'reference_id', name='uq_point_ledger_key'),
        sa.CheckConstraint(
            "source_type IN ('submit_feedback', 'referral')",
            name='ck_point_ledger_source_type'
        )
    )
    op.create_index('ix_point_ledger_user_id', 'point_ledger', ['user_id'])
    op.create_index('idx_point_ledger_user_source', 'point_ledger', ['user_id', 'source_type'])

    op.create_table(
        'referral_counters',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('awarded_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('user_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'])
    )


def downgrade():
    op.drop_table('referral_counters')

    op.drop_index('idx_point_ledger_user_source', table_name='point_ledger')
    op.drop_index('ix_point_ledger_user_id', table_name='point_ledger')
    op.drop_table('point_ledger')

    op.drop_table('feedback_analysis')

    op.drop_index('idx_categorization_cache_last_accessed', table_name='ai_categorization_cache')
    op.drop_table('ai_categorization_cache')
