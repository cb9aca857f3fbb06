"""Initial chat pipeline tables

Revision ID: 001_initial_chat
Revises:
Create Date: 2026-10-18

Creates:
- chats
- pipeline_stages (status stored as string values)
- messages
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_chat'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ==========================================================================
    # chats
    # ==========================================================================
    op.create_table(
        'chats',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    # ==========================================================================
    # pipeline_stages
    # ==========================================================================
    op.create_table(
        'pipeline_stages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('chat_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='not_started'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('requirements_summary', sa.Text(), nullable=True),
        sa.Column('pipeline_endpoint', sa.String(length=500), nullable=True),
        sa.Column('next_stage_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['chat_id'], ['chats.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['next_stage_id'], ['pipeline_stages.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pipeline_stages_chat_id', 'pipeline_stages', ['chat_id'])
    op.create_index('ix_pipeline_stages_status', 'pipeline_stages', ['status'])

    # ==========================================================================
    # messages
    # ==========================================================================
    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stage_id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['stage_id'], ['pipeline_stages.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_messages_stage_id', 'messages', ['stage_id'])


def downgrade() -> None:
    op.drop_index('ix_messages_stage_id', table_name='messages')
    op.drop_table('messages')
    op.drop_index('ix_pipeline_stages_status', table_name='pipeline_stages')
    op.drop_index('ix_pipeline_stages_chat_id', table_name='pipeline_stages')
    op.drop_table('pipeline_stages')
    op.drop_table('chats')
