"""Initial schema - threads, messages, memories, approvals, checkpoints

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18

Same tables init_db creates, for hosts that manage their schema with Alembic.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Threads
    op.create_table(
        'agent_threads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('agent_slug', sa.String(50), nullable=False),
        sa.Column('scope', sa.String(20), nullable=False, server_default='global'),
        sa.Column('project_id', sa.String(36), nullable=True),
        sa.Column('title', sa.String(500), nullable=True),
        sa.Column('metadata_json', sa.Text, nullable=True),
        sa.Column('message_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_agent_threads_user_id', 'agent_threads', ['user_id'])
    op.create_index('ix_agent_threads_agent_slug', 'agent_threads', ['agent_slug'])
    op.create_index('ix_agent_threads_project_id', 'agent_threads', ['project_id'])
    op.create_index('ix_agent_threads_updated_at', 'agent_threads', ['updated_at'])
    op.create_index('ix_agent_threads_user_updated', 'agent_threads', ['user_id', 'updated_at'])

    # Messages (append-only, ordered by sequence)
    op.create_table(
        'agent_messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('thread_id', sa.String(36),
                  sa.ForeignKey('agent_threads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sequence', sa.Integer, nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('metadata_json', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('thread_id', 'sequence', name='uq_agent_messages_thread_sequence'),
    )
    op.create_index('ix_agent_messages_thread_id', 'agent_messages', ['thread_id'])

    # Memories
    op.create_table(
        'agent_memories',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('thread_id', sa.String(36),
                  sa.ForeignKey('agent_threads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('agent_slug', sa.String(50), nullable=False),
        sa.Column('memory_type', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('context', sa.Text, nullable=True),
        sa.Column('confidence', sa.Float, nullable=False, server_default='0.7'),
        sa.Column('importance', sa.Float, nullable=False, server_default='0.5'),
        sa.Column('embedding_json', sa.Text, nullable=True),
        sa.Column('metadata_json', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_agent_memories_thread_id', 'agent_memories', ['thread_id'])
    op.create_index('ix_agent_memories_user_id', 'agent_memories', ['user_id'])
    op.create_index('ix_agent_memories_agent_slug', 'agent_memories', ['agent_slug'])
    op.create_index('ix_agent_memories_memory_type', 'agent_memories', ['memory_type'])
    op.create_index('ix_agent_memories_created_at', 'agent_memories', ['created_at'])
    op.create_index('ix_agent_memories_user_type', 'agent_memories', ['user_id', 'memory_type'])
    op.create_index('ix_agent_memories_user_importance', 'agent_memories', ['user_id', 'importance'])

    # Approvals
    op.create_table(
        'agent_approvals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('thread_id', sa.String(36),
                  sa.ForeignKey('agent_threads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('agent_slug', sa.String(50), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('risk_level', sa.String(20), nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('details_json', sa.Text, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('expires_at', sa.DateTime, nullable=False),
        sa.Column('reviewed_by', sa.String(36), nullable=True),
        sa.Column('reviewed_at', sa.DateTime, nullable=True),
        sa.Column('review_notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_agent_approvals_thread_id', 'agent_approvals', ['thread_id'])
    op.create_index('ix_agent_approvals_user_id', 'agent_approvals', ['user_id'])
    op.create_index('ix_agent_approvals_status', 'agent_approvals', ['status'])
    op.create_index('ix_agent_approvals_expires_at', 'agent_approvals', ['expires_at'])
    op.create_index('ix_agent_approvals_user_status', 'agent_approvals', ['user_id', 'status'])

    # Checkpoints (suspended continuations waiting on an approval)
    op.create_table(
        'agent_checkpoints',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('thread_id', sa.String(36),
                  sa.ForeignKey('agent_threads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('approval_id', sa.String(36), nullable=True, unique=True),
        sa.Column('stage', sa.String(30), nullable=False, server_default='awaiting_approval'),
        sa.Column('state_json', sa.Text, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='suspended'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_agent_checkpoints_thread_id', 'agent_checkpoints', ['thread_id'])


def downgrade() -> None:
    op.drop_table('agent_checkpoints')
    op.drop_table('agent_approvals')
    op.drop_table('agent_memories')
    op.drop_table('agent_messages')
    op.drop_table('agent_threads')
