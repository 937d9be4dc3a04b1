"""Cognitive memory schema - baseline

Revision ID: 001_cognitive_memory
Revises:
Create Date: 2026-10-17

Creates sessions, four-layer memories, the per-user knowledge graph,
the temporal timeline, relationship depth and engagement triggers.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_cognitive_memory'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('push_token', sa.String(512), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'chat_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('session_type', sa.String(20), nullable=False, server_default='chat'),
        sa.Column('started_at', sa.DateTime, nullable=False),
        sa.Column('ended_at', sa.DateTime, nullable=True),
        sa.Column('note', sa.Text, nullable=True),
    )
    op.create_index('ix_chat_sessions_user_started', 'chat_sessions', ['user_id', 'started_at'])

    op.create_table(
        'chat_messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('chat_sessions.id'), index=True, nullable=False),
        sa.Column('user_id', sa.String(36), index=True, nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('text', sa.Text, nullable=False),
        sa.Column('trigger_id', sa.String(36), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

    # Memories: all four layers NOT NULL
    op.create_table(
        'memories',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('session_id', sa.String(36), nullable=True),
        sa.Column('surface_json', sa.Text, nullable=False),
        sa.Column('emotional_json', sa.Text, nullable=False),
        sa.Column('contextual_json', sa.Text, nullable=False),
        sa.Column('predictive_json', sa.Text, nullable=False),
        sa.Column('life_area', sa.String(20), index=True, nullable=False),
        sa.Column('emotional_weight', sa.Float, nullable=False),
        sa.Column('reference_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_referenced_at', sa.DateTime, nullable=True),
        sa.Column('verification_status', sa.String(20), index=True, nullable=False, server_default='not_verified'),
        sa.Column('clarification_note', sa.Text, nullable=True),
        sa.Column('confidence', sa.Float, nullable=True),
        sa.Column('uncertainty_notes', sa.Text, nullable=True),
        sa.Column('raw_transcript', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_memories_user_created', 'memories', ['user_id', 'created_at'])

    # Knowledge graph
    op.create_table(
        'graph_nodes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('node_type', sa.String(50), nullable=False),
        sa.Column('attributes_json', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('last_updated', sa.DateTime, nullable=False),
        sa.UniqueConstraint('user_id', 'name', 'node_type', name='uq_graph_nodes_user_name_type'),
    )

    op.create_table(
        'graph_edges',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('source_node_id', sa.String(36), sa.ForeignKey('graph_nodes.id'), index=True, nullable=False),
        sa.Column('target_node_id', sa.String(36), sa.ForeignKey('graph_nodes.id'), index=True, nullable=False),
        sa.Column('relationship', sa.String(100), nullable=False),
        sa.Column('strength', sa.Integer, nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint(
            'source_node_id', 'target_node_id', 'relationship',
            name='uq_graph_edges_source_target_relationship',
        ),
    )

    op.create_table(
        'graph_mentions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('node_id', sa.String(36), sa.ForeignKey('graph_nodes.id'), index=True, nullable=False),
        sa.Column('memory_id', sa.String(36), sa.ForeignKey('memories.id'), index=True, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('node_id', 'memory_id', name='uq_graph_mentions_node_memory'),
    )

    # Temporal timeline
    op.create_table(
        'metric_samples',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('metric_name', sa.String(50), nullable=False),
        sa.Column('value', sa.Float, nullable=False),
        sa.Column('context', sa.Text, nullable=True),
        sa.Column('memory_id', sa.String(36), nullable=True, index=True),
        sa.Column('recorded_at', sa.DateTime, nullable=False),
    )
    op.create_index(
        'ix_metric_samples_user_metric_time', 'metric_samples', ['user_id', 'metric_name', 'recorded_at']
    )

    op.create_table(
        'emotional_snapshots',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('session_id', sa.String(36), nullable=True),
        sa.Column('mood', sa.String(20), nullable=False),
        sa.Column('energy_level', sa.Integer, nullable=False, server_default='5'),
        sa.Column('stress_level', sa.Integer, nullable=False, server_default='5'),
        sa.Column('detected_from', sa.Text, nullable=True),
        sa.Column('recorded_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'relationship_depth',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), unique=True, nullable=False),
        sa.Column('intimacy_score', sa.Integer, nullable=False, server_default='0'),
        sa.Column('trust_score', sa.Integer, nullable=False, server_default='0'),
        sa.Column('vulnerability_level', sa.Integer, nullable=False, server_default='0'),
        sa.Column('stage', sa.String(20), nullable=False, server_default='acquainted'),
        sa.Column('inside_jokes_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('milestones_json', sa.Text, nullable=True),
        sa.Column('total_sessions', sa.Integer, nullable=False, server_default='0'),
        sa.Column('consecutive_days', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'engagement_triggers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('trigger_type', sa.String(20), nullable=False),
        sa.Column('scheduled_for', sa.DateTime, nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('memory_id', sa.String(36), nullable=True, index=True),
        sa.Column('confidence', sa.Float, nullable=False, server_default='100'),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('sent', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('sent_at', sa.DateTime, nullable=True),
        sa.Column('expired_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_engagement_triggers_due', 'engagement_triggers', ['sent', 'scheduled_for'])
    op.create_index(
        'ix_engagement_triggers_user_type', 'engagement_triggers', ['user_id', 'trigger_type', 'sent']
    )


def downgrade() -> None:
    op.drop_table('engagement_triggers')
    op.drop_table('relationship_depth')
    op.drop_table('emotional_snapshots')
    op.drop_table('metric_samples')
    op.drop_table('graph_mentions')
    op.drop_table('graph_edges')
    op.drop_table('graph_nodes')
    op.drop_table('memories')
    op.drop_table('chat_messages')
    op.drop_table('chat_sessions')
    op.drop_table('users')
