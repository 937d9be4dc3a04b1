"""SQLAlchemy models for the cognitive memory engine"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    push_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ChatSession(Base):
    """A conversation session. Active while ended_at is NULL."""
    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    session_type: Mapped[str] = mapped_column(String(20), default="chat")  # chat, proactive
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_chat_sessions_user_started", "user_id", "started_at"),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("chat_sessions.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    role: Mapped[str] = mapped_column(String(20))  # user, assistant
    text: Mapped[str] = mapped_column(Text)
    # Set when emitted by trigger dispatch; unique so one trigger yields one message
    trigger_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Memory(Base):
    """
    Four-layer memory. Each layer is a JSON document; all four are NOT NULL.
    life_area and emotional_weight are denormalized for filtering and ranking.
    """
    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    surface_json: Mapped[str] = mapped_column(Text, nullable=False)
    emotional_json: Mapped[str] = mapped_column(Text, nullable=False)
    contextual_json: Mapped[str] = mapped_column(Text, nullable=False)
    predictive_json: Mapped[str] = mapped_column(Text, nullable=False)

    life_area: Mapped[str] = mapped_column(String(20), index=True)
    emotional_weight: Mapped[float] = mapped_column(Float, default=5.0)

    # Usage
    reference_count: Mapped[int] = mapped_column(Integer, default=0)
    last_referenced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Verification
    verification_status: Mapped[str] = mapped_column(String(20), default="not_verified", index=True)
    clarification_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    uncertainty_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    raw_transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_memories_user_created", "user_id", "created_at"),
    )


class GraphNode(Base):
    """Knowledge graph entity. Exactly one row per (user_id, name, node_type)."""
    __tablename__ = "graph_nodes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    node_type: Mapped[str] = mapped_column(String(50))
    attributes_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "name", "node_type", name="uq_graph_nodes_user_name_type"),
    )


class GraphEdge(Base):
    """Directed, typed relationship between two nodes of the same user."""
    __tablename__ = "graph_edges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    source_node_id: Mapped[str] = mapped_column(String(36), ForeignKey("graph_nodes.id"), index=True)
    target_node_id: Mapped[str] = mapped_column(String(36), ForeignKey("graph_nodes.id"), index=True)
    relationship: Mapped[str] = mapped_column(String(100))
    strength: Mapped[int] = mapped_column(Integer, default=1)  # 1-10, overwritten on re-observation
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "source_node_id", "target_node_id", "relationship",
            name="uq_graph_edges_source_target_relationship",
        ),
    )


class GraphMention(Base):
    """Links a node to a memory whose surface layer mentioned it."""
    __tablename__ = "graph_mentions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    node_id: Mapped[str] = mapped_column(String(36), ForeignKey("graph_nodes.id"), index=True)
    memory_id: Mapped[str] = mapped_column(String(36), ForeignKey("memories.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("node_id", "memory_id", name="uq_graph_mentions_node_memory"),
    )


class MetricSample(Base):
    """Append-only temporal timeline sample (value 1-10)."""
    __tablename__ = "metric_samples"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    metric_name: Mapped[str] = mapped_column(String(50))
    value: Mapped[float] = mapped_column(Float)
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    memory_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_metric_samples_user_metric_time", "user_id", "metric_name", "recorded_at"),
    )


class EmotionalSnapshot(Base):
    __tablename__ = "emotional_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    mood: Mapped[str] = mapped_column(String(20))
    energy_level: Mapped[int] = mapped_column(Integer, default=5)
    stress_level: Mapped[int] = mapped_column(Integer, default=5)
    detected_from: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class RelationshipDepth(Base):
    """Materialized relationship state, one row per user. Recomputable from history."""
    __tablename__ = "relationship_depth"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), unique=True)
    intimacy_score: Mapped[int] = mapped_column(Integer, default=0)
    trust_score: Mapped[int] = mapped_column(Integer, default=0)
    vulnerability_level: Mapped[int] = mapped_column(Integer, default=0)
    stage: Mapped[str] = mapped_column(String(20), default="acquainted")
    inside_jokes_count: Mapped[int] = mapped_column(Integer, default=0)
    milestones_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_sessions: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_days: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class EngagementTrigger(Base):
    """Scheduled proactive message. sent flips False -> True exactly once."""
    __tablename__ = "engagement_triggers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    trigger_type: Mapped[str] = mapped_column(String(20))
    scheduled_for: Mapped[datetime] = mapped_column(DateTime)
    message: Mapped[str] = mapped_column(Text)
    memory_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    confidence: Mapped[float] = mapped_column(Float, default=100.0)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Set once when the trigger is found stale; expired triggers are never sent
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_engagement_triggers_due", "sent", "scheduled_for"),
        Index("ix_engagement_triggers_user_type", "user_id", "trigger_type", "sent"),
    )
