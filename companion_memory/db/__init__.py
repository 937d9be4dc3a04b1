from companion_memory.db.models import (
    Base, User, ChatSession, ChatMessage, Memory, GraphNode, GraphEdge, GraphMention,
    MetricSample, EmotionalSnapshot, RelationshipDepth, EngagementTrigger,
)
from companion_memory.db.database import (
    build_engine, build_session_maker, init_db, drop_db, async_session_maker, engine,
)
from companion_memory.db.repository import Repository
from companion_memory.db.sql_repository import SqlAlchemyRepository
from companion_memory.db.memory_repository import InMemoryRepository

__all__ = [
    "Base",
    "User",
    "ChatSession",
    "ChatMessage",
    "Memory",
    "GraphNode",
    "GraphEdge",
    "GraphMention",
    "MetricSample",
    "EmotionalSnapshot",
    "RelationshipDepth",
    "EngagementTrigger",
    "build_engine",
    "build_session_maker",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
    "Repository",
    "SqlAlchemyRepository",
    "InMemoryRepository",
]
