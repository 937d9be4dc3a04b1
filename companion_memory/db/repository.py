"""
Repository interface for the cognitive memory engine.

Services depend only on this interface. Two implementations exist:
SqlAlchemyRepository (production) and InMemoryRepository (tests, local runs).

Atomicity contract:
- upsert_node, upsert_edge and upsert_relationship_depth are single
  insert-or-update writes keyed on their natural keys.
- claim_and_emit_trigger flips sent False -> True with a compare-and-set and
  writes the emitted message in the same transaction; a second claim of the
  same trigger id returns None.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from companion_memory.schemas import (
    ChatMessage, ChatSession, DeliveredTrigger, EmotionalSnapshot, EngagementTrigger,
    GraphEdge, GraphNode, Memory, MemoryLayers, MessageRole, MetricSample, Mood,
    RelationshipDepth, SessionType, TriggerType, User, VerificationStatus,
)


class Repository(ABC):

    # ── Users, sessions, messages ──────────────────────────────────

    @abstractmethod
    async def create_user(self, name: str, created_at: datetime, push_token: Optional[str] = None,
                          user_id: Optional[str] = None) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def list_active_user_ids(self, since: datetime) -> List[str]:
        """Users with at least one session started at or after `since`."""

    @abstractmethod
    async def create_session(self, user_id: str, started_at: datetime,
                             session_type: SessionType = SessionType.CHAT,
                             note: Optional[str] = None) -> ChatSession: ...

    @abstractmethod
    async def end_session(self, session_id: str, ended_at: datetime) -> None: ...

    @abstractmethod
    async def get_active_session(self, user_id: str) -> Optional[ChatSession]:
        """Most recently started session without an end time."""

    @abstractmethod
    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        """All sessions for a user, oldest first."""

    @abstractmethod
    async def add_message(self, session_id: str, user_id: str, role: MessageRole, text: str,
                          created_at: datetime) -> ChatMessage: ...

    @abstractmethod
    async def list_messages(self, session_id: str) -> List[ChatMessage]:
        """Messages of a session in creation order."""

    @abstractmethod
    async def count_messages_by_session(self, user_id: str) -> Dict[str, int]: ...

    # ── Memories ───────────────────────────────────────────────────

    @abstractmethod
    async def create_memory(self, user_id: str, layers: MemoryLayers, created_at: datetime,
                            session_id: Optional[str] = None,
                            raw_transcript: Optional[str] = None) -> Memory:
        """Persist a memory. Raises ValidationError if any layer is missing."""

    @abstractmethod
    async def get_memory(self, memory_id: str) -> Optional[Memory]: ...

    @abstractmethod
    async def list_memories(self, user_id: str, limit: Optional[int] = None,
                            status: Optional[VerificationStatus] = None) -> List[Memory]:
        """Memories for a user, newest first."""

    @abstractmethod
    async def mark_memories_referenced(self, memory_ids: List[str], referenced_at: datetime) -> None:
        """Increment reference_count and set last_referenced_at."""

    @abstractmethod
    async def set_verification(self, memory_id: str, status: VerificationStatus, *,
                               by_user: bool = False, confidence: Optional[float] = None,
                               uncertainty_notes: Optional[str] = None,
                               clarification: Optional[str] = None) -> bool:
        """
        Update verification state. Automatic updates (by_user=False) are a
        conditional write that never replaces a human-set status. Returns
        whether a row changed.
        """

    @abstractmethod
    async def delete_memory(self, memory_id: str) -> bool:
        """Hard delete cascading to metric samples, unsent triggers and graph mentions."""

    # ── Knowledge graph ────────────────────────────────────────────

    @abstractmethod
    async def upsert_node(self, user_id: str, name: str, node_type: str, now: datetime) -> GraphNode:
        """Insert or bump last_updated on (user_id, name, node_type)."""

    @abstractmethod
    async def upsert_edge(self, user_id: str, source_node_id: str, target_node_id: str,
                          relationship: str, strength: int, now: datetime) -> GraphEdge:
        """
        Insert or overwrite strength on (source, target, relationship). Raises
        ValidationError if either endpoint is not owned by user_id.
        """

    @abstractmethod
    async def link_mention(self, node_id: str, memory_id: str, now: datetime) -> None: ...

    @abstractmethod
    async def list_nodes(self, user_id: str) -> List[GraphNode]: ...

    @abstractmethod
    async def list_edges(self, user_id: str) -> List[GraphEdge]: ...

    # ── Temporal timeline ──────────────────────────────────────────

    @abstractmethod
    async def append_metric(self, user_id: str, metric_name: str, value: float, recorded_at: datetime,
                            context: Optional[str] = None,
                            memory_id: Optional[str] = None) -> MetricSample: ...

    @abstractmethod
    async def list_metrics(self, user_id: str, metric_name: str,
                           since: Optional[datetime] = None) -> List[MetricSample]:
        """Samples oldest first."""

    @abstractmethod
    async def record_emotional_state(self, user_id: str, mood: Mood, energy_level: int,
                                     stress_level: int, recorded_at: datetime,
                                     detected_from: Optional[str] = None,
                                     session_id: Optional[str] = None) -> EmotionalSnapshot: ...

    @abstractmethod
    async def list_emotional_states(self, user_id: str,
                                    since: Optional[datetime] = None) -> List[EmotionalSnapshot]: ...

    # ── Relationship depth ─────────────────────────────────────────

    @abstractmethod
    async def get_relationship_depth(self, user_id: str) -> Optional[RelationshipDepth]: ...

    @abstractmethod
    async def upsert_relationship_depth(self, depth: RelationshipDepth) -> RelationshipDepth: ...

    # ── Engagement triggers ────────────────────────────────────────

    @abstractmethod
    async def create_trigger(self, user_id: str, trigger_type: TriggerType, scheduled_for: datetime,
                             message: str, created_at: datetime, memory_id: Optional[str] = None,
                             confidence: float = 100.0,
                             reason: Optional[str] = None) -> EngagementTrigger: ...

    @abstractmethod
    async def get_trigger(self, trigger_id: str) -> Optional[EngagementTrigger]: ...

    @abstractmethod
    async def list_triggers(self, user_id: str, sent: Optional[bool] = None) -> List[EngagementTrigger]: ...

    @abstractmethod
    async def find_pending_trigger(self, user_id: str, trigger_type: TriggerType,
                                   window_start: datetime,
                                   window_end: datetime) -> Optional[EngagementTrigger]:
        """An unsent, unexpired trigger of this type scheduled within [window_start, window_end]."""

    @abstractmethod
    async def list_due_triggers(self, now: datetime) -> List[EngagementTrigger]:
        """Unsent, unexpired triggers with scheduled_for <= now, oldest first."""

    @abstractmethod
    async def expire_stale_triggers(self, before: datetime, now: datetime) -> List[EngagementTrigger]:
        """
        Mark unsent triggers scheduled before `before` as expired and return
        them. Each trigger is returned by at most one call.
        """

    @abstractmethod
    async def claim_and_emit_trigger(self, trigger_id: str, now: datetime,
                                     session_note: Optional[str] = None) -> Optional[DeliveredTrigger]:
        """
        Atomically mark the trigger sent and write its message into the user's
        active session, opening a proactive session if none is active.
        Returns None when the trigger is missing, already sent or expired.
        """
