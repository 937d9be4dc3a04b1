"""
In-memory Repository implementation.

Holds all state in instance dictionaries, never module globals. Every method
body runs without awaiting, so each operation is atomic with respect to other
coroutines on the same event loop.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from companion_memory.db.repository import Repository
from companion_memory.errors import ValidationError
from companion_memory.schemas import (
    HUMAN_VERIFICATION_STATUSES, ChatMessage, ChatSession, DeliveredTrigger, EmotionalSnapshot,
    EngagementTrigger, GraphEdge, GraphNode, Memory, MemoryLayers, MessageRole, MetricSample,
    Mood, RelationshipDepth, SessionType, TriggerType, User, VerificationStatus,
)


def _uuid() -> str:
    return str(uuid.uuid4())


class InMemoryRepository(Repository):

    def __init__(self):
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, ChatSession] = {}
        self.messages: Dict[str, ChatMessage] = {}
        self.memories: Dict[str, Memory] = {}
        self.nodes: Dict[Tuple[str, str, str], GraphNode] = {}
        self.edges: Dict[Tuple[str, str, str], GraphEdge] = {}
        self.mentions: set = set()  # (node_id, memory_id)
        self.metrics: List[MetricSample] = []
        self.emotional_states: List[EmotionalSnapshot] = []
        self.depths: Dict[str, RelationshipDepth] = {}
        self.triggers: Dict[str, EngagementTrigger] = {}

    # ── Users, sessions, messages ──────────────────────────────────

    async def create_user(self, name, created_at, push_token=None, user_id=None) -> User:
        user = User(id=user_id or _uuid(), name=name, push_token=push_token, created_at=created_at)
        self.users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def list_active_user_ids(self, since: datetime) -> List[str]:
        seen: List[str] = []
        for session in sorted(self.sessions.values(), key=lambda s: s.started_at):
            if session.started_at >= since and session.user_id not in seen:
                seen.append(session.user_id)
        return seen

    async def create_session(self, user_id, started_at, session_type=SessionType.CHAT, note=None) -> ChatSession:
        session = ChatSession(
            id=_uuid(), user_id=user_id, session_type=session_type, started_at=started_at, note=note,
        )
        self.sessions[session.id] = session
        return session

    async def end_session(self, session_id: str, ended_at: datetime) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            self.sessions[session_id] = session.model_copy(update={"ended_at": ended_at})

    def _active_session(self, user_id: str) -> Optional[ChatSession]:
        active = [s for s in self.sessions.values() if s.user_id == user_id and s.ended_at is None]
        return max(active, key=lambda s: s.started_at) if active else None

    async def get_active_session(self, user_id: str) -> Optional[ChatSession]:
        return self._active_session(user_id)

    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        return sorted(
            (s for s in self.sessions.values() if s.user_id == user_id),
            key=lambda s: s.started_at,
        )

    async def add_message(self, session_id, user_id, role, text, created_at) -> ChatMessage:
        message = ChatMessage(
            id=_uuid(), session_id=session_id, user_id=user_id, role=role, text=text, created_at=created_at,
        )
        self.messages[message.id] = message
        return message

    async def list_messages(self, session_id: str) -> List[ChatMessage]:
        return sorted(
            (m for m in self.messages.values() if m.session_id == session_id),
            key=lambda m: m.created_at,
        )

    async def count_messages_by_session(self, user_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for message in self.messages.values():
            if message.user_id == user_id:
                counts[message.session_id] = counts.get(message.session_id, 0) + 1
        return counts

    # ── Memories ───────────────────────────────────────────────────

    async def create_memory(self, user_id, layers, created_at, session_id=None, raw_transcript=None) -> Memory:
        if not isinstance(layers, MemoryLayers) or None in (
            layers.surface, layers.emotional, layers.contextual, layers.predictive
        ):
            raise ValidationError("Memory requires all four layers")
        memory = Memory(
            id=_uuid(),
            user_id=user_id,
            session_id=session_id,
            surface=layers.surface,
            emotional=layers.emotional,
            contextual=layers.contextual,
            predictive=layers.predictive,
            raw_transcript=raw_transcript,
            created_at=created_at,
        )
        self.memories[memory.id] = memory
        return memory

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        return self.memories.get(memory_id)

    async def list_memories(self, user_id, limit=None, status=None) -> List[Memory]:
        memories = [
            m for m in self.memories.values()
            if m.user_id == user_id and (status is None or m.verification_status == status)
        ]
        memories.sort(key=lambda m: m.created_at, reverse=True)
        return memories[:limit] if limit else memories

    async def mark_memories_referenced(self, memory_ids: List[str], referenced_at: datetime) -> None:
        for memory_id in memory_ids:
            memory = self.memories.get(memory_id)
            if memory is not None:
                self.memories[memory_id] = memory.model_copy(update={
                    "reference_count": memory.reference_count + 1,
                    "last_referenced_at": referenced_at,
                })

    async def set_verification(self, memory_id, status, *, by_user=False, confidence=None,
                               uncertainty_notes=None, clarification=None) -> bool:
        memory = self.memories.get(memory_id)
        if memory is None:
            return False
        if not by_user and memory.verification_status in HUMAN_VERIFICATION_STATUSES:
            return False

        update = {"verification_status": VerificationStatus(status)}
        if confidence is not None:
            update["confidence"] = confidence
        if uncertainty_notes is not None:
            update["uncertainty_notes"] = uncertainty_notes
        if clarification is not None:
            update["clarification_note"] = clarification
        self.memories[memory_id] = memory.model_copy(update=update)
        return True

    async def delete_memory(self, memory_id: str) -> bool:
        if self.memories.pop(memory_id, None) is None:
            return False

        self.metrics = [s for s in self.metrics if s.memory_id != memory_id]
        for trigger_id, trigger in list(self.triggers.items()):
            if trigger.memory_id != memory_id:
                continue
            if trigger.sent:
                self.triggers[trigger_id] = trigger.model_copy(update={"memory_id": None})
            else:
                del self.triggers[trigger_id]

        mentioned = {node_id for node_id, mem_id in self.mentions if mem_id == memory_id}
        self.mentions = {(n, m) for n, m in self.mentions if m != memory_id}
        still_mentioned = {n for n, _ in self.mentions}
        orphaned = mentioned - still_mentioned
        if orphaned:
            self.nodes = {k: n for k, n in self.nodes.items() if n.id not in orphaned}
            self.edges = {
                k: e for k, e in self.edges.items()
                if e.source_node_id not in orphaned and e.target_node_id not in orphaned
            }
        return True

    # ── Knowledge graph ────────────────────────────────────────────

    async def upsert_node(self, user_id, name, node_type, now) -> GraphNode:
        key = (user_id, name, node_type)
        existing = self.nodes.get(key)
        if existing is None:
            node = GraphNode(
                id=_uuid(), user_id=user_id, name=name, node_type=node_type,
                created_at=now, last_updated=now,
            )
        else:
            node = existing.model_copy(update={"last_updated": now})
        self.nodes[key] = node
        return node

    def _node_owner(self, node_id: str) -> Optional[str]:
        for node in self.nodes.values():
            if node.id == node_id:
                return node.user_id
        return None

    async def upsert_edge(self, user_id, source_node_id, target_node_id, relationship, strength, now) -> GraphEdge:
        if source_node_id == target_node_id:
            raise ValidationError("Self-referencing edges are not stored")
        if self._node_owner(source_node_id) != user_id or self._node_owner(target_node_id) != user_id:
            raise ValidationError(f"Edge endpoints must both belong to user {user_id}")

        key = (source_node_id, target_node_id, relationship)
        existing = self.edges.get(key)
        if existing is None:
            edge = GraphEdge(
                id=_uuid(), user_id=user_id, source_node_id=source_node_id, target_node_id=target_node_id,
                relationship=relationship, strength=strength, created_at=now, updated_at=now,
            )
        else:
            edge = existing.model_copy(update={"strength": strength, "updated_at": now})
        self.edges[key] = edge
        return edge

    async def link_mention(self, node_id: str, memory_id: str, now: datetime) -> None:
        self.mentions.add((node_id, memory_id))

    async def list_nodes(self, user_id: str) -> List[GraphNode]:
        return sorted((n for n in self.nodes.values() if n.user_id == user_id), key=lambda n: n.created_at)

    async def list_edges(self, user_id: str) -> List[GraphEdge]:
        return sorted((e for e in self.edges.values() if e.user_id == user_id), key=lambda e: e.created_at)

    # ── Temporal timeline ──────────────────────────────────────────

    async def append_metric(self, user_id, metric_name, value, recorded_at, context=None, memory_id=None) -> MetricSample:
        sample = MetricSample(
            id=_uuid(), user_id=user_id, metric_name=metric_name, value=value,
            context=context, memory_id=memory_id, recorded_at=recorded_at,
        )
        self.metrics.append(sample)
        return sample

    async def list_metrics(self, user_id, metric_name, since=None) -> List[MetricSample]:
        samples = [
            s for s in self.metrics
            if s.user_id == user_id and s.metric_name == metric_name
            and (since is None or s.recorded_at >= since)
        ]
        return sorted(samples, key=lambda s: s.recorded_at)

    async def record_emotional_state(self, user_id, mood, energy_level, stress_level, recorded_at,
                                     detected_from=None, session_id=None) -> EmotionalSnapshot:
        snapshot = EmotionalSnapshot(
            id=_uuid(), user_id=user_id, session_id=session_id, mood=Mood(mood),
            energy_level=energy_level, stress_level=stress_level,
            detected_from=detected_from, recorded_at=recorded_at,
        )
        self.emotional_states.append(snapshot)
        return snapshot

    async def list_emotional_states(self, user_id, since=None) -> List[EmotionalSnapshot]:
        states = [
            s for s in self.emotional_states
            if s.user_id == user_id and (since is None or s.recorded_at >= since)
        ]
        return sorted(states, key=lambda s: s.recorded_at)

    # ── Relationship depth ─────────────────────────────────────────

    async def get_relationship_depth(self, user_id: str) -> Optional[RelationshipDepth]:
        return self.depths.get(user_id)

    async def upsert_relationship_depth(self, depth: RelationshipDepth) -> RelationshipDepth:
        self.depths[depth.user_id] = depth
        return depth

    # ── Engagement triggers ────────────────────────────────────────

    async def create_trigger(self, user_id, trigger_type, scheduled_for, message, created_at,
                             memory_id=None, confidence=100.0, reason=None) -> EngagementTrigger:
        trigger = EngagementTrigger(
            id=_uuid(), user_id=user_id, trigger_type=TriggerType(trigger_type),
            scheduled_for=scheduled_for, message=message, memory_id=memory_id,
            confidence=confidence, reason=reason, created_at=created_at,
        )
        self.triggers[trigger.id] = trigger
        return trigger

    async def get_trigger(self, trigger_id: str) -> Optional[EngagementTrigger]:
        return self.triggers.get(trigger_id)

    async def list_triggers(self, user_id, sent=None) -> List[EngagementTrigger]:
        triggers = [
            t for t in self.triggers.values()
            if t.user_id == user_id and (sent is None or t.sent == sent)
        ]
        return sorted(triggers, key=lambda t: t.scheduled_for)

    async def find_pending_trigger(self, user_id, trigger_type, window_start, window_end) -> Optional[EngagementTrigger]:
        for trigger in await self.list_triggers(user_id, sent=False):
            if (
                trigger.trigger_type == trigger_type
                and trigger.expired_at is None
                and window_start <= trigger.scheduled_for <= window_end
            ):
                return trigger
        return None

    async def list_due_triggers(self, now: datetime) -> List[EngagementTrigger]:
        due = [
            t for t in self.triggers.values()
            if not t.sent and t.expired_at is None and t.scheduled_for <= now
        ]
        return sorted(due, key=lambda t: t.scheduled_for)

    async def expire_stale_triggers(self, before: datetime, now: datetime) -> List[EngagementTrigger]:
        expired = []
        for trigger_id, trigger in list(self.triggers.items()):
            if not trigger.sent and trigger.expired_at is None and trigger.scheduled_for < before:
                trigger = trigger.model_copy(update={"expired_at": now})
                self.triggers[trigger_id] = trigger
                expired.append(trigger)
        return sorted(expired, key=lambda t: t.scheduled_for)

    async def claim_and_emit_trigger(self, trigger_id, now, session_note=None) -> Optional[DeliveredTrigger]:
        trigger = self.triggers.get(trigger_id)
        if trigger is None or trigger.sent or trigger.expired_at is not None:
            return None

        trigger = trigger.model_copy(update={"sent": True, "sent_at": now})
        self.triggers[trigger_id] = trigger

        session = self._active_session(trigger.user_id)
        if session is None:
            session = ChatSession(
                id=_uuid(), user_id=trigger.user_id, session_type=SessionType.PROACTIVE,
                started_at=now, note=session_note,
            )
            self.sessions[session.id] = session

        message = ChatMessage(
            id=_uuid(), session_id=session.id, user_id=trigger.user_id, role=MessageRole.ASSISTANT,
            text=trigger.message, trigger_id=trigger.id, created_at=now,
        )
        self.messages[message.id] = message
        return DeliveredTrigger(trigger=trigger, session=session, message=message)
