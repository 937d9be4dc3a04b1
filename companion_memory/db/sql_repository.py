"""
SQLAlchemy implementation of the Repository interface.

Each operation runs in its own short session so concurrent background workers
never share a transaction. Graph and relationship-depth upserts use the
dialect's INSERT ... ON CONFLICT DO UPDATE so insert-or-update is one statement.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from companion_memory.db import models
from companion_memory.db.database import build_session_maker
from companion_memory.db.repository import Repository
from companion_memory.errors import StorageConflictError, ValidationError
from companion_memory.schemas import (
    HUMAN_VERIFICATION_STATUSES, ChatMessage, ChatSession, DeliveredTrigger, EmotionalSnapshot,
    EngagementTrigger, GraphEdge, GraphNode, Memory, MemoryLayers, MessageRole, MetricSample,
    Mood, RelationshipDepth, SessionType, TriggerType, User, VerificationStatus,
)

logger = logging.getLogger("companion.repository")


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Row converters ──────────────────────────────────────────────────

def _memory(row: models.Memory) -> Memory:
    return Memory(
        id=row.id,
        user_id=row.user_id,
        session_id=row.session_id,
        surface=json.loads(row.surface_json),
        emotional=json.loads(row.emotional_json),
        contextual=json.loads(row.contextual_json),
        predictive=json.loads(row.predictive_json),
        reference_count=row.reference_count or 0,
        last_referenced_at=row.last_referenced_at,
        verification_status=row.verification_status,
        clarification_note=row.clarification_note,
        confidence=row.confidence,
        uncertainty_notes=row.uncertainty_notes,
        raw_transcript=row.raw_transcript,
        created_at=row.created_at,
    )


def _node(row: models.GraphNode) -> GraphNode:
    return GraphNode(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        node_type=row.node_type,
        attributes=json.loads(row.attributes_json) if row.attributes_json else {},
        created_at=row.created_at,
        last_updated=row.last_updated,
    )


def _depth(row: models.RelationshipDepth) -> RelationshipDepth:
    return RelationshipDepth(
        user_id=row.user_id,
        intimacy_score=row.intimacy_score,
        trust_score=row.trust_score,
        vulnerability_level=row.vulnerability_level,
        stage=row.stage,
        inside_jokes_count=row.inside_jokes_count,
        milestones=json.loads(row.milestones_json) if row.milestones_json else {},
        total_sessions=row.total_sessions,
        consecutive_days=row.consecutive_days,
        updated_at=row.updated_at,
    )


class SqlAlchemyRepository(Repository):

    def __init__(self, session_maker: async_sessionmaker, dialect_name: str):
        self._session_maker = session_maker
        self._dialect_name = dialect_name

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> "SqlAlchemyRepository":
        return cls(build_session_maker(engine), engine.dialect.name)

    def _insert(self, model):
        """Dialect insert construct that supports on_conflict_do_update."""
        if self._dialect_name == "postgresql":
            return pg_insert(model)
        if self._dialect_name == "sqlite":
            return sqlite_insert(model)
        raise NotImplementedError(f"Atomic upsert is not supported on {self._dialect_name}")

    # ── Users, sessions, messages ──────────────────────────────────

    async def create_user(self, name, created_at, push_token=None, user_id=None) -> User:
        async with self._session_maker() as db:
            row = models.User(id=user_id or _uuid(), name=name, push_token=push_token, created_at=created_at)
            db.add(row)
            await db.commit()
            return User.model_validate(row)

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_maker() as db:
            row = await db.get(models.User, user_id)
            return User.model_validate(row) if row else None

    async def list_active_user_ids(self, since: datetime) -> List[str]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.ChatSession.user_id)
                .where(models.ChatSession.started_at >= since)
                .distinct()
            )
            return [row[0] for row in result.fetchall()]

    async def create_session(self, user_id, started_at, session_type=SessionType.CHAT, note=None) -> ChatSession:
        async with self._session_maker() as db:
            row = models.ChatSession(
                id=_uuid(),
                user_id=user_id,
                session_type=SessionType(session_type).value,
                started_at=started_at,
                note=note,
            )
            db.add(row)
            await db.commit()
            return ChatSession.model_validate(row)

    async def end_session(self, session_id: str, ended_at: datetime) -> None:
        async with self._session_maker() as db:
            await db.execute(
                update(models.ChatSession)
                .where(models.ChatSession.id == session_id)
                .values(ended_at=ended_at)
            )
            await db.commit()

    async def get_active_session(self, user_id: str) -> Optional[ChatSession]:
        async with self._session_maker() as db:
            row = await self._active_session_row(db, user_id)
            return ChatSession.model_validate(row) if row else None

    @staticmethod
    async def _active_session_row(db, user_id: str) -> Optional[models.ChatSession]:
        result = await db.execute(
            select(models.ChatSession)
            .where(
                models.ChatSession.user_id == user_id,
                models.ChatSession.ended_at.is_(None),
            )
            .order_by(models.ChatSession.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.ChatSession)
                .where(models.ChatSession.user_id == user_id)
                .order_by(models.ChatSession.started_at)
            )
            return [ChatSession.model_validate(row) for row in result.scalars().all()]

    async def add_message(self, session_id, user_id, role, text, created_at) -> ChatMessage:
        async with self._session_maker() as db:
            row = models.ChatMessage(
                id=_uuid(),
                session_id=session_id,
                user_id=user_id,
                role=MessageRole(role).value,
                text=text,
                created_at=created_at,
            )
            db.add(row)
            await db.commit()
            return ChatMessage.model_validate(row)

    async def list_messages(self, session_id: str) -> List[ChatMessage]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.ChatMessage)
                .where(models.ChatMessage.session_id == session_id)
                .order_by(models.ChatMessage.created_at)
            )
            return [ChatMessage.model_validate(row) for row in result.scalars().all()]

    async def count_messages_by_session(self, user_id: str) -> Dict[str, int]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.ChatMessage.session_id, func.count(models.ChatMessage.id))
                .where(models.ChatMessage.user_id == user_id)
                .group_by(models.ChatMessage.session_id)
            )
            return {session_id: count for session_id, count in result.fetchall()}

    # ── Memories ───────────────────────────────────────────────────

    async def create_memory(self, user_id, layers, created_at, session_id=None, raw_transcript=None) -> Memory:
        if not isinstance(layers, MemoryLayers) or None in (
            layers.surface, layers.emotional, layers.contextual, layers.predictive
        ):
            raise ValidationError("Memory requires all four layers")

        async with self._session_maker() as db:
            row = models.Memory(
                id=_uuid(),
                user_id=user_id,
                session_id=session_id,
                surface_json=layers.surface.model_dump_json(),
                emotional_json=layers.emotional.model_dump_json(),
                contextual_json=layers.contextual.model_dump_json(),
                predictive_json=layers.predictive.model_dump_json(),
                life_area=layers.contextual.life_area.value,
                emotional_weight=layers.emotional.emotional_weight,
                reference_count=0,
                verification_status=VerificationStatus.NOT_VERIFIED.value,
                raw_transcript=raw_transcript,
                created_at=created_at,
            )
            db.add(row)
            await db.commit()
            return _memory(row)

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        async with self._session_maker() as db:
            row = await db.get(models.Memory, memory_id)
            return _memory(row) if row else None

    async def list_memories(self, user_id, limit=None, status=None) -> List[Memory]:
        query = (
            select(models.Memory)
            .where(models.Memory.user_id == user_id)
            .order_by(models.Memory.created_at.desc())
        )
        if status is not None:
            query = query.where(models.Memory.verification_status == VerificationStatus(status).value)
        if limit:
            query = query.limit(limit)
        async with self._session_maker() as db:
            result = await db.execute(query)
            return [_memory(row) for row in result.scalars().all()]

    async def mark_memories_referenced(self, memory_ids: List[str], referenced_at: datetime) -> None:
        if not memory_ids:
            return
        async with self._session_maker() as db:
            await db.execute(
                update(models.Memory)
                .where(models.Memory.id.in_(memory_ids))
                .values(
                    reference_count=models.Memory.reference_count + 1,
                    last_referenced_at=referenced_at,
                )
            )
            await db.commit()

    async def set_verification(self, memory_id, status, *, by_user=False, confidence=None,
                               uncertainty_notes=None, clarification=None) -> bool:
        values = {"verification_status": VerificationStatus(status).value}
        if confidence is not None:
            values["confidence"] = confidence
        if uncertainty_notes is not None:
            values["uncertainty_notes"] = uncertainty_notes
        if clarification is not None:
            values["clarification_note"] = clarification

        stmt = update(models.Memory).where(models.Memory.id == memory_id)
        if not by_user:
            stmt = stmt.where(
                models.Memory.verification_status.notin_([s.value for s in HUMAN_VERIFICATION_STATUSES])
            )

        async with self._session_maker() as db:
            result = await db.execute(stmt.values(**values))
            await db.commit()
            return result.rowcount == 1

    async def delete_memory(self, memory_id: str) -> bool:
        async with self._session_maker() as db:
            row = await db.get(models.Memory, memory_id)
            if row is None:
                return False

            await db.execute(delete(models.MetricSample).where(models.MetricSample.memory_id == memory_id))
            await db.execute(
                delete(models.EngagementTrigger).where(
                    models.EngagementTrigger.memory_id == memory_id,
                    models.EngagementTrigger.sent == False,  # noqa: E712
                )
            )
            await db.execute(
                update(models.EngagementTrigger)
                .where(models.EngagementTrigger.memory_id == memory_id)
                .values(memory_id=None)
            )

            # Nodes only this memory mentioned go with it
            result = await db.execute(
                select(models.GraphMention.node_id).where(models.GraphMention.memory_id == memory_id)
            )
            mentioned = [r[0] for r in result.fetchall()]
            await db.execute(delete(models.GraphMention).where(models.GraphMention.memory_id == memory_id))
            if mentioned:
                result = await db.execute(
                    select(models.GraphMention.node_id)
                    .where(models.GraphMention.node_id.in_(mentioned))
                    .distinct()
                )
                still_mentioned = {r[0] for r in result.fetchall()}
                orphaned = [node_id for node_id in mentioned if node_id not in still_mentioned]
                if orphaned:
                    await db.execute(
                        delete(models.GraphEdge).where(
                            models.GraphEdge.source_node_id.in_(orphaned)
                            | models.GraphEdge.target_node_id.in_(orphaned)
                        )
                    )
                    await db.execute(delete(models.GraphNode).where(models.GraphNode.id.in_(orphaned)))

            await db.delete(row)
            await db.commit()
            return True

    # ── Knowledge graph ────────────────────────────────────────────

    async def upsert_node(self, user_id, name, node_type, now) -> GraphNode:
        stmt = self._insert(models.GraphNode).values(
            id=_uuid(),
            user_id=user_id,
            name=name,
            node_type=node_type,
            attributes_json="{}",
            created_at=now,
            last_updated=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "name", "node_type"],
            set_={"last_updated": now},
        )
        async with self._session_maker() as db:
            try:
                await db.execute(stmt)
                result = await db.execute(
                    select(models.GraphNode).where(
                        models.GraphNode.user_id == user_id,
                        models.GraphNode.name == name,
                        models.GraphNode.node_type == node_type,
                    )
                )
                row = result.scalar_one()
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise StorageConflictError(f"Node upsert conflict for {user_id}/{name}/{node_type}: {e}") from e
            return _node(row)

    async def upsert_edge(self, user_id, source_node_id, target_node_id, relationship, strength, now) -> GraphEdge:
        if source_node_id == target_node_id:
            raise ValidationError("Self-referencing edges are not stored")

        stmt = self._insert(models.GraphEdge).values(
            id=_uuid(),
            user_id=user_id,
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            relationship=relationship,
            strength=strength,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_node_id", "target_node_id", "relationship"],
            set_={"strength": strength, "updated_at": now},
        )
        async with self._session_maker() as db:
            owned = await db.execute(
                select(func.count(models.GraphNode.id)).where(
                    models.GraphNode.id.in_([source_node_id, target_node_id]),
                    models.GraphNode.user_id == user_id,
                )
            )
            if owned.scalar_one() != 2:
                raise ValidationError(f"Edge endpoints must both belong to user {user_id}")
            try:
                await db.execute(stmt)
                result = await db.execute(
                    select(models.GraphEdge).where(
                        models.GraphEdge.source_node_id == source_node_id,
                        models.GraphEdge.target_node_id == target_node_id,
                        models.GraphEdge.relationship == relationship,
                    )
                )
                row = result.scalar_one()
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise StorageConflictError(f"Edge upsert conflict for {source_node_id}->{target_node_id}: {e}") from e
            return GraphEdge.model_validate(row)

    async def link_mention(self, node_id: str, memory_id: str, now: datetime) -> None:
        stmt = self._insert(models.GraphMention).values(
            id=_uuid(), node_id=node_id, memory_id=memory_id, created_at=now,
        ).on_conflict_do_nothing(index_elements=["node_id", "memory_id"])
        async with self._session_maker() as db:
            await db.execute(stmt)
            await db.commit()

    async def list_nodes(self, user_id: str) -> List[GraphNode]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.GraphNode)
                .where(models.GraphNode.user_id == user_id)
                .order_by(models.GraphNode.created_at)
            )
            return [_node(row) for row in result.scalars().all()]

    async def list_edges(self, user_id: str) -> List[GraphEdge]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.GraphEdge)
                .where(models.GraphEdge.user_id == user_id)
                .order_by(models.GraphEdge.created_at)
            )
            return [GraphEdge.model_validate(row) for row in result.scalars().all()]

    # ── Temporal timeline ──────────────────────────────────────────

    async def append_metric(self, user_id, metric_name, value, recorded_at, context=None, memory_id=None) -> MetricSample:
        async with self._session_maker() as db:
            row = models.MetricSample(
                id=_uuid(),
                user_id=user_id,
                metric_name=metric_name,
                value=value,
                context=context,
                memory_id=memory_id,
                recorded_at=recorded_at,
            )
            db.add(row)
            await db.commit()
            return MetricSample.model_validate(row)

    async def list_metrics(self, user_id, metric_name, since=None) -> List[MetricSample]:
        query = select(models.MetricSample).where(
            models.MetricSample.user_id == user_id,
            models.MetricSample.metric_name == metric_name,
        )
        if since is not None:
            query = query.where(models.MetricSample.recorded_at >= since)
        async with self._session_maker() as db:
            result = await db.execute(query.order_by(models.MetricSample.recorded_at))
            return [MetricSample.model_validate(row) for row in result.scalars().all()]

    async def record_emotional_state(self, user_id, mood, energy_level, stress_level, recorded_at,
                                     detected_from=None, session_id=None) -> EmotionalSnapshot:
        async with self._session_maker() as db:
            row = models.EmotionalSnapshot(
                id=_uuid(),
                user_id=user_id,
                session_id=session_id,
                mood=Mood(mood).value,
                energy_level=energy_level,
                stress_level=stress_level,
                detected_from=detected_from,
                recorded_at=recorded_at,
            )
            db.add(row)
            await db.commit()
            return EmotionalSnapshot.model_validate(row)

    async def list_emotional_states(self, user_id, since=None) -> List[EmotionalSnapshot]:
        query = select(models.EmotionalSnapshot).where(models.EmotionalSnapshot.user_id == user_id)
        if since is not None:
            query = query.where(models.EmotionalSnapshot.recorded_at >= since)
        async with self._session_maker() as db:
            result = await db.execute(query.order_by(models.EmotionalSnapshot.recorded_at))
            return [EmotionalSnapshot.model_validate(row) for row in result.scalars().all()]

    # ── Relationship depth ─────────────────────────────────────────

    async def get_relationship_depth(self, user_id: str) -> Optional[RelationshipDepth]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.RelationshipDepth).where(models.RelationshipDepth.user_id == user_id)
            )
            row = result.scalar_one_or_none()
            return _depth(row) if row else None

    async def upsert_relationship_depth(self, depth: RelationshipDepth) -> RelationshipDepth:
        values = {
            "intimacy_score": depth.intimacy_score,
            "trust_score": depth.trust_score,
            "vulnerability_level": depth.vulnerability_level,
            "stage": depth.stage.value,
            "inside_jokes_count": depth.inside_jokes_count,
            "milestones_json": json.dumps(depth.milestones),
            "total_sessions": depth.total_sessions,
            "consecutive_days": depth.consecutive_days,
            "updated_at": depth.updated_at,
        }
        stmt = self._insert(models.RelationshipDepth).values(id=_uuid(), user_id=depth.user_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
        async with self._session_maker() as db:
            try:
                await db.execute(stmt)
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise StorageConflictError(f"Relationship depth upsert conflict for {depth.user_id}: {e}") from e
        return depth

    # ── Engagement triggers ────────────────────────────────────────

    async def create_trigger(self, user_id, trigger_type, scheduled_for, message, created_at,
                             memory_id=None, confidence=100.0, reason=None) -> EngagementTrigger:
        async with self._session_maker() as db:
            row = models.EngagementTrigger(
                id=_uuid(),
                user_id=user_id,
                trigger_type=TriggerType(trigger_type).value,
                scheduled_for=scheduled_for,
                message=message,
                memory_id=memory_id,
                confidence=confidence,
                reason=reason,
                sent=False,
                created_at=created_at,
            )
            db.add(row)
            await db.commit()
            return EngagementTrigger.model_validate(row)

    async def get_trigger(self, trigger_id: str) -> Optional[EngagementTrigger]:
        async with self._session_maker() as db:
            row = await db.get(models.EngagementTrigger, trigger_id)
            return EngagementTrigger.model_validate(row) if row else None

    async def list_triggers(self, user_id, sent=None) -> List[EngagementTrigger]:
        query = select(models.EngagementTrigger).where(models.EngagementTrigger.user_id == user_id)
        if sent is not None:
            query = query.where(models.EngagementTrigger.sent == sent)
        async with self._session_maker() as db:
            result = await db.execute(query.order_by(models.EngagementTrigger.scheduled_for))
            return [EngagementTrigger.model_validate(row) for row in result.scalars().all()]

    async def find_pending_trigger(self, user_id, trigger_type, window_start, window_end) -> Optional[EngagementTrigger]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.EngagementTrigger)
                .where(
                    models.EngagementTrigger.user_id == user_id,
                    models.EngagementTrigger.trigger_type == TriggerType(trigger_type).value,
                    models.EngagementTrigger.sent == False,  # noqa: E712
                    models.EngagementTrigger.expired_at.is_(None),
                    models.EngagementTrigger.scheduled_for >= window_start,
                    models.EngagementTrigger.scheduled_for <= window_end,
                )
                .order_by(models.EngagementTrigger.scheduled_for)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return EngagementTrigger.model_validate(row) if row else None

    async def list_due_triggers(self, now: datetime) -> List[EngagementTrigger]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.EngagementTrigger)
                .where(
                    models.EngagementTrigger.sent == False,  # noqa: E712
                    models.EngagementTrigger.expired_at.is_(None),
                    models.EngagementTrigger.scheduled_for <= now,
                )
                .order_by(models.EngagementTrigger.scheduled_for)
            )
            return [EngagementTrigger.model_validate(row) for row in result.scalars().all()]

    async def expire_stale_triggers(self, before: datetime, now: datetime) -> List[EngagementTrigger]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(models.EngagementTrigger.id).where(
                    models.EngagementTrigger.sent == False,  # noqa: E712
                    models.EngagementTrigger.expired_at.is_(None),
                    models.EngagementTrigger.scheduled_for < before,
                )
            )
            candidate_ids = [row[0] for row in result.fetchall()]
            if not candidate_ids:
                return []

            # Conditional per row: overlapping sweeps expire each trigger once
            expired_ids = []
            for trigger_id in candidate_ids:
                updated = await db.execute(
                    update(models.EngagementTrigger)
                    .where(
                        models.EngagementTrigger.id == trigger_id,
                        models.EngagementTrigger.sent == False,  # noqa: E712
                        models.EngagementTrigger.expired_at.is_(None),
                    )
                    .values(expired_at=now)
                    .execution_options(synchronize_session=False)
                )
                if updated.rowcount == 1:
                    expired_ids.append(trigger_id)
            await db.commit()

            if not expired_ids:
                return []
            result = await db.execute(
                select(models.EngagementTrigger)
                .where(models.EngagementTrigger.id.in_(expired_ids))
                .order_by(models.EngagementTrigger.scheduled_for)
            )
            return [EngagementTrigger.model_validate(row) for row in result.scalars().all()]

    async def claim_and_emit_trigger(self, trigger_id, now, session_note=None) -> Optional[DeliveredTrigger]:
        async with self._session_maker() as db:
            claimed = await db.execute(
                update(models.EngagementTrigger)
                .where(
                    models.EngagementTrigger.id == trigger_id,
                    models.EngagementTrigger.sent == False,  # noqa: E712
                    models.EngagementTrigger.expired_at.is_(None),
                )
                .values(sent=True, sent_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                return None

            trigger = await db.get(models.EngagementTrigger, trigger_id)
            session = await self._active_session_row(db, trigger.user_id)
            if session is None:
                session = models.ChatSession(
                    id=_uuid(),
                    user_id=trigger.user_id,
                    session_type=SessionType.PROACTIVE.value,
                    started_at=now,
                    note=session_note,
                )
                db.add(session)

            message = models.ChatMessage(
                id=_uuid(),
                session_id=session.id,
                user_id=trigger.user_id,
                role=MessageRole.ASSISTANT.value,
                text=trigger.message,
                trigger_id=trigger.id,
                created_at=now,
            )
            db.add(message)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                logger.warning(f"[DISPATCH] Trigger {trigger_id} already has an emitted message: {e}")
                return None

            return DeliveredTrigger(
                trigger=EngagementTrigger.model_validate(trigger),
                session=ChatSession.model_validate(session),
                message=ChatMessage.model_validate(message),
            )
