"""
CognitiveEngine - the library facade the chat service talks to

The chat service calls interaction_completed() after a turn or when a
session ends, and retrieve_memories() while building a reply. Everything
else runs in the background on the event bus or on scheduler ticks.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from companion_memory.clock import Clock, get_clock
from companion_memory.config import Settings, settings as default_settings
from companion_memory.db.repository import Repository
from companion_memory.events import AnalyzeInteraction, EventBus
from companion_memory.schemas import RelationshipDepth
from companion_memory.services.analysis_pipeline import AnalysisPipeline
from companion_memory.services.confidence_scorer import MemoryConfidenceScorer
from companion_memory.services.engagement_predictor import EngagementPredictor
from companion_memory.services.engagement_scheduler import DispatchReport, EngagementScheduler, PredictionReport
from companion_memory.services.knowledge_graph import KnowledgeGraphBuilder
from companion_memory.services.memory_extractor import MemoryExtractor
from companion_memory.services.notification_service import NotificationDispatcher
from companion_memory.services.reasoning_service import ReasoningService
from companion_memory.services.relationship_depth import DEFAULT_POLICY, DepthPolicy, RelationshipDepthCalculator
from companion_memory.services.semantic_retriever import ScoredMemory, SemanticRetriever
from companion_memory.services.temporal_tracker import TemporalTrend, TemporalTrendTracker

logger = logging.getLogger("companion.engine")


class CognitiveEngine:

    def __init__(
        self,
        repository: Repository,
        reasoning: ReasoningService,
        dispatcher: NotificationDispatcher,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
        policy: DepthPolicy = DEFAULT_POLICY,
    ):
        self.repository = repository
        self.reasoning = reasoning
        self.dispatcher = dispatcher
        self.bus = bus or EventBus()
        self.clock = clock or get_clock()
        self.config = config or default_settings

        self.graph_builder = KnowledgeGraphBuilder(repository, reasoning, self.clock)
        self.extractor = MemoryExtractor(
            repository, reasoning, self.clock, bus=self.bus, graph_builder=self.graph_builder, config=self.config,
        )
        self.scorer = MemoryConfidenceScorer(repository, reasoning)
        self.retriever = SemanticRetriever(repository, reasoning, self.clock, self.config)
        self.tracker = TemporalTrendTracker(repository, reasoning, self.clock, self.config)
        self.depth = RelationshipDepthCalculator(repository, self.clock, self.bus, policy)
        self.predictor = EngagementPredictor(repository, reasoning, self.clock, self.config)
        self.scheduler = EngagementScheduler(
            repository, self.predictor, dispatcher, self.clock, self.bus, self.config,
        )
        self.pipeline = AnalysisPipeline(
            self.bus, self.extractor, self.graph_builder, self.scorer, self.tracker, self.depth,
        )
        self.pipeline.register()

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "CognitiveEngine":
        """Production wiring: SQL repository, OpenAI reasoning, configured notifications."""
        from companion_memory.db.database import engine
        from companion_memory.db.sql_repository import SqlAlchemyRepository
        from companion_memory.events import get_event_bus
        from companion_memory.services.notification_service import get_notification_dispatcher
        from companion_memory.services.reasoning_service import get_reasoning_service

        return cls(
            repository=SqlAlchemyRepository.from_engine(engine),
            reasoning=get_reasoning_service(),
            dispatcher=get_notification_dispatcher(),
            bus=get_event_bus(),
            config=config,
        )

    # ── Chat path ──────────────────────────────────────────────────

    def interaction_completed(self, user_id: str, session_id: str, message: str = "", reply: str = "") -> None:
        """
        Hand a finished exchange to background analysis. Returns immediately.
        Pass no message to analyze the whole session (e.g. when it ends).
        """
        self.bus.publish(AnalyzeInteraction(user_id=user_id, session_id=session_id, message=message, reply=reply))

    async def retrieve_memories(self, user_id: str, utterance: str, limit: Optional[int] = None) -> List[ScoredMemory]:
        return await self.retriever.retrieve(user_id, utterance, limit)

    async def memory_context(self, user_id: str, utterance: str, limit: Optional[int] = None) -> str:
        return SemanticRetriever.format_for_prompt(await self.retrieve_memories(user_id, utterance, limit))

    # ── User actions ───────────────────────────────────────────────

    async def confirm_memory(self, memory_id: str, affirmed: bool, clarification: Optional[str] = None) -> bool:
        return await self.scorer.confirm(memory_id, affirmed, clarification)

    async def erase_memory(self, memory_id: str) -> bool:
        """Hard delete a memory and everything derived from it, then refresh depth."""
        memory = await self.repository.get_memory(memory_id)
        if memory is None:
            return False
        deleted = await self.repository.delete_memory(memory_id)
        if deleted:
            logger.info(f"Erased memory {memory_id} for user {memory.user_id}")
            await self.depth.recompute(memory.user_id)
        return deleted

    # ── Read models ────────────────────────────────────────────────

    async def relationship_depth(self, user_id: str) -> RelationshipDepth:
        return await self.depth.get_depth(user_id)

    async def trends(self, user_id: str, window_days: Optional[int] = None) -> List[TemporalTrend]:
        return await self.tracker.trends(user_id, window_days)

    # ── Scheduler ticks ────────────────────────────────────────────

    async def run_dispatch_tick(self) -> DispatchReport:
        return await self.scheduler.dispatch_due()

    async def run_prediction_tick(self) -> PredictionReport:
        return await self.scheduler.predict_all()

    async def run_confidence_sweep(self) -> int:
        """Rescore not_verified memories for recently active users."""
        since = self.clock.now() - timedelta(days=self.config.prediction_active_days)
        user_ids = await self.repository.list_active_user_ids(since)
        total = 0
        for user_id in user_ids:
            try:
                total += await self.scorer.rescore_pending(user_id)
            except Exception as e:
                logger.error(f"Confidence sweep failed for user {user_id}: {e}")
        logger.info(f"Confidence sweep rescored {total} memories across {len(user_ids)} users")
        return total

    async def shutdown(self) -> None:
        """Finish in-flight analysis and release clients."""
        await self.bus.drain()
        self.pipeline.unregister()
        await self.dispatcher.close()
