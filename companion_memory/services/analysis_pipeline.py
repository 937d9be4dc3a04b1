"""
Analysis Pipeline - wires background analysis onto the event bus

AnalyzeInteraction:
    - extract memories (from the completed exchange, or the whole session
      when no exchange is attached), then recompute relationship depth
    - update the knowledge graph from the user's message
    - score overall mood from the user's message

MemoryFormed:
    - derive temporal metric samples
    - score confidence automatically

Each step is its own subscriber so one failing step never blocks another.
"""

import logging
from typing import List

from companion_memory.events import AnalyzeInteraction, EventBus, MemoryFormed, Subscription
from companion_memory.services.confidence_scorer import MemoryConfidenceScorer
from companion_memory.services.knowledge_graph import KnowledgeGraphBuilder
from companion_memory.services.memory_extractor import MemoryExtractor, TranscriptTurn
from companion_memory.services.relationship_depth import RelationshipDepthCalculator
from companion_memory.services.temporal_tracker import TemporalTrendTracker

logger = logging.getLogger("companion.pipeline")


class AnalysisPipeline:

    def __init__(
        self,
        bus: EventBus,
        extractor: MemoryExtractor,
        graph_builder: KnowledgeGraphBuilder,
        scorer: MemoryConfidenceScorer,
        tracker: TemporalTrendTracker,
        depth: RelationshipDepthCalculator,
    ):
        self.bus = bus
        self.extractor = extractor
        self.graph_builder = graph_builder
        self.scorer = scorer
        self.tracker = tracker
        self.depth = depth
        self._subscriptions: List[Subscription] = []

    def register(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self.bus.subscribe(AnalyzeInteraction, self.on_interaction, "memory_extractor"),
            self.bus.subscribe(AnalyzeInteraction, self.on_interaction_graph, "knowledge_graph"),
            self.bus.subscribe(AnalyzeInteraction, self.on_interaction_mood, "temporal_mood"),
            self.bus.subscribe(MemoryFormed, self.on_memory_metrics, "temporal_metrics"),
            self.bus.subscribe(MemoryFormed, self.on_memory_confidence, "confidence_scorer"),
        ]
        logger.info(f"Analysis pipeline registered {len(self._subscriptions)} subscribers")

    def unregister(self) -> None:
        for sub in self._subscriptions:
            self.bus.unsubscribe(sub)
        self._subscriptions = []

    async def on_interaction(self, event: AnalyzeInteraction) -> None:
        if event.message:
            turns = [TranscriptTurn(role="user", text=event.message)]
            if event.reply:
                turns.append(TranscriptTurn(role="assistant", text=event.reply))
            await self.extractor.extract_from_transcript(event.user_id, turns, session_id=event.session_id)
        else:
            await self.extractor.extract_from_session(event.user_id, event.session_id)
        await self.depth.recompute(event.user_id)

    async def on_interaction_graph(self, event: AnalyzeInteraction) -> None:
        if event.message:
            await self.graph_builder.update_from_text(event.user_id, event.message)

    async def on_interaction_mood(self, event: AnalyzeInteraction) -> None:
        if event.message:
            await self.tracker.record_mood(event.user_id, event.message)

    async def on_memory_metrics(self, event: MemoryFormed) -> None:
        memory = await self.extractor.repository.get_memory(event.memory_id)
        if memory is None:
            logger.debug(f"Memory {event.memory_id} gone before metric derivation")
            return
        await self.tracker.record_from_memory(memory)

    async def on_memory_confidence(self, event: MemoryFormed) -> None:
        await self.scorer.rescore(event.memory_id)
