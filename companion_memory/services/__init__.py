from companion_memory.services.reasoning_service import (
    ReasoningService, OpenAIReasoningService, get_reasoning_service,
)
from companion_memory.services.knowledge_graph import KnowledgeGraphBuilder, GraphUpdate
from companion_memory.services.memory_extractor import MemoryExtractor, ExtractionOutcome, TranscriptTurn
from companion_memory.services.confidence_scorer import MemoryConfidenceScorer, ConfidenceReport
from companion_memory.services.semantic_retriever import SemanticRetriever, ScoredMemory
from companion_memory.services.temporal_tracker import TemporalTrendTracker, TemporalTrend
from companion_memory.services.relationship_depth import (
    RelationshipDepthCalculator, DepthPolicy, DEFAULT_POLICY, stage_for_score, communication_guidelines,
)
from companion_memory.services.engagement_predictor import EngagementPredictor, TriggerCandidate, UserPattern
from companion_memory.services.engagement_scheduler import (
    EngagementScheduler, DispatchReport, PredictionReport, schedule_unique_trigger,
)
from companion_memory.services.notification_service import (
    NotificationDispatcher, LoggingNotificationDispatcher, WebhookNotificationDispatcher,
    get_notification_dispatcher,
)
from companion_memory.services.analysis_pipeline import AnalysisPipeline

__all__ = [
    "ReasoningService",
    "OpenAIReasoningService",
    "get_reasoning_service",
    "KnowledgeGraphBuilder",
    "GraphUpdate",
    "MemoryExtractor",
    "ExtractionOutcome",
    "TranscriptTurn",
    "MemoryConfidenceScorer",
    "ConfidenceReport",
    "SemanticRetriever",
    "ScoredMemory",
    "TemporalTrendTracker",
    "TemporalTrend",
    "RelationshipDepthCalculator",
    "DepthPolicy",
    "DEFAULT_POLICY",
    "stage_for_score",
    "communication_guidelines",
    "EngagementPredictor",
    "TriggerCandidate",
    "UserPattern",
    "EngagementScheduler",
    "DispatchReport",
    "PredictionReport",
    "schedule_unique_trigger",
    "NotificationDispatcher",
    "LoggingNotificationDispatcher",
    "WebhookNotificationDispatcher",
    "get_notification_dispatcher",
    "AnalysisPipeline",
]
