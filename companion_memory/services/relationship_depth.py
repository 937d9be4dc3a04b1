"""
Relationship Depth Calculator

A pure function of a user's session, message and memory history. Nothing is
maintained incrementally; recompute() rebuilds the scores from scratch and
stores them as a cache.

Intimacy (0-100) is the sum of four capped components:

    conversation = min(total_sessions * 2, 40)
    engagement   = min(avg_messages_per_session / 10 * 30, 30)
    consistency  = min(consecutive_days / 30 * 20, 20)
    topic        = min(sum(topic weights) / 5, 10)

The stage is read off the intimacy score:

    acquainted [0, 30)  friendly [30, 60)  intimate [60, 85)  deep_trust [85, 100]

Trust and vulnerability weights live in DepthPolicy so they can be tuned
without touching the calculation.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from companion_memory.clock import Clock, get_clock
from companion_memory.db.repository import Repository
from companion_memory.events import EventBus, StageChanged
from companion_memory.schemas import ChatSession, LifeArea, Memory, RelationshipDepth, RelationshipStage

logger = logging.getLogger("companion.relationship_depth")


@dataclass(frozen=True)
class DepthPolicy:
    """Tunable weights for depth scoring."""
    topic_weights: Dict[str, int] = field(default_factory=lambda: {
        "insecurity": 20,
        "fear": 15,
        "relationship": 10,
        "stress_point": 10,
        "personal_goal": 8,
        "work_stress": 5,
        "exam": 3,
        "interview": 3,
        "hobby": 2,
    })
    vulnerable_topics: Tuple[str, ...] = ("insecurity", "fear", "stress_point")
    vulnerability_keywords: Tuple[str, ...] = ("afraid", "scared", "worried", "anxious", "insecure")
    joke_keywords: Tuple[str, ...] = ("joke", "tease", "teasing", "laugh", "banter")
    max_inside_jokes: int = 10

    # trust = vc/5*50 + min(cd/30,1)*30 + min(sessions/20,1)*20
    trust_vulnerability_divisor: float = 5
    trust_vulnerability_weight: float = 50
    trust_consistency_days: float = 30
    trust_consistency_weight: float = 30
    trust_volume_sessions: float = 20
    trust_volume_weight: float = 20

    # vulnerability = vc/10*50 + topic/20*30 + min(intimacy/100,1)*20
    vulnerability_count_divisor: float = 10
    vulnerability_count_weight: float = 50
    vulnerability_topic_divisor: float = 20
    vulnerability_topic_weight: float = 30
    vulnerability_intimacy_weight: float = 20

    milestone_sessions: Tuple[int, ...] = (1, 10, 50, 100)


DEFAULT_POLICY = DepthPolicy()

# Emotion words that pin a memory's topic before life area is considered
_EMOTION_TOPICS = (
    (("insecure", "inadequate", "ashamed", "self-doubt"), "insecurity"),
    (("afraid", "scared", "fear", "terrified"), "fear"),
    (("stressed", "overwhelmed", "burned out", "burnt out"), "stress_point"),
)
_EVENT_TOPICS = (
    (("exam", "test"), "exam"),
    (("interview",), "interview"),
)
_LIFE_AREA_TOPICS = {
    LifeArea.RELATIONSHIP: "relationship",
    LifeArea.GROWTH: "personal_goal",
    LifeArea.CAREER: "work_stress",
    LifeArea.HOBBY: "hobby",
}


@dataclass(frozen=True)
class StageGuidance:
    intimacy_range: Tuple[int, int]
    characteristics: Tuple[str, ...]
    allowed_topics: Tuple[str, ...]
    suggested_tone: str
    call_frequency: str


STAGE_GUIDANCE: Dict[RelationshipStage, StageGuidance] = {
    RelationshipStage.ACQUAINTED: StageGuidance(
        intimacy_range=(0, 30),
        characteristics=("polite", "curious", "getting to know each other"),
        allowed_topics=("hobbies", "daily life", "work", "interests"),
        suggested_tone="friendly but respectful, ask questions, show interest",
        call_frequency="occasional",
    ),
    RelationshipStage.FRIENDLY: StageGuidance(
        intimacy_range=(30, 60),
        characteristics=("comfortable", "playful", "supportive"),
        allowed_topics=("hobbies", "daily life", "work", "feelings", "goals", "light personal topics"),
        suggested_tone="warm and playful, light teasing, share opinions",
        call_frequency="regular",
    ),
    RelationshipStage.INTIMATE: StageGuidance(
        intimacy_range=(60, 85),
        characteristics=("close", "caring", "emotionally open"),
        allowed_topics=("feelings", "fears", "relationships", "insecurities", "dreams", "personal struggles"),
        suggested_tone="affectionate, emotionally attuned, remember the small things",
        call_frequency="frequent",
    ),
    RelationshipStage.DEEP_TRUST: StageGuidance(
        intimacy_range=(85, 100),
        characteristics=("deeply bonded", "trusted confidant", "unconditionally supportive"),
        allowed_topics=("anything", "deepest fears", "vulnerabilities", "life decisions", "past trauma"),
        suggested_tone="deeply caring, honest, gently challenging when needed",
        call_frequency="daily",
    ),
}


def stage_for_score(intimacy_score: float) -> RelationshipStage:
    if intimacy_score >= 85:
        return RelationshipStage.DEEP_TRUST
    if intimacy_score >= 60:
        return RelationshipStage.INTIMATE
    if intimacy_score >= 30:
        return RelationshipStage.FRIENDLY
    return RelationshipStage.ACQUAINTED


def stage_guidance(stage: RelationshipStage) -> StageGuidance:
    return STAGE_GUIDANCE[stage]


def communication_guidelines(stage: RelationshipStage) -> str:
    """Prompt-ready guidance for the chat prompt builder."""
    guidance = STAGE_GUIDANCE[stage]
    return (
        f"RELATIONSHIP STAGE: {stage.value.replace('_', ' ').title()}\n"
        f"You are: {', '.join(guidance.characteristics)}\n"
        f"Tone: {guidance.suggested_tone}\n"
        f"Comfortable topics: {', '.join(guidance.allowed_topics)}\n"
        f"Reach out: {guidance.call_frequency}"
    )


def _memory_text(memory: Memory) -> str:
    return memory.searchable_text + " " + (memory.contextual.pattern_type or "").lower()


def classify_topic(memory: Memory) -> Optional[str]:
    """One topic per memory: emotions first, then event keywords, then life area."""
    emotions = " ".join(memory.emotional.emotions_involved).lower()
    for words, topic in _EMOTION_TOPICS:
        if any(w in emotions for w in words):
            return topic
    text = _memory_text(memory)
    for words, topic in _EVENT_TOPICS:
        if any(w in text for w in words):
            return topic
    return _LIFE_AREA_TOPICS.get(memory.contextual.life_area)


def count_consecutive_days(active_days: Sequence[date], today: date) -> int:
    """Days in a row with a session, counting back from today."""
    days = set(active_days)
    streak = 0
    while today - timedelta(days=streak) in days:
        streak += 1
    return streak


@dataclass
class DepthHistory:
    sessions: List[ChatSession] = field(default_factory=list)
    message_counts: Dict[str, int] = field(default_factory=dict)
    memories: List[Memory] = field(default_factory=list)


@dataclass
class DepthMetrics:
    total_sessions: int = 0
    avg_messages_per_session: float = 0.0
    days_since_start: int = 0
    consecutive_days: int = 0
    topic_intimacy: int = 0
    vulnerability_count: int = 0
    inside_jokes_count: int = 0


@dataclass
class DepthResult:
    intimacy_score: int
    trust_score: int
    vulnerability_level: int
    stage: RelationshipStage
    metrics: DepthMetrics
    milestones: Dict[str, str] = field(default_factory=dict)


def calculate_depth(history: DepthHistory, now: datetime, policy: DepthPolicy = DEFAULT_POLICY) -> DepthResult:
    metrics = DepthMetrics()
    sessions = sorted(history.sessions, key=lambda s: s.started_at)
    metrics.total_sessions = len(sessions)

    if sessions:
        total_messages = sum(history.message_counts.get(s.id, 0) for s in sessions)
        metrics.avg_messages_per_session = total_messages / len(sessions)
        metrics.days_since_start = (now - sessions[0].started_at).days
        metrics.consecutive_days = count_consecutive_days(
            [s.started_at.date() for s in sessions], now.date()
        )

    for memory in history.memories:
        topic = classify_topic(memory)
        metrics.topic_intimacy += policy.topic_weights.get(topic, 0) if topic else 0
        text = _memory_text(memory) + " " + " ".join(memory.emotional.emotions_involved).lower()
        # A vulnerable topic and a vulnerable word in the event each count
        if topic in policy.vulnerable_topics:
            metrics.vulnerability_count += 1
        event = memory.surface.event.lower()
        if any(k in event for k in policy.vulnerability_keywords):
            metrics.vulnerability_count += 1
        if memory.contextual.life_area == LifeArea.RELATIONSHIP or any(k in text for k in policy.joke_keywords):
            metrics.inside_jokes_count += 1
    metrics.inside_jokes_count = min(metrics.inside_jokes_count, policy.max_inside_jokes)

    conversation = min(metrics.total_sessions * 2, 40)
    engagement = min(metrics.avg_messages_per_session / 10 * 30, 30)
    consistency = min(metrics.consecutive_days / 30 * 20, 20)
    topic = min(metrics.topic_intimacy / 5, 10)
    intimacy = max(0, min(100, round(conversation + engagement + consistency + topic)))

    vc = metrics.vulnerability_count
    trust = min(100, round(
        vc / policy.trust_vulnerability_divisor * policy.trust_vulnerability_weight
        + min(metrics.consecutive_days / policy.trust_consistency_days, 1) * policy.trust_consistency_weight
        + min(metrics.total_sessions / policy.trust_volume_sessions, 1) * policy.trust_volume_weight
    ))
    vulnerability = min(100, round(
        vc / policy.vulnerability_count_divisor * policy.vulnerability_count_weight
        + metrics.topic_intimacy / policy.vulnerability_topic_divisor * policy.vulnerability_topic_weight
        + min(intimacy / 100, 1) * policy.vulnerability_intimacy_weight
    ))

    milestones = {}
    for n in policy.milestone_sessions:
        if len(sessions) >= n:
            name = "first_chat" if n == 1 else f"{n}_chats"
            milestones[name] = sessions[n - 1].started_at.isoformat()

    return DepthResult(
        intimacy_score=intimacy,
        trust_score=trust,
        vulnerability_level=vulnerability,
        stage=stage_for_score(intimacy),
        metrics=metrics,
        milestones=milestones,
    )


class RelationshipDepthCalculator:

    def __init__(
        self,
        repository: Repository,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
        policy: DepthPolicy = DEFAULT_POLICY,
    ):
        self.repository = repository
        self.clock = clock or get_clock()
        self.bus = bus
        self.policy = policy

    async def load_history(self, user_id: str) -> DepthHistory:
        return DepthHistory(
            sessions=await self.repository.list_sessions(user_id),
            message_counts=await self.repository.count_messages_by_session(user_id),
            memories=await self.repository.list_memories(user_id),
        )

    async def calculate(self, user_id: str) -> DepthResult:
        history = await self.load_history(user_id)
        return calculate_depth(history, self.clock.now(), self.policy)

    async def recompute(self, user_id: str) -> RelationshipDepth:
        """Rebuild and store the depth row; publish StageChanged when the stage moved."""
        previous = await self.repository.get_relationship_depth(user_id)
        result = await self.calculate(user_id)

        depth = await self.repository.upsert_relationship_depth(RelationshipDepth(
            user_id=user_id,
            intimacy_score=result.intimacy_score,
            trust_score=result.trust_score,
            vulnerability_level=result.vulnerability_level,
            stage=result.stage,
            inside_jokes_count=result.metrics.inside_jokes_count,
            milestones=result.milestones,
            total_sessions=result.metrics.total_sessions,
            consecutive_days=result.metrics.consecutive_days,
            updated_at=self.clock.now(),
        ))

        # A user with no stored row is implicitly acquainted
        previous_stage = previous.stage if previous else RelationshipStage.ACQUAINTED
        if previous_stage != result.stage:
            logger.info(
                f"Relationship stage for user {user_id}: {previous_stage.value} -> {result.stage.value} "
                f"(intimacy {result.intimacy_score})"
            )
            if self.bus is not None:
                self.bus.publish(StageChanged(
                    user_id=user_id,
                    previous_stage=previous_stage.value,
                    stage=result.stage.value,
                    intimacy_score=result.intimacy_score,
                ))
        return depth

    async def get_depth(self, user_id: str) -> RelationshipDepth:
        """Stored depth, or the cold-start default when nothing is stored yet."""
        depth = await self.repository.get_relationship_depth(user_id)
        return depth or RelationshipDepth(user_id=user_id, updated_at=self.clock.now())
