"""
Temporal Trend Tracker

Appends metric samples (1-10) derived from memories and computes trends over
a rolling window. Samples are append-only; trends are always computed, never
stored.

Tracked metrics: stress_level, relationship_satisfaction, work_satisfaction,
overall_mood, confidence. For stress_level lower is better, so a falling
value counts as improving.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from companion_memory.clock import Clock, get_clock
from companion_memory.config import Settings, settings as default_settings
from companion_memory.db.repository import Repository
from companion_memory.errors import InferenceError
from companion_memory.schemas import LifeArea, Memory, MetricSample, TrendDirection
from companion_memory.services.extraction_schemas import MoodScore, SentimentScore, TrendInsight
from companion_memory.services.reasoning_service import ReasoningService, to_prompt_json

logger = logging.getLogger("companion.temporal")

STRESS_LEVEL = "stress_level"
RELATIONSHIP_SATISFACTION = "relationship_satisfaction"
WORK_SATISFACTION = "work_satisfaction"
OVERALL_MOOD = "overall_mood"
CONFIDENCE = "confidence"

TRACKED_METRICS = [STRESS_LEVEL, RELATIONSHIP_SATISFACTION, WORK_SATISFACTION, OVERALL_MOOD, CONFIDENCE]

# +1: higher is better, -1: lower is better
METRIC_POLARITY: Dict[str, int] = {
    STRESS_LEVEL: -1,
    RELATIONSHIP_SATISFACTION: 1,
    WORK_SATISFACTION: 1,
    OVERALL_MOOD: 1,
    CONFIDENCE: 1,
}

STRESS_EVENT_KEYWORDS = ("exam", "interview", "deadline", "presentation", "viva")
HIGH_STRESS_WORDS = ("stressed", "anxious", "worried", "panic", "overwhelmed")
MILD_STRESS_WORDS = ("nervous", "tense", "tension", "uneasy")
WORK_KEYWORDS = ("job", "work", "office", "boss", "career", "manager", "colleague")
CONFIDENT_WORDS = ("confident", "proud", "accomplished")
INSECURE_WORDS = ("insecure", "doubt", "inadequate", "ashamed")

SENTIMENT_SYSTEM_PROMPT = "You rate how satisfied a person is. You output only valid JSON."

SENTIMENT_PROMPT = """On a 1-10 scale, how satisfied is the user with their {area} based on this memory?
1 = very unhappy, 5 = neutral, 10 = very happy.

Return JSON: {{"score": 1-10}}

MEMORY: {event}
EMOTIONS: {emotions}
TRAJECTORY: {trajectory}
"""

MOOD_SYSTEM_PROMPT = "You rate a person's overall mood. You output only valid JSON."

MOOD_PROMPT = """Rate the user's overall mood in this message from 1 (very low) to 10 (great).
Use null if the message carries no mood signal.

Return JSON: {"score": 1-10 or null}

MESSAGE:
"""

INSIGHT_SYSTEM_PROMPT = "You are a warm, perceptive companion. You output only valid JSON."

INSIGHT_PROMPT = """Summarize these wellbeing trends in one or two kind, specific sentences
the companion could keep in mind. No advice, no lists.

Return JSON: {"insight": "..."}

TRENDS:
"""


def mentions(text: str, words) -> bool:
    """Word-prefix match, so "interview" also matches "interviews"."""
    return any(re.search(rf"\b{re.escape(w)}", text) for w in words)


def clamp_metric(value: float) -> float:
    return max(1.0, min(10.0, float(value)))


def derive_stress_level(memory: Memory) -> Optional[float]:
    """Deterministic stress estimate for exam/interview/deadline memories."""
    text = memory.searchable_text
    if not mentions(text, STRESS_EVENT_KEYWORDS):
        return None

    emotions = " ".join(memory.emotional.emotions_involved).lower() + " " + text
    if mentions(emotions, HIGH_STRESS_WORDS):
        level = 8.0
    elif mentions(emotions, MILD_STRESS_WORDS):
        level = 6.0
    else:
        level = 7.0

    weight = memory.emotional.emotional_weight
    if weight >= 7:
        level = max(level, min(9.0, weight))
    return level


def derive_confidence(memory: Memory) -> Optional[float]:
    if memory.contextual.life_area != LifeArea.GROWTH:
        return None
    emotions = " ".join(memory.emotional.emotions_involved).lower()
    if mentions(emotions, CONFIDENT_WORDS):
        return 8.0
    if mentions(emotions, INSECURE_WORDS):
        return 3.0
    return None


@dataclass
class TemporalTrend:
    metric: str
    current: float
    previous: Optional[float]
    oldest: float
    direction: TrendDirection
    change_percentage: float
    days_tracked: int
    samples: List[MetricSample] = field(default_factory=list)


def classify_trend(metric: str, samples: List[MetricSample], threshold: float) -> Optional[TemporalTrend]:
    """Compare the latest sample with the oldest one in the window."""
    if not samples:
        return None

    ordered = sorted(samples, key=lambda s: s.recorded_at)
    oldest, latest = ordered[0], ordered[-1]
    delta = latest.value - oldest.value
    directed = delta * METRIC_POLARITY.get(metric, 1)

    if len(ordered) < 2 or abs(directed) <= threshold:
        direction = TrendDirection.STABLE
    elif directed > 0:
        direction = TrendDirection.IMPROVING
    else:
        direction = TrendDirection.DECLINING

    return TemporalTrend(
        metric=metric,
        current=latest.value,
        previous=ordered[-2].value if len(ordered) > 1 else None,
        oldest=oldest.value,
        direction=direction,
        change_percentage=round(delta / oldest.value * 100, 1),
        days_tracked=(latest.recorded_at - oldest.recorded_at).days,
        samples=ordered,
    )


class TemporalTrendTracker:

    def __init__(
        self,
        repository: Repository,
        reasoning: ReasoningService,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
    ):
        self.repository = repository
        self.reasoning = reasoning
        self.clock = clock or get_clock()
        self.config = config or default_settings

    async def record_sample(
        self,
        user_id: str,
        metric: str,
        value: float,
        context: Optional[str] = None,
        memory_id: Optional[str] = None,
    ) -> MetricSample:
        return await self.repository.append_metric(
            user_id, metric, clamp_metric(value), self.clock.now(), context=context, memory_id=memory_id,
        )

    async def _sentiment(self, memory: Memory, area: str) -> Optional[float]:
        prompt = SENTIMENT_PROMPT.format(
            area=area,
            event=memory.surface.event,
            emotions=", ".join(memory.emotional.emotions_involved) or "none",
            trajectory=memory.emotional.emotional_trajectory or "unknown",
        )
        try:
            result = await self.reasoning.infer(SENTIMENT_SYSTEM_PROMPT, prompt, SentimentScore)
        except InferenceError as e:
            logger.warning(f"Sentiment scoring for {area} skipped on memory {memory.id}: {e}")
            return None
        return result.score

    async def record_from_memory(self, memory: Memory) -> List[MetricSample]:
        """Derive and append every metric the memory supports."""
        samples = []
        context = memory.surface.event[:200]

        stress = derive_stress_level(memory)
        if stress is not None:
            samples.append(await self.record_sample(memory.user_id, STRESS_LEVEL, stress, context, memory.id))

        if memory.contextual.life_area == LifeArea.RELATIONSHIP:
            score = await self._sentiment(memory, "relationship")
            if score is not None:
                samples.append(await self.record_sample(
                    memory.user_id, RELATIONSHIP_SATISFACTION, score, context, memory.id
                ))

        if memory.contextual.life_area == LifeArea.CAREER or mentions(memory.searchable_text, WORK_KEYWORDS):
            score = await self._sentiment(memory, "work")
            if score is not None:
                samples.append(await self.record_sample(memory.user_id, WORK_SATISFACTION, score, context, memory.id))

        confidence = derive_confidence(memory)
        if confidence is not None:
            samples.append(await self.record_sample(memory.user_id, CONFIDENCE, confidence, context, memory.id))

        if samples:
            logger.debug(f"Recorded {len(samples)} metric samples from memory {memory.id}")
        return samples

    async def record_mood(self, user_id: str, text: str) -> Optional[MetricSample]:
        """Score overall mood from a message; nothing is stored when there is no signal."""
        if not text or not text.strip():
            return None
        try:
            result = await self.reasoning.infer(MOOD_SYSTEM_PROMPT, MOOD_PROMPT + text, MoodScore)
        except InferenceError as e:
            logger.warning(f"Mood scoring skipped for user {user_id}: {e}")
            return None
        if result.score is None:
            return None
        return await self.record_sample(user_id, OVERALL_MOOD, result.score, context=text[:200])

    async def trend(self, user_id: str, metric: str, window_days: Optional[int] = None) -> Optional[TemporalTrend]:
        window_days = window_days or self.config.trend_window_days
        since = self.clock.now() - timedelta(days=window_days)
        samples = await self.repository.list_metrics(user_id, metric, since=since)
        return classify_trend(metric, samples, self.config.trend_change_threshold)

    async def trends(self, user_id: str, window_days: Optional[int] = None) -> List[TemporalTrend]:
        """Trends for every tracked metric with data. Empty for new users."""
        results = []
        for metric in TRACKED_METRICS:
            trend = await self.trend(user_id, metric, window_days)
            if trend is not None:
                results.append(trend)
        return results

    async def generate_insight(self, user_id: str, window_days: Optional[int] = None) -> str:
        """Short human-readable summary of current trends, or "" when unavailable."""
        trends = await self.trends(user_id, window_days)
        if not trends:
            return ""
        summary = [
            {
                "metric": t.metric,
                "direction": t.direction.value,
                "current": t.current,
                "oldest": t.oldest,
                "days_tracked": t.days_tracked,
            }
            for t in trends
        ]
        try:
            result = await self.reasoning.infer(
                INSIGHT_SYSTEM_PROMPT, INSIGHT_PROMPT + to_prompt_json(summary), TrendInsight
            )
        except InferenceError as e:
            logger.info(f"Trend insight unavailable for user {user_id}: {e}")
            return ""
        return result.insight.strip()
