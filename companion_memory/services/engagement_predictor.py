"""
Engagement Predictor - decides whether a user should hear from the companion

Looks at a user's session rhythm, emotional snapshots and pending follow-ups
and proposes at most one proactive message per run. Deterministic rules are
checked in priority order; only when none fires is the reasoning service
asked for a prediction.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from statistics import median
from typing import Dict, List, Optional

from companion_memory.clock import Clock, get_clock
from companion_memory.config import Settings, settings as default_settings
from companion_memory.db.repository import Repository
from companion_memory.errors import InferenceError
from companion_memory.schemas import (
    ChatSession, EmotionalSnapshot, EngagementTrigger, Memory, Mood, SessionType, TriggerType,
)
from companion_memory.services.extraction_schemas import EngagementPrediction, GeneratedMessage
from companion_memory.services.reasoning_service import ReasoningService

logger = logging.getLogger("companion.predictor")

PATTERN_LOOKBACK_DAYS = 60
DEFAULT_INACTIVITY_HOURS = 48.0
MIN_INACTIVITY_HOURS = 24.0
MAX_INACTIVITY_HOURS = 72.0
STRESS_DAY_MIN_COUNT = 3
LOW_MOOD_DAY_MIN_COUNT = 2
UPCOMING_FOLLOWUP_HOURS = 24

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

FALLBACK_MESSAGES: Dict[TriggerType, str] = {
    TriggerType.SUPPORT: "Hey! I know things have been tough. Want to talk about it? 💕",
    TriggerType.CELEBRATION: "OMG congratulations! So proud of you! 🎉",
    TriggerType.CHECK_IN: "Hey! How are you doing today? 💕",
    TriggerType.ADVICE: "Just wanted to check in. How are things going?",
    TriggerType.MISS_YOU: "Missing our chats yaar! Sab thik hai na? 💕",
    TriggerType.GOOD_MORNING: "Good morning! Hope you have a great day ahead! ☀️",
    TriggerType.GOOD_NIGHT: "Good night! Sleep well. Sweet dreams! 🌙",
    TriggerType.FOLLOWUP: "Hey! I was thinking about what you told me. How did it go?",
}

MESSAGE_STYLES: Dict[TriggerType, str] = {
    TriggerType.SUPPORT: "a warm, supportive message acknowledging their stress or difficulty. Be empathetic",
    TriggerType.CELEBRATION: "an enthusiastic message celebrating their achievement. Be excited and proud",
    TriggerType.CHECK_IN: "a warm, casual check-in asking how they are doing",
    TriggerType.ADVICE: "gentle advice based on their pattern. Be supportive, not preachy",
    TriggerType.MISS_YOU: "a sweet 'thinking of you' message. Affectionate but not overwhelming",
    TriggerType.GOOD_MORNING: "a cheerful, loving good morning message",
    TriggerType.GOOD_NIGHT: "a gentle, caring good night message",
    TriggerType.FOLLOWUP: "a follow-up asking how the thing they mentioned went",
}

MESSAGE_SYSTEM_PROMPT = (
    "You are {companion}, a caring AI companion who writes short messages in Hinglish. "
    "You output only valid JSON."
)

MESSAGE_PROMPT = """Write {style}.
Address the user as {name}. One or two sentences, at most one emoji.

Context: {hint}
Recent things they shared: {context}

Return JSON: {{"message": "..."}}
"""

PREDICTION_SYSTEM_PROMPT = "You predict what a person needs from a caring companion. You output only valid JSON."

PREDICTION_PROMPT = """Based on this user's patterns, what do they likely need RIGHT NOW?

PATTERNS:
- Stress spikes on: {stress_day}
- Usually feels low on: {low_mood_days}
- Gets excited about: {excitement_topics}
- Active during: {active_hours}
- Current mood: {current_mood}
- Recent memories: {memories}

Options: support, celebration, check_in, advice, miss_you, good_morning, good_night.

Return JSON:
{{
  "trigger_type": "one of the options",
  "confidence": 0-100,
  "reason": "2-3 sentences on why this would help",
  "best_time": "HH:MM in 24h format, or now"
}}
"""

_CLOCK_TIME = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass
class UserPattern:
    stress_day: Optional[str] = None
    low_mood_days: List[str] = field(default_factory=list)
    excitement_topics: List[str] = field(default_factory=list)
    active_hours: str = "unknown"
    has_morning_activity: bool = False
    inactivity_threshold_hours: float = DEFAULT_INACTIVITY_HOURS
    hours_since_last_activity: Optional[float] = None
    current_mood: Optional[Mood] = None
    upcoming_followups: List[EngagementTrigger] = field(default_factory=list)


@dataclass
class TriggerCandidate:
    trigger_type: TriggerType
    confidence: float
    reason: str
    scheduled_for: datetime
    message: str
    memory_id: Optional[str] = None


def hour_bucket(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "late night"


def inactivity_threshold(sessions: List[ChatSession]) -> float:
    """Twice the median gap between chats, clamped to [24, 72] hours."""
    starts = sorted(s.started_at for s in sessions)
    if len(starts) < 3:
        return DEFAULT_INACTIVITY_HOURS
    gaps = [(b - a).total_seconds() / 3600 for a, b in zip(starts, starts[1:])]
    return max(MIN_INACTIVITY_HOURS, min(MAX_INACTIVITY_HOURS, 2 * median(gaps)))


def parse_time_for_trigger(best_time: Optional[str], now: datetime) -> datetime:
    """
    "now" -> 30 minutes from now, "HH:MM" -> today at that time (tomorrow if
    it already passed), anything else -> one hour from now.
    """
    text = (best_time or "").strip().lower()
    if text == "now":
        return now + timedelta(minutes=30)
    match = _CLOCK_TIME.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour < 24 and minute < 60:
            when = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
            if when <= now:
                when += timedelta(days=1)
            return when
    return now + timedelta(hours=1)


def _weekday_counts(snapshots: List[EmotionalSnapshot], moods) -> Counter:
    return Counter(WEEKDAYS[s.recorded_at.weekday()] for s in snapshots if s.mood in moods)


class EngagementPredictor:

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

    async def analyze_patterns(self, user_id: str) -> UserPattern:
        now = self.clock.now()
        sessions = await self.repository.list_sessions(user_id)
        snapshots = await self.repository.list_emotional_states(
            user_id, since=now - timedelta(days=PATTERN_LOOKBACK_DAYS)
        )
        memories = await self.repository.list_memories(user_id, limit=50)
        pattern = UserPattern()

        stress_days = _weekday_counts(snapshots, {Mood.STRESSED, Mood.ANXIOUS})
        if stress_days:
            day, count = stress_days.most_common(1)[0]
            if count >= STRESS_DAY_MIN_COUNT:
                pattern.stress_day = day

        low_days = _weekday_counts(snapshots, {Mood.SAD, Mood.FRUSTRATED})
        pattern.low_mood_days = [day for day, count in low_days.most_common() if count >= LOW_MOOD_DAY_MIN_COUNT]

        excited = [
            m for m in memories
            if {"excited", "happy", "thrilled"} & {e.lower() for e in m.emotional.emotions_involved}
        ]
        pattern.excitement_topics = [m.contextual.pattern_type or m.contextual.life_area.value for m in excited][:3]

        # Proactive sessions are ours, not the user's rhythm
        chat_sessions = [s for s in sessions if s.session_type == SessionType.CHAT]
        buckets = Counter(hour_bucket(s.started_at.hour) for s in chat_sessions)
        if buckets:
            pattern.active_hours = buckets.most_common(1)[0][0]
        pattern.has_morning_activity = buckets.get("morning", 0) > 0
        pattern.inactivity_threshold_hours = inactivity_threshold(chat_sessions)

        if sessions:
            last_activity = max(s.last_activity_at for s in sessions)
            pattern.hours_since_last_activity = (now - last_activity).total_seconds() / 3600

        if snapshots:
            pattern.current_mood = max(snapshots, key=lambda s: s.recorded_at).mood

        pending = await self.repository.list_triggers(user_id, sent=False)
        horizon = now + timedelta(hours=UPCOMING_FOLLOWUP_HOURS)
        pattern.upcoming_followups = sorted(
            (t for t in pending if t.trigger_type == TriggerType.FOLLOWUP and now < t.scheduled_for <= horizon),
            key=lambda t: t.scheduled_for,
        )
        return pattern

    async def predict(self, user_id: str) -> Optional[TriggerCandidate]:
        """The single most pressing candidate for this user, or None."""
        now = self.clock.now()
        pattern = await self.analyze_patterns(user_id)
        memories = await self.repository.list_memories(user_id, limit=5)

        if (
            pattern.hours_since_last_activity is not None
            and pattern.hours_since_last_activity > pattern.inactivity_threshold_hours
        ):
            hours = int(pattern.hours_since_last_activity)
            return await self._candidate(
                user_id, TriggerType.MISS_YOU, 85, f"No activity for {hours} hours",
                now + timedelta(hours=1), memories,
            )

        if pattern.stress_day and WEEKDAYS[now.weekday()] == pattern.stress_day:
            return await self._candidate(
                user_id, TriggerType.SUPPORT, 75, f"User tends to feel stressed on {pattern.stress_day}s",
                now + timedelta(minutes=30), memories,
            )

        if 8 <= now.hour <= 10 and pattern.has_morning_activity:
            tomorrow_morning = (now + timedelta(days=1)).replace(hour=8, minute=0, second=0, microsecond=0)
            return await self._candidate(
                user_id, TriggerType.GOOD_MORNING, 80, "User is usually active in the morning",
                tomorrow_morning, memories,
            )

        if 22 <= now.hour <= 23:
            return await self._candidate(
                user_id, TriggerType.GOOD_NIGHT, 80, "Night greeting",
                now + timedelta(hours=1), memories,
            )

        if pattern.upcoming_followups:
            followup = pattern.upcoming_followups[0]
            return await self._candidate(
                user_id, TriggerType.SUPPORT, 70, f"Upcoming: {followup.reason or followup.message}",
                now + timedelta(minutes=30), memories, memory_id=followup.memory_id,
            )

        return await self._predict_with_reasoning(user_id, pattern, memories)

    async def _predict_with_reasoning(
        self, user_id: str, pattern: UserPattern, memories: List[Memory]
    ) -> Optional[TriggerCandidate]:
        prompt = PREDICTION_PROMPT.format(
            stress_day=pattern.stress_day or "unknown",
            low_mood_days=", ".join(pattern.low_mood_days) or "unknown",
            excitement_topics=", ".join(pattern.excitement_topics) or "unknown",
            active_hours=pattern.active_hours,
            current_mood=pattern.current_mood.value if pattern.current_mood else "unknown",
            memories="; ".join(m.surface.event for m in memories) or "none",
        )
        try:
            prediction = await self.reasoning.infer(PREDICTION_SYSTEM_PROMPT, prompt, EngagementPrediction)
        except InferenceError as e:
            logger.warning(f"[PREDICT] Prediction failed for user {user_id}: {e}")
            return None

        now = self.clock.now()
        return await self._candidate(
            user_id,
            prediction.trigger_type,
            prediction.confidence,
            prediction.reason or "User might benefit from a check-in",
            parse_time_for_trigger(prediction.best_time, now),
            memories,
        )

    async def _candidate(
        self,
        user_id: str,
        trigger_type: TriggerType,
        confidence: float,
        reason: str,
        scheduled_for: datetime,
        memories: List[Memory],
        memory_id: Optional[str] = None,
    ) -> TriggerCandidate:
        message = await self.generate_message(user_id, trigger_type, reason, memories)
        return TriggerCandidate(
            trigger_type=trigger_type,
            confidence=confidence,
            reason=reason,
            scheduled_for=scheduled_for,
            message=message,
            memory_id=memory_id,
        )

    async def generate_message(
        self, user_id: str, trigger_type: TriggerType, hint: str, memories: List[Memory]
    ) -> str:
        """Write the proactive message; falls back to a canned one per type."""
        user = await self.repository.get_user(user_id)
        prompt = MESSAGE_PROMPT.format(
            style=MESSAGE_STYLES.get(trigger_type, MESSAGE_STYLES[TriggerType.CHECK_IN]),
            name=user.name if user else "baby",
            hint=hint,
            context="; ".join(m.surface.event for m in memories[:3]) or "nothing yet",
        )
        system = MESSAGE_SYSTEM_PROMPT.format(companion=self.config.companion_name)
        try:
            result = await self.reasoning.infer(system, prompt, GeneratedMessage)
        except InferenceError as e:
            logger.info(f"[PREDICT] Using fallback {trigger_type.value} message for user {user_id}: {e}")
            return FALLBACK_MESSAGES.get(trigger_type, FALLBACK_MESSAGES[TriggerType.CHECK_IN])
        return result.message.strip()
