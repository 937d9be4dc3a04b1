"""
Memory Extractor - turns finished conversations into four-layer memories

One reasoning call per transcript returns zero or more memory candidates and
an optional emotional-state snapshot. Each candidate is validated on its own;
a malformed one is dropped while its siblings are stored. Stored memories may
schedule a follow-up trigger, and a negative mood schedules a check-in.

Nothing here raises to the caller: a failed or garbled reasoning call means
"no memories this time".
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from companion_memory.clock import Clock, get_clock
from companion_memory.config import Settings, settings as default_settings
from companion_memory.db.repository import Repository
from companion_memory.errors import InferenceError, ValidationError
from companion_memory.events import EventBus, MemoryFormed
from companion_memory.schemas import (
    NEGATIVE_MOODS, EmotionalSnapshot, EngagementTrigger, Memory, MemoryLayers, TriggerType,
)
from companion_memory.services.engagement_scheduler import schedule_unique_trigger
from companion_memory.services.extraction_schemas import EmotionalStateCandidate, ExtractionEnvelope
from companion_memory.services.knowledge_graph import KnowledgeGraphBuilder
from companion_memory.services.reasoning_service import ReasoningService

logger = logging.getLogger("companion.memory_extractor")


EXTRACTION_SYSTEM_PROMPT = "You are the memory of a caring AI companion. You output only valid JSON."

EXTRACTION_PROMPT = """Read the conversation and extract what is worth remembering about the user.
Skip small talk. Each memory has four layers:

- surface: the concrete event
- emotional: how the user feels about it
- contextual: where it sits in the user's life
- predictive: what the user will probably need next

Return JSON:
{
  "memories": [
    {
      "surface": {
        "event": "Job interview at Google for a product role",
        "date": "2026-03-14 or null",
        "people_involved": ["Priya"],
        "location": "Bangalore or null"
      },
      "emotional": {
        "emotional_weight": 8,
        "emotions_involved": ["nervous", "excited"],
        "emotional_trajectory": "anxious -> hopeful",
        "vulnerability_level": 6,
        "confidence_score": 85
      },
      "contextual": {
        "life_area": "relationship | career | family | health | growth | finance | hobby",
        "recurring_theme": false,
        "pattern_type": "career_anxiety or null",
        "related_memories": [],
        "significance": "minor | moderate | major | life_changing"
      },
      "predictive": {
        "likely_followup_need": "reassurance after the interview",
        "best_followup_timing": "ISO-8601 timestamp, 'tomorrow', 'in 3 days', or null",
        "suggested_followup_angle": "ask how it went, celebrate effort",
        "followup_message": "Hey! How did the Google interview go?",
        "trigger_keywords": ["interview", "google"],
        "prediction_confidence": 80
      }
    }
  ],
  "emotional_state": {
    "mood": "happy | sad | stressed | excited | anxious | calm | frustrated | confident",
    "energy_level": 1-10,
    "stress_level": 1-10,
    "detected_from": "short quote from the user"
  }
}

emotional_weight and vulnerability_level are 0-10; confidence scores are 0-100.
Use "emotional_state": null when the user's mood is unclear.
Return {"memories": [], "emotional_state": null} if nothing is worth remembering.

CONVERSATION:
"""

DEFAULT_FOLLOWUP_MESSAGE = "Hey! I was thinking about your {event}. How did it go?"
CHECK_IN_MESSAGE = "Hey, I was thinking about you. How are you feeling today? 💕"

_RELATIVE_TIMING = re.compile(r"\bin\s+(\d+)\s+(hour|day|week)s?\b")
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class TranscriptTurn:
    role: str
    text: str


@dataclass
class ExtractionOutcome:
    """What one extraction pass stored."""
    memories: List[Memory] = field(default_factory=list)
    triggers: List[EngagementTrigger] = field(default_factory=list)
    emotional_state: Optional[EmotionalSnapshot] = None
    dropped_candidates: int = 0
    skipped_reason: Optional[str] = None


def render_transcript(turns: Sequence[TranscriptTurn], max_chars: int) -> str:
    """`ROLE: text` lines, keeping the most recent `max_chars` characters."""
    text = "\n".join(f"{turn.role.upper()}: {turn.text}" for turn in turns)
    return text[-max_chars:] if len(text) > max_chars else text


def resolve_followup_time(timing: Optional[str], now: datetime) -> Optional[datetime]:
    """
    Resolve a predictive-layer timing hint to a future timestamp.

    Accepts ISO-8601 timestamps and dates (dates land at 10:00) and the
    relative phrases "tomorrow", "tonight", "next week", "in N hours|days|weeks".
    Returns None for anything unresolvable or not in the future.
    """
    if not timing:
        return None
    raw = timing.strip()
    text = raw.lower()

    when: Optional[datetime] = None
    try:
        when = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc).replace(tzinfo=None)
        if _DATE_ONLY.match(raw):
            when = when.replace(hour=10)
    except ValueError:
        if text == "tomorrow":
            when = now + timedelta(days=1)
        elif text == "tonight":
            when = now.replace(hour=20, minute=0, second=0, microsecond=0)
        elif text == "next week":
            when = now + timedelta(weeks=1)
        else:
            match = _RELATIVE_TIMING.search(text)
            if match:
                amount, unit = int(match.group(1)), match.group(2)
                when = now + timedelta(**{f"{unit}s": amount})

    if when is None or when <= now:
        return None
    return when


def build_followup_message(memory: Memory) -> str:
    if memory.predictive.followup_message:
        return memory.predictive.followup_message.strip()
    event = memory.surface.event.strip().rstrip(".")
    return DEFAULT_FOLLOWUP_MESSAGE.format(event=event[:1].lower() + event[1:])


def validate_candidate(candidate: Any) -> MemoryLayers:
    """Validate one raw candidate. Raises ValidationError if any layer is missing or malformed."""
    if not isinstance(candidate, dict):
        raise ValidationError(f"Memory candidate must be an object, got {type(candidate).__name__}")
    missing = [layer for layer in ("surface", "emotional", "contextual", "predictive") if not candidate.get(layer)]
    if missing:
        raise ValidationError(f"Memory candidate missing layers: {', '.join(missing)}")
    try:
        return MemoryLayers.model_validate(candidate)
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError(f"Memory candidate invalid at {fields}") from e


class MemoryExtractor:
    """
    Extracts four-layer memories from a session transcript.

    Collaborators are injected; the knowledge graph builder and event bus are
    optional so the extractor can run standalone.
    """

    def __init__(
        self,
        repository: Repository,
        reasoning: ReasoningService,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
        graph_builder: Optional[KnowledgeGraphBuilder] = None,
        config: Optional[Settings] = None,
    ):
        self.repository = repository
        self.reasoning = reasoning
        self.clock = clock or get_clock()
        self.bus = bus
        self.graph_builder = graph_builder
        self.config = config or default_settings

    async def extract_from_session(self, user_id: str, session_id: str) -> ExtractionOutcome:
        messages = await self.repository.list_messages(session_id)
        turns = [TranscriptTurn(role=m.role.value, text=m.text) for m in messages]
        return await self.extract_from_transcript(user_id, turns, session_id=session_id)

    async def extract_from_transcript(
        self,
        user_id: str,
        turns: Sequence[TranscriptTurn],
        session_id: Optional[str] = None,
    ) -> ExtractionOutcome:
        outcome = ExtractionOutcome()
        if len(turns) < self.config.min_transcript_turns:
            outcome.skipped_reason = "insufficient_context"
            logger.debug(f"Skipping extraction for user {user_id}: {len(turns)} turn(s)")
            return outcome

        transcript = render_transcript(turns, self.config.max_transcript_chars)
        try:
            envelope = await self.reasoning.infer(
                EXTRACTION_SYSTEM_PROMPT, EXTRACTION_PROMPT + transcript, ExtractionEnvelope
            )
        except InferenceError as e:
            outcome.skipped_reason = "inference_failed"
            logger.warning(
                f"Memory extraction failed for user {user_id} session {session_id} "
                f"({len(turns)} turns): {e}"
            )
            return outcome

        for index, candidate in enumerate(envelope.memories):
            try:
                layers = validate_candidate(candidate)
            except ValidationError as e:
                outcome.dropped_candidates += 1
                logger.warning(f"Dropping memory candidate {index} for user {user_id}: {e}")
                continue

            memory = await self.repository.create_memory(
                user_id, layers, self.clock.now(), session_id=session_id, raw_transcript=transcript,
            )
            outcome.memories.append(memory)

            if self.graph_builder is not None:
                await self.graph_builder.link_memory_mentions(memory)

            trigger = await self._schedule_followup(memory)
            if trigger is not None:
                outcome.triggers.append(trigger)

            if self.bus is not None:
                self.bus.publish(MemoryFormed(user_id=user_id, memory_id=memory.id, session_id=session_id))

        if envelope.emotional_state:
            await self._record_emotional_state(user_id, session_id, envelope.emotional_state, outcome)

        logger.info(
            f"Extracted {len(outcome.memories)} memories for user {user_id} "
            f"({outcome.dropped_candidates} dropped, {len(outcome.triggers)} triggers)"
        )
        return outcome

    async def _schedule_followup(self, memory: Memory) -> Optional[EngagementTrigger]:
        now = self.clock.now()
        when = resolve_followup_time(memory.predictive.best_followup_timing, now)
        if when is None:
            return None
        return await self.repository.create_trigger(
            memory.user_id,
            TriggerType.FOLLOWUP,
            when,
            build_followup_message(memory),
            created_at=now,
            memory_id=memory.id,
            confidence=memory.predictive.prediction_confidence or 100.0,
            reason=memory.predictive.likely_followup_need,
        )

    async def _record_emotional_state(
        self,
        user_id: str,
        session_id: Optional[str],
        raw_state: Any,
        outcome: ExtractionOutcome,
    ) -> None:
        try:
            state = EmotionalStateCandidate.model_validate(raw_state)
        except PydanticValidationError as e:
            logger.warning(f"Dropping emotional state for user {user_id}: {e.error_count()} invalid field(s)")
            return

        now = self.clock.now()
        outcome.emotional_state = await self.repository.record_emotional_state(
            user_id, state.mood, state.energy_level, state.stress_level, now,
            detected_from=state.detected_from, session_id=session_id,
        )
        await self.repository.append_metric(
            user_id, "stress_level", float(state.stress_level), now,
            context=f"Emotional snapshot: {state.mood.value}",
        )

        if state.mood in NEGATIVE_MOODS:
            check_in = await schedule_unique_trigger(
                self.repository,
                user_id=user_id,
                trigger_type=TriggerType.CHECK_IN,
                scheduled_for=now + timedelta(hours=self.config.check_in_delay_hours),
                message=CHECK_IN_MESSAGE,
                now=now,
                dedup_hours=self.config.trigger_dedup_hours,
                reason=f"User seemed {state.mood.value}",
            )
            if check_in is not None:
                outcome.triggers.append(check_in)
