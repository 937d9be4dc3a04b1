"""
Response shapes expected from the language reasoning service.

Every reasoning call names one of these models; the payload is decoded and
validated against it in ReasoningService, so services only ever see typed
results. Envelopes keep candidate lists loose (any JSON value) so one
malformed candidate can be dropped without rejecting its siblings.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from companion_memory.schemas import Mood, StrList, TriggerType


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ── Memory extraction ───────────────────────────────────────────────

class ExtractionEnvelope(BaseModel):
    """Top-level extraction payload: memory candidates plus an optional mood snapshot."""
    memories: List[Any] = Field(default_factory=list)
    emotional_state: Optional[Any] = None

    @field_validator("memories", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class EmotionalStateCandidate(BaseModel):
    mood: Mood
    energy_level: int = Field(default=5, ge=1, le=10)
    stress_level: int = Field(default=5, ge=1, le=10)
    detected_from: Optional[str] = None

    @field_validator("mood", mode="before")
    @classmethod
    def normalize_mood(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


# ── Knowledge graph ─────────────────────────────────────────────────

class EntityCandidate(BaseModel):
    name: str = Field(min_length=1)
    type: Optional[str] = None


class RelationshipCandidate(BaseModel):
    source: str
    target: str
    relation: str = Field(min_length=1)
    strength: Optional[float] = None


class GraphExtraction(BaseModel):
    """Entities and relationships stay raw; each is validated on its own."""
    entities: List[Any] = Field(default_factory=list)
    relationships: List[Any] = Field(default_factory=list)

    @field_validator("entities", "relationships", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value


# ── Confidence scoring ──────────────────────────────────────────────

class ConfidenceAssessment(BaseModel):
    """Five axes 0-100. Axes the service omits count as 50."""
    event_clarity: float = 50
    date_accuracy: float = 50
    emotional_accuracy: float = 50
    relationship_accuracy: float = 50
    significance_accuracy: float = 50
    uncertainty_areas: StrList = Field(default_factory=list)
    suggested_clarifications: StrList = Field(default_factory=list)

    @field_validator(
        "event_clarity", "date_accuracy", "emotional_accuracy",
        "relationship_accuracy", "significance_accuracy",
        mode="before",
    )
    @classmethod
    def default_and_clamp(cls, value: Any) -> Any:
        if value is None:
            return 50
        if isinstance(value, (int, float)):
            return _clamp(float(value), 0, 100)
        return value


# ── Retrieval and trends ────────────────────────────────────────────

class RelevanceJudgment(BaseModel):
    score: float

    @field_validator("score")
    @classmethod
    def clamp(cls, value: float) -> float:
        return _clamp(value, 0, 100)


class SentimentScore(BaseModel):
    """Satisfaction on a 1-10 scale."""
    score: float

    @field_validator("score")
    @classmethod
    def clamp(cls, value: float) -> float:
        return _clamp(value, 1, 10)


class MoodScore(BaseModel):
    """Overall mood 1-10, or null when the text carries no mood signal."""
    score: Optional[float] = None

    @field_validator("score")
    @classmethod
    def clamp(cls, value: Optional[float]) -> Optional[float]:
        return None if value is None else _clamp(value, 1, 10)


class TrendInsight(BaseModel):
    insight: str = ""


# ── Engagement ──────────────────────────────────────────────────────

class EngagementPrediction(BaseModel):
    trigger_type: TriggerType
    confidence: float = Field(ge=0, le=100)
    reason: str = ""
    best_time: str = ""


class GeneratedMessage(BaseModel):
    message: str = Field(min_length=1)
