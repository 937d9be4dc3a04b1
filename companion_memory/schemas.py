"""
Domain records shared by the repository, the services and the tests.

Memories are four-layer records: surface, emotional, contextual and
predictive. A memory is only ever constructed with all four layers.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, Field, field_validator


# ── Enums ───────────────────────────────────────────────────────────

class LifeArea(str, Enum):
    RELATIONSHIP = "relationship"
    CAREER = "career"
    FAMILY = "family"
    HEALTH = "health"
    GROWTH = "growth"
    FINANCE = "finance"
    HOBBY = "hobby"


LIFE_AREA_ALIASES = {
    "relationships": "relationship",
    "romance": "relationship",
    "love": "relationship",
    "friendship": "relationship",
    "friends": "relationship",
    "social": "relationship",
    "work": "career",
    "job": "career",
    "education": "growth",
    "study": "growth",
    "studies": "growth",
    "personal_growth": "growth",
    "self_improvement": "growth",
    "fitness": "health",
    "mental_health": "health",
    "wellbeing": "health",
    "money": "finance",
    "finances": "finance",
    "hobbies": "hobby",
    "leisure": "hobby",
}


class Significance(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    LIFE_CHANGING = "life_changing"


class VerificationStatus(str, Enum):
    NOT_VERIFIED = "not_verified"
    USER_CONFIRMED = "user_confirmed"
    DISPUTED = "disputed"
    INFERRED = "inferred"
    HIGH_CONFIDENCE = "high_confidence"


# Statuses set by a human; automatic rescoring never overwrites these
HUMAN_VERIFICATION_STATUSES = (VerificationStatus.USER_CONFIRMED, VerificationStatus.DISPUTED)


class Mood(str, Enum):
    HAPPY = "happy"
    SAD = "sad"
    STRESSED = "stressed"
    EXCITED = "excited"
    ANXIOUS = "anxious"
    CALM = "calm"
    FRUSTRATED = "frustrated"
    CONFIDENT = "confident"


NEGATIVE_MOODS = {Mood.STRESSED, Mood.ANXIOUS, Mood.SAD, Mood.FRUSTRATED}


class TriggerType(str, Enum):
    FOLLOWUP = "followup"
    CHECK_IN = "check_in"
    SUPPORT = "support"
    CELEBRATION = "celebration"
    ADVICE = "advice"
    MISS_YOU = "miss_you"
    GOOD_MORNING = "good_morning"
    GOOD_NIGHT = "good_night"


class RelationshipStage(str, Enum):
    ACQUAINTED = "acquainted"
    FRIENDLY = "friendly"
    INTIMATE = "intimate"
    DEEP_TRUST = "deep_trust"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class SessionType(str, Enum):
    CHAT = "chat"
    PROACTIVE = "proactive"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


# LLM payloads often send null where a list is expected
StrList = Annotated[List[str], BeforeValidator(_none_to_list)]


# ── Memory layers ───────────────────────────────────────────────────

class SurfaceLayer(BaseModel):
    """What happened."""
    event: str = Field(min_length=1)
    date: Optional[str] = None
    people_involved: StrList = Field(default_factory=list)
    location: Optional[str] = None


class EmotionalLayer(BaseModel):
    """How it felt."""
    emotional_weight: float = Field(ge=0, le=10)
    emotions_involved: StrList = Field(default_factory=list)
    emotional_trajectory: Optional[str] = None
    vulnerability_level: float = Field(default=0, ge=0, le=10)
    confidence_score: float = Field(default=50, ge=0, le=100)


class ContextualLayer(BaseModel):
    """Where it sits in the user's life."""
    life_area: LifeArea
    recurring_theme: bool = False
    pattern_type: Optional[str] = None
    related_memories: StrList = Field(default_factory=list)
    significance: Significance = Significance.MODERATE

    @field_validator("life_area", mode="before")
    @classmethod
    def normalize_life_area(cls, value: Any) -> Any:
        if isinstance(value, str):
            key = value.strip().lower().replace(" ", "_").replace("-", "_")
            return LIFE_AREA_ALIASES.get(key, key)
        return value

    @field_validator("significance", mode="before")
    @classmethod
    def normalize_significance(cls, value: Any) -> Any:
        if value is None:
            return Significance.MODERATE
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_").replace("-", "_")
        return value


class PredictiveLayer(BaseModel):
    """What is likely to matter next."""
    likely_followup_need: Optional[str] = None
    best_followup_timing: Optional[str] = None
    suggested_followup_angle: Optional[str] = None
    followup_message: Optional[str] = None
    trigger_keywords: StrList = Field(default_factory=list)
    prediction_confidence: float = Field(default=0, ge=0, le=100)


class MemoryLayers(BaseModel):
    """The four layers, always together."""
    surface: SurfaceLayer
    emotional: EmotionalLayer
    contextual: ContextualLayer
    predictive: PredictiveLayer


# ── Stored records ──────────────────────────────────────────────────

class User(BaseModel):
    id: str
    name: str
    push_token: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ChatSession(BaseModel):
    id: str
    user_id: str
    session_type: SessionType = SessionType.CHAT
    started_at: datetime
    ended_at: Optional[datetime] = None
    note: Optional[str] = None

    class Config:
        from_attributes = True

    @property
    def last_activity_at(self) -> datetime:
        return self.ended_at or self.started_at


class ChatMessage(BaseModel):
    id: str
    session_id: str
    user_id: str
    role: MessageRole
    text: str
    trigger_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class Memory(MemoryLayers):
    id: str
    user_id: str
    session_id: Optional[str] = None
    reference_count: int = 0
    last_referenced_at: Optional[datetime] = None
    verification_status: VerificationStatus = VerificationStatus.NOT_VERIFIED
    clarification_note: Optional[str] = None
    confidence: Optional[float] = None
    uncertainty_notes: Optional[str] = None
    raw_transcript: Optional[str] = None
    created_at: datetime

    @property
    def importance(self) -> float:
        """Importance on a 0-10 scale, as used for ranking."""
        return self.emotional.emotional_weight

    @property
    def searchable_text(self) -> str:
        parts = [self.surface.event, self.contextual.pattern_type or ""]
        parts.extend(self.emotional.emotions_involved)
        parts.extend(self.predictive.trigger_keywords)
        return " ".join(p for p in parts if p).lower()


class GraphNode(BaseModel):
    id: str
    user_id: str
    name: str
    node_type: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_updated: datetime


class GraphEdge(BaseModel):
    id: str
    user_id: str
    source_node_id: str
    target_node_id: str
    relationship: str
    strength: int = Field(default=1, ge=1, le=10)
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MetricSample(BaseModel):
    id: str
    user_id: str
    metric_name: str
    value: float = Field(ge=1, le=10)
    context: Optional[str] = None
    memory_id: Optional[str] = None
    recorded_at: datetime

    class Config:
        from_attributes = True


class EmotionalSnapshot(BaseModel):
    id: str
    user_id: str
    session_id: Optional[str] = None
    mood: Mood
    energy_level: int = Field(default=5, ge=1, le=10)
    stress_level: int = Field(default=5, ge=1, le=10)
    detected_from: Optional[str] = None
    recorded_at: datetime

    class Config:
        from_attributes = True


class RelationshipDepth(BaseModel):
    user_id: str
    intimacy_score: int = Field(default=0, ge=0, le=100)
    trust_score: int = Field(default=0, ge=0, le=100)
    vulnerability_level: int = Field(default=0, ge=0, le=100)
    stage: RelationshipStage = RelationshipStage.ACQUAINTED
    inside_jokes_count: int = 0
    milestones: Dict[str, str] = Field(default_factory=dict)
    total_sessions: int = 0
    consecutive_days: int = 0
    updated_at: datetime


class EngagementTrigger(BaseModel):
    id: str
    user_id: str
    trigger_type: TriggerType
    scheduled_for: datetime
    message: str
    memory_id: Optional[str] = None
    confidence: float = 100.0
    reason: Optional[str] = None
    sent: bool = False
    sent_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DeliveredTrigger(BaseModel):
    """Result of a successful claim: the trigger, its session and the emitted message."""
    trigger: EngagementTrigger
    session: ChatSession
    message: ChatMessage
