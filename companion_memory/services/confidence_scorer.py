"""
Memory Confidence Scorer

Rates how trustworthy an extracted memory is along five axes and maps the
mean to a verification status:

    overall > 80  -> high_confidence
    overall > 60  -> inferred
    otherwise     -> not_verified

Users can confirm or dispute a memory. A human verdict is final: automatic
rescoring uses a conditional write that skips user_confirmed/disputed rows.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from companion_memory.db.repository import Repository
from companion_memory.errors import InferenceError
from companion_memory.schemas import HUMAN_VERIFICATION_STATUSES, Memory, VerificationStatus
from companion_memory.services.extraction_schemas import ConfidenceAssessment
from companion_memory.services.reasoning_service import ReasoningService, to_prompt_json

logger = logging.getLogger("companion.confidence")

HIGH_CONFIDENCE_THRESHOLD = 80
INFERRED_THRESHOLD = 60

CONFIDENCE_SYSTEM_PROMPT = "You audit an AI companion's memories for accuracy. You output only valid JSON."

CONFIDENCE_PROMPT = """Rate how well this memory is supported by the conversation it came from.

Score each axis 0-100:
- event_clarity: is the event itself clearly stated?
- date_accuracy: is the date explicit, implied, or guessed?
- emotional_accuracy: are the emotions stated or projected?
- relationship_accuracy: are the people and their roles correct?
- significance_accuracy: is the significance justified?

Return JSON:
{
  "event_clarity": 0-100,
  "date_accuracy": 0-100,
  "emotional_accuracy": 0-100,
  "relationship_accuracy": 0-100,
  "significance_accuracy": 0-100,
  "uncertainty_areas": ["what is unclear"],
  "suggested_clarifications": ["question to gently ask the user"]
}

"""


def status_for_confidence(overall: float) -> VerificationStatus:
    if overall > HIGH_CONFIDENCE_THRESHOLD:
        return VerificationStatus.HIGH_CONFIDENCE
    if overall > INFERRED_THRESHOLD:
        return VerificationStatus.INFERRED
    return VerificationStatus.NOT_VERIFIED


@dataclass
class ConfidenceReport:
    memory_id: str
    event_clarity: float
    date_accuracy: float
    emotional_accuracy: float
    relationship_accuracy: float
    significance_accuracy: float
    uncertainty_areas: List[str] = field(default_factory=list)
    suggested_clarifications: List[str] = field(default_factory=list)

    @property
    def overall(self) -> float:
        axes = (
            self.event_clarity,
            self.date_accuracy,
            self.emotional_accuracy,
            self.relationship_accuracy,
            self.significance_accuracy,
        )
        return round(sum(axes) / len(axes), 2)

    @property
    def status(self) -> VerificationStatus:
        return status_for_confidence(self.overall)

    def notes(self) -> Optional[str]:
        parts = []
        if self.uncertainty_areas:
            parts.append("Uncertain: " + "; ".join(self.uncertainty_areas))
        if self.suggested_clarifications:
            parts.append("Ask: " + "; ".join(self.suggested_clarifications))
        return "\n".join(parts) or None


class MemoryConfidenceScorer:

    def __init__(self, repository: Repository, reasoning: ReasoningService):
        self.repository = repository
        self.reasoning = reasoning

    async def score(self, memory: Memory) -> ConfidenceReport:
        """Score a memory. Raises InferenceError when the reasoning call fails."""
        layers = memory.model_dump(
            mode="json", include={"surface", "emotional", "contextual", "predictive"}
        )
        prompt = CONFIDENCE_PROMPT + f"MEMORY:\n{to_prompt_json(layers)}\n"
        if memory.raw_transcript:
            prompt += f"\nCONVERSATION:\n{memory.raw_transcript[-3000:]}\n"

        assessment = await self.reasoning.infer(CONFIDENCE_SYSTEM_PROMPT, prompt, ConfidenceAssessment)
        return ConfidenceReport(
            memory_id=memory.id,
            event_clarity=assessment.event_clarity,
            date_accuracy=assessment.date_accuracy,
            emotional_accuracy=assessment.emotional_accuracy,
            relationship_accuracy=assessment.relationship_accuracy,
            significance_accuracy=assessment.significance_accuracy,
            uncertainty_areas=assessment.uncertainty_areas,
            suggested_clarifications=assessment.suggested_clarifications,
        )

    async def rescore(self, memory_id: str) -> Optional[ConfidenceReport]:
        """
        Score a memory and store the resulting status.

        Returns None when the memory is gone, already carries a human
        verdict, or the reasoning call failed.
        """
        memory = await self.repository.get_memory(memory_id)
        if memory is None or memory.verification_status in HUMAN_VERIFICATION_STATUSES:
            return None

        try:
            report = await self.score(memory)
        except InferenceError as e:
            logger.warning(f"Confidence scoring skipped for memory {memory_id} (user {memory.user_id}): {e}")
            return None

        updated = await self.repository.set_verification(
            memory_id,
            report.status,
            confidence=report.overall,
            uncertainty_notes=report.notes(),
        )
        if not updated:
            # A human verdict landed while we were scoring
            logger.info(f"Memory {memory_id} was verified by the user during rescoring; keeping their verdict")
            return None

        logger.debug(f"Memory {memory_id} scored {report.overall} -> {report.status.value}")
        return report

    async def rescore_pending(self, user_id: str) -> int:
        """Rescore every not_verified memory for a user. Returns how many were scored."""
        memories = await self.repository.list_memories(user_id, status=VerificationStatus.NOT_VERIFIED)
        scored = 0
        for memory in memories:
            if await self.rescore(memory.id) is not None:
                scored += 1
        return scored

    async def confirm(self, memory_id: str, affirmed: bool, clarification: Optional[str] = None) -> bool:
        """Record the user's verdict on a memory, with any clarification they gave."""
        status = VerificationStatus.USER_CONFIRMED if affirmed else VerificationStatus.DISPUTED
        updated = await self.repository.set_verification(
            memory_id, status, by_user=True, clarification=clarification,
        )
        if updated:
            logger.info(f"Memory {memory_id} marked {status.value} by user")
        return updated
