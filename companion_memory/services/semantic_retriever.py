"""
Semantic Retriever - ranks a user's memories against the live utterance

final_score = relevance * 0.4
            + importance_pct * 0.3
            + recency_pct * 0.2
            + importance_pct * 0.1

where importance_pct = importance / 10 * 100 and
recency_pct = max(0, (30 - min(days_since_last_mention, 30)) / 30) * 100.

Only memories scoring strictly above the minimum make the cut. Returned
memories get their reference count and last-referenced time bumped.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from companion_memory.clock import Clock, get_clock
from companion_memory.config import Settings, settings as default_settings
from companion_memory.db.repository import Repository
from companion_memory.errors import InferenceError
from companion_memory.schemas import Memory
from companion_memory.services.extraction_schemas import RelevanceJudgment
from companion_memory.services.reasoning_service import ReasoningService

logger = logging.getLogger("companion.retriever")

RELEVANCE_WEIGHT = 0.4
IMPORTANCE_WEIGHT = 0.3
RECENCY_WEIGHT = 0.2
IMPORTANCE_BONUS_WEIGHT = 0.1
RECENCY_HORIZON_DAYS = 30

RELEVANCE_SYSTEM_PROMPT = "You judge which memories matter for a conversation. You output only valid JSON."

RELEVANCE_PROMPT = """How related is this memory to what the user just said?

Rubric:
- 90-100: directly about the same thing
- 70-89: same theme or life area
- 50-69: contextually plausible to bring up
- 30-49: loosely related
- 0-29: unrelated

Return JSON: {{"score": 0-100}}

MEMORY: {memory}
EMOTIONS: {emotions}
LIFE AREA: {life_area}

USER SAID: {utterance}
"""


def days_since(moment: datetime, now: datetime) -> float:
    return max(0.0, (now - moment).total_seconds() / 86400)


def compute_final_score(relevance: float, importance: float, recency_days: float) -> float:
    importance_pct = importance / 10 * 100
    recency_pct = max(0.0, (RECENCY_HORIZON_DAYS - min(recency_days, RECENCY_HORIZON_DAYS)) / RECENCY_HORIZON_DAYS) * 100
    return (
        relevance * RELEVANCE_WEIGHT
        + importance_pct * IMPORTANCE_WEIGHT
        + recency_pct * RECENCY_WEIGHT
        + importance_pct * IMPORTANCE_BONUS_WEIGHT
    )


@dataclass
class ScoredMemory:
    memory: Memory
    relevance: float
    recency_days: float
    final_score: float


class SemanticRetriever:

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

    async def _judge_relevance(self, memory: Memory, utterance: str, semaphore: asyncio.Semaphore) -> Optional[float]:
        prompt = RELEVANCE_PROMPT.format(
            memory=memory.surface.event,
            emotions=", ".join(memory.emotional.emotions_involved) or "none",
            life_area=memory.contextual.life_area.value,
            utterance=utterance,
        )
        async with semaphore:
            try:
                judgment = await self.reasoning.infer(RELEVANCE_SYSTEM_PROMPT, prompt, RelevanceJudgment)
            except InferenceError as e:
                logger.debug(f"Relevance scoring failed for memory {memory.id}: {e}")
                return None
        return judgment.score

    async def score_memories(self, memories: List[Memory], utterance: str) -> List[ScoredMemory]:
        """Score every memory; memories whose relevance call failed are left out."""
        now = self.clock.now()
        semaphore = asyncio.Semaphore(max(1, self.config.relevance_concurrency))
        relevances = await asyncio.gather(
            *(self._judge_relevance(memory, utterance, semaphore) for memory in memories)
        )

        scored = []
        failed = 0
        for memory, relevance in zip(memories, relevances):
            if relevance is None:
                failed += 1
                continue
            recency = days_since(memory.last_referenced_at or memory.created_at, now)
            scored.append(ScoredMemory(
                memory=memory,
                relevance=relevance,
                recency_days=recency,
                final_score=compute_final_score(relevance, memory.importance, recency),
            ))
        if failed:
            logger.warning(f"Relevance scoring failed for {failed} of {len(memories)} memories")
        return scored

    async def retrieve(self, user_id: str, utterance: str, limit: Optional[int] = None) -> List[ScoredMemory]:
        """Top memories for prompt injection, best first."""
        if limit is None:
            limit = self.config.retrieval_limit
        if limit <= 0:
            return []
        memories = await self.repository.list_memories(user_id, limit=self.config.retrieval_max_candidates)
        if not memories or not utterance.strip():
            return []

        scored = await self.score_memories(memories, utterance)
        scored.sort(key=lambda s: s.final_score, reverse=True)
        selected = [s for s in scored if s.final_score > self.config.retrieval_min_score][:limit]

        if selected:
            await self.repository.mark_memories_referenced(
                [s.memory.id for s in selected], self.clock.now()
            )
        logger.info(f"Retrieved {len(selected)} of {len(memories)} memories for user {user_id}")
        return selected

    @staticmethod
    def format_for_prompt(results: List[ScoredMemory]) -> str:
        """Render retrieved memories as a context block for the chat prompt."""
        if not results:
            return ""
        lines = ["Things you remember about the user:"]
        for item in results:
            memory = item.memory
            line = f"- [{memory.contextual.life_area.value}] {memory.surface.event}"
            if memory.emotional.emotions_involved:
                line += f" (felt {', '.join(memory.emotional.emotions_involved)})"
            if memory.predictive.suggested_followup_angle:
                line += f". Angle: {memory.predictive.suggested_followup_angle}"
            lines.append(line)
        return "\n".join(lines)
