"""
Tests for the Memory Confidence Scorer

Status thresholds, defaulted axes, and the rule that a user's verdict is
never overwritten by automatic rescoring.
"""

import pytest

from companion_memory.errors import InferenceError
from companion_memory.schemas import VerificationStatus
from companion_memory.services.confidence_scorer import MemoryConfidenceScorer, status_for_confidence
from companion_memory.services.extraction_schemas import ConfidenceAssessment


def axes(value, **overrides):
    payload = {
        "event_clarity": value,
        "date_accuracy": value,
        "emotional_accuracy": value,
        "relationship_accuracy": value,
        "significance_accuracy": value,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def scorer(repo, reasoning):
    return MemoryConfidenceScorer(repo, reasoning)


@pytest.mark.parametrize(
    "overall,status",
    [
        (95, VerificationStatus.HIGH_CONFIDENCE),
        (80.01, VerificationStatus.HIGH_CONFIDENCE),
        (80, VerificationStatus.INFERRED),
        (61, VerificationStatus.INFERRED),
        (60, VerificationStatus.NOT_VERIFIED),
        (0, VerificationStatus.NOT_VERIFIED),
    ],
)
def test_status_thresholds(overall, status):
    assert status_for_confidence(overall) == status


@pytest.mark.asyncio
async def test_omitted_axes_count_as_fifty(scorer, reasoning, add_memory, user):
    memory = await add_memory(user.id)
    reasoning.script(ConfidenceAssessment, {"event_clarity": 100, "date_accuracy": None})

    report = await scorer.score(memory)

    assert report.date_accuracy == 50
    assert report.overall == 60.0
    assert report.status == VerificationStatus.NOT_VERIFIED


@pytest.mark.asyncio
async def test_out_of_range_axes_are_clamped(scorer, reasoning, add_memory, user):
    memory = await add_memory(user.id)
    reasoning.script(ConfidenceAssessment, axes(100, event_clarity=140))

    report = await scorer.score(memory)
    assert report.event_clarity == 100


@pytest.mark.asyncio
async def test_rescore_stores_status_and_notes(scorer, reasoning, repo, add_memory, user):
    memory = await add_memory(user.id)
    reasoning.script(ConfidenceAssessment, axes(90, uncertainty_areas=["exact date"],
                                                suggested_clarifications=["Was it this Friday?"]))

    report = await scorer.rescore(memory.id)

    stored = await repo.get_memory(memory.id)
    assert report.status == VerificationStatus.HIGH_CONFIDENCE
    assert stored.verification_status == VerificationStatus.HIGH_CONFIDENCE
    assert stored.confidence == 90
    assert stored.uncertainty_notes == "Uncertain: exact date\nAsk: Was it this Friday?"


@pytest.mark.asyncio
async def test_user_confirmation_survives_rescore(scorer, reasoning, repo, add_memory, user):
    memory = await add_memory(user.id)

    assert await scorer.confirm(memory.id, affirmed=True) is True
    reasoning.always(ConfidenceAssessment, axes(10))

    assert await scorer.rescore(memory.id) is None
    stored = await repo.get_memory(memory.id)
    assert stored.verification_status == VerificationStatus.USER_CONFIRMED
    # already human-verified: no reasoning call made
    assert reasoning.calls_for(ConfidenceAssessment) == []


@pytest.mark.asyncio
async def test_verdict_landing_mid_scoring_is_kept(scorer, reasoning, repo, add_memory, user):
    memory = await add_memory(user.id)

    def user_disputes_while_scoring(prompt):
        current = repo.memories[memory.id]
        repo.memories[memory.id] = current.model_copy(
            update={"verification_status": VerificationStatus.DISPUTED}
        )
        return axes(95)

    reasoning.script(ConfidenceAssessment, user_disputes_while_scoring)

    assert await scorer.rescore(memory.id) is None
    stored = await repo.get_memory(memory.id)
    assert stored.verification_status == VerificationStatus.DISPUTED
    assert stored.confidence is None


@pytest.mark.asyncio
async def test_inference_failure_leaves_memory_untouched(scorer, reasoning, repo, add_memory, user):
    memory = await add_memory(user.id)
    reasoning.script(ConfidenceAssessment, InferenceError("timed out"))

    assert await scorer.rescore(memory.id) is None
    stored = await repo.get_memory(memory.id)
    assert stored.verification_status == VerificationStatus.NOT_VERIFIED
    assert stored.confidence is None


@pytest.mark.asyncio
async def test_dispute_records_clarification(scorer, repo, add_memory, user):
    memory = await add_memory(user.id)

    await scorer.confirm(memory.id, affirmed=False, clarification="It was Microsoft, not Google")

    stored = await repo.get_memory(memory.id)
    assert stored.verification_status == VerificationStatus.DISPUTED
    assert stored.clarification_note == "It was Microsoft, not Google"


@pytest.mark.asyncio
async def test_user_can_change_their_verdict(scorer, repo, add_memory, user):
    memory = await add_memory(user.id)

    await scorer.confirm(memory.id, affirmed=False)
    await scorer.confirm(memory.id, affirmed=True)

    stored = await repo.get_memory(memory.id)
    assert stored.verification_status == VerificationStatus.USER_CONFIRMED


@pytest.mark.asyncio
async def test_confirm_unknown_memory(scorer):
    assert await scorer.confirm("missing", affirmed=True) is False


@pytest.mark.asyncio
async def test_rescore_pending_only_touches_unverified(scorer, reasoning, repo, add_memory, user):
    pending = await add_memory(user.id, event="Exam")
    confirmed = await add_memory(user.id, event="Wedding")
    await scorer.confirm(confirmed.id, affirmed=True)
    reasoning.always(ConfidenceAssessment, axes(70))

    assert await scorer.rescore_pending(user.id) == 1
    assert (await repo.get_memory(pending.id)).verification_status == VerificationStatus.INFERRED
    assert len(reasoning.calls_for(ConfidenceAssessment)) == 1
