"""
Tests for the Temporal Trend Tracker
"""

from datetime import timedelta

import pytest

from companion_memory.config import Settings
from companion_memory.errors import InferenceError
from companion_memory.schemas import TrendDirection
from companion_memory.services.extraction_schemas import MoodScore, SentimentScore, TrendInsight
from companion_memory.services.temporal_tracker import (
    CONFIDENCE,
    OVERALL_MOOD,
    RELATIONSHIP_SATISFACTION,
    STRESS_LEVEL,
    WORK_SATISFACTION,
    TemporalTrendTracker,
    derive_stress_level,
)

from conftest import NOW


@pytest.fixture
def tracker(repo, reasoning, clock):
    return TemporalTrendTracker(repo, reasoning, clock, config=Settings(trend_window_days=30))


async def seed(repo, user_id, metric, values_by_days_ago):
    for days_ago, value in values_by_days_ago:
        await repo.append_metric(user_id, metric, value, NOW - timedelta(days=days_ago))


# ============ Stress derivation ============

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event,emotions,weight,expected",
    [
        ("Final exam tomorrow", ["stressed"], 5, 8.0),
        ("Job interview at Google", ["nervous"], 5, 6.0),
        ("Project deadline on Friday", ["focused"], 5, 7.0),
        ("Board exams", ["anxious"], 9, 9.0),
        ("Job interview at Google", ["nervous"], 7, 7.0),
        ("Sister's wedding", ["stressed"], 8, None),
    ],
)
async def test_derive_stress_level(add_memory, user, event, emotions, weight, expected):
    memory = await add_memory(user.id, event=event, emotions=emotions, weight=weight)
    assert derive_stress_level(memory) == expected


# ============ Recording ============

@pytest.mark.asyncio
async def test_record_from_career_memory(tracker, reasoning, repo, add_memory, user):
    memory = await add_memory(user.id, event="Job interview at Google", emotions=["stressed"], weight=5)
    reasoning.script(SentimentScore, {"score": 4})

    samples = await tracker.record_from_memory(memory)

    assert {(s.metric_name, s.value) for s in samples} == {(STRESS_LEVEL, 8.0), (WORK_SATISFACTION, 4.0)}
    assert all(s.memory_id == memory.id and s.recorded_at == NOW for s in samples)
    assert samples[0].context == "Job interview at Google"


@pytest.mark.asyncio
async def test_record_confidence_from_growth_memory(tracker, reasoning, add_memory, user):
    memory = await add_memory(user.id, event="Gave my first talk", emotions=["proud"], life_area="growth")

    samples = await tracker.record_from_memory(memory)

    assert [(s.metric_name, s.value) for s in samples] == [(CONFIDENCE, 8.0)]
    assert reasoning.calls == []


@pytest.mark.asyncio
async def test_failed_sentiment_skips_only_that_metric(tracker, reasoning, repo, add_memory, user):
    memory = await add_memory(
        user.id, event="Fight with boyfriend about work hours", emotions=["hurt"], life_area="relationship",
    )
    reasoning.script(SentimentScore, InferenceError("timed out"), {"score": 6})

    samples = await tracker.record_from_memory(memory)

    assert [s.metric_name for s in samples] == [WORK_SATISFACTION]
    assert await repo.list_metrics(user.id, RELATIONSHIP_SATISFACTION) == []


@pytest.mark.asyncio
async def test_sentiment_scores_are_clamped(tracker, reasoning, add_memory, user):
    memory = await add_memory(user.id, event="Anniversary dinner", emotions=["happy"], life_area="relationship")
    reasoning.script(SentimentScore, {"score": 14})

    samples = await tracker.record_from_memory(memory)
    assert samples[0].value == 10.0


@pytest.mark.asyncio
async def test_record_mood(tracker, reasoning, repo, user):
    reasoning.script(MoodScore, {"score": 7}, {"score": None})

    sample = await tracker.record_mood(user.id, "Had a lovely day at the beach")
    assert sample.metric_name == OVERALL_MOOD
    assert sample.value == 7.0

    assert await tracker.record_mood(user.id, "ok") is None
    assert len(await repo.list_metrics(user.id, OVERALL_MOOD)) == 1


# ============ Trends ============

@pytest.mark.asyncio
async def test_falling_stress_is_improving(tracker, repo, user):
    await seed(repo, user.id, STRESS_LEVEL, [(20, 8), (10, 7), (1, 5)])

    trend = await tracker.trend(user.id, STRESS_LEVEL)

    assert trend.direction == TrendDirection.IMPROVING
    assert trend.current == 5
    assert trend.previous == 7
    assert trend.oldest == 8
    assert trend.change_percentage == -37.5
    assert trend.days_tracked == 19


@pytest.mark.asyncio
async def test_falling_satisfaction_is_declining(tracker, repo, user):
    await seed(repo, user.id, WORK_SATISFACTION, [(12, 8), (2, 4)])

    trend = await tracker.trend(user.id, WORK_SATISFACTION)
    assert trend.direction == TrendDirection.DECLINING


@pytest.mark.asyncio
async def test_small_change_is_stable(tracker, repo, user):
    await seed(repo, user.id, OVERALL_MOOD, [(5, 6), (1, 7)])

    trend = await tracker.trend(user.id, OVERALL_MOOD)
    assert trend.direction == TrendDirection.STABLE


@pytest.mark.asyncio
async def test_single_sample_is_stable(tracker, repo, user):
    await seed(repo, user.id, CONFIDENCE, [(3, 4)])

    trend = await tracker.trend(user.id, CONFIDENCE)
    assert trend.direction == TrendDirection.STABLE
    assert trend.previous is None
    assert trend.days_tracked == 0


@pytest.mark.asyncio
async def test_samples_outside_window_are_ignored(tracker, repo, user):
    await seed(repo, user.id, STRESS_LEVEL, [(45, 2), (10, 6)])

    trend = await tracker.trend(user.id, STRESS_LEVEL)
    assert trend.oldest == 6
    assert trend.direction == TrendDirection.STABLE

    wider = await tracker.trend(user.id, STRESS_LEVEL, window_days=60)
    assert wider.direction == TrendDirection.DECLINING


@pytest.mark.asyncio
async def test_new_user_has_no_trends(tracker, user):
    assert await tracker.trends(user.id) == []
    assert await tracker.generate_insight(user.id) == ""


@pytest.mark.asyncio
async def test_generate_insight(tracker, reasoning, repo, user):
    await seed(repo, user.id, STRESS_LEVEL, [(20, 8), (1, 4)])
    reasoning.script(TrendInsight, {"insight": " Stress has eased a lot since exams ended. "})

    insight = await tracker.generate_insight(user.id)

    assert insight == "Stress has eased a lot since exams ended."
    assert '"direction": "improving"' in reasoning.calls_for(TrendInsight)[0]


@pytest.mark.asyncio
async def test_insight_unavailable_when_reasoning_fails(tracker, reasoning, repo, user):
    await seed(repo, user.id, STRESS_LEVEL, [(2, 5)])
    reasoning.script(TrendInsight, InferenceError("down"))

    assert await tracker.generate_insight(user.id) == ""
