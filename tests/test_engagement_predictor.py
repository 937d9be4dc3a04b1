"""
Tests for the Engagement Predictor

Rule priority, inactivity thresholds, time parsing and message fallbacks.
"""

from datetime import datetime, timedelta

import pytest

from companion_memory.schemas import Mood, SessionType, TriggerType
from companion_memory.services.engagement_predictor import (
    FALLBACK_MESSAGES,
    EngagementPredictor,
    hour_bucket,
    inactivity_threshold,
    parse_time_for_trigger,
)
from companion_memory.services.extraction_schemas import EngagementPrediction, GeneratedMessage

from conftest import NOW, hours_ago


@pytest.fixture
def predictor(repo, reasoning, clock):
    return EngagementPredictor(repo, reasoning, clock)


async def chat_at(repo, user_id, started, minutes=20, session_type=SessionType.CHAT):
    session = await repo.create_session(user_id, started, session_type=session_type)
    await repo.end_session(session.id, started + timedelta(minutes=minutes))
    return session


# ============ Pure helpers ============

@pytest.mark.parametrize(
    "hour,bucket",
    [(6, "morning"), (11, "morning"), (12, "afternoon"), (17, "evening"), (22, "late night"), (3, "late night")],
)
def test_hour_bucket(hour, bucket):
    assert hour_bucket(hour) == bucket


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "gap_hours,expected",
    [(10, 24.0), (30, 60.0), (50, 72.0)],
)
async def test_inactivity_threshold_from_session_rhythm(repo, user, gap_hours, expected):
    for i in range(4):
        await repo.create_session(user.id, NOW - timedelta(hours=gap_hours * i))

    assert inactivity_threshold(await repo.list_sessions(user.id)) == expected


@pytest.mark.asyncio
async def test_inactivity_threshold_defaults_with_little_history(repo, user):
    await repo.create_session(user.id, hours_ago(5))
    await repo.create_session(user.id, hours_ago(100))

    assert inactivity_threshold(await repo.list_sessions(user.id)) == 48.0


@pytest.mark.parametrize(
    "best_time,expected",
    [
        ("now", NOW + timedelta(minutes=30)),
        ("18:30", datetime(2026, 3, 10, 18, 30)),
        ("9:00", datetime(2026, 3, 11, 9, 0)),
        ("14:00", datetime(2026, 3, 11, 14, 0)),
        ("25:00", NOW + timedelta(hours=1)),
        ("this evening", NOW + timedelta(hours=1)),
        (None, NOW + timedelta(hours=1)),
    ],
)
def test_parse_time_for_trigger(best_time, expected):
    assert parse_time_for_trigger(best_time, NOW) == expected


# ============ Pattern analysis ============

@pytest.mark.asyncio
async def test_analyze_patterns(predictor, repo, add_memory, user):
    await chat_at(repo, user.id, datetime(2026, 3, 9, 8, 0))
    await chat_at(repo, user.id, datetime(2026, 3, 9, 20, 0))
    await chat_at(repo, user.id, datetime(2026, 3, 8, 21, 0))
    await chat_at(repo, user.id, hours_ago(2), session_type=SessionType.PROACTIVE)
    for days_ago in (7, 14):
        await repo.record_emotional_state(user.id, Mood.SAD, 4, 5, NOW - timedelta(days=days_ago))
    await repo.record_emotional_state(user.id, Mood.HAPPY, 7, 2, hours_ago(1))
    await add_memory(user.id, event="Got the promotion", emotions=["excited"], pattern_type="career wins")

    pattern = await predictor.analyze_patterns(user.id)

    assert pattern.active_hours == "evening"
    assert pattern.has_morning_activity is True
    assert pattern.low_mood_days == ["Tuesday"]
    assert pattern.stress_day is None
    assert pattern.excitement_topics == ["career wins"]
    assert pattern.current_mood == Mood.HAPPY
    # the proactive session counts as the latest activity
    assert pattern.hours_since_last_activity == pytest.approx(2 - 20 / 60)


# ============ Rules ============

@pytest.mark.asyncio
async def test_inactive_user_gets_miss_you(predictor, repo, user):
    await chat_at(repo, user.id, hours_ago(50), minutes=0)

    candidate = await predictor.predict(user.id)

    assert candidate.trigger_type == TriggerType.MISS_YOU
    assert candidate.confidence == 85
    assert candidate.scheduled_for == NOW + timedelta(hours=1)
    assert candidate.message == FALLBACK_MESSAGES[TriggerType.MISS_YOU]
    assert candidate.reason == "No activity for 50 hours"


@pytest.mark.asyncio
async def test_stress_day_gets_support(predictor, repo, user):
    await chat_at(repo, user.id, hours_ago(3))
    for days_ago in (7, 14, 21):
        await repo.record_emotional_state(user.id, Mood.STRESSED, 3, 8, NOW - timedelta(days=days_ago))

    candidate = await predictor.predict(user.id)

    assert candidate.trigger_type == TriggerType.SUPPORT
    assert candidate.confidence == 75
    assert candidate.scheduled_for == NOW + timedelta(minutes=30)
    assert candidate.reason == "User tends to feel stressed on Tuesdays"


@pytest.mark.asyncio
async def test_two_stressed_days_are_not_a_pattern(predictor, repo, user):
    await chat_at(repo, user.id, hours_ago(3))
    for days_ago in (7, 14):
        await repo.record_emotional_state(user.id, Mood.ANXIOUS, 3, 8, NOW - timedelta(days=days_ago))

    # falls through to the reasoning service, which is unscripted here
    assert await predictor.predict(user.id) is None


@pytest.mark.asyncio
async def test_morning_user_gets_good_morning(predictor, repo, clock, user):
    clock.set(datetime(2026, 3, 11, 9, 0))
    await chat_at(repo, user.id, datetime(2026, 3, 11, 7, 30))

    candidate = await predictor.predict(user.id)

    assert candidate.trigger_type == TriggerType.GOOD_MORNING
    assert candidate.confidence == 80
    assert candidate.scheduled_for == datetime(2026, 3, 12, 8, 0)


@pytest.mark.asyncio
async def test_late_evening_gets_good_night(predictor, repo, clock, user):
    clock.set(datetime(2026, 3, 10, 22, 30))
    await chat_at(repo, user.id, datetime(2026, 3, 10, 19, 0))

    candidate = await predictor.predict(user.id)

    assert candidate.trigger_type == TriggerType.GOOD_NIGHT
    assert candidate.scheduled_for == datetime(2026, 3, 10, 23, 30)


@pytest.mark.asyncio
async def test_upcoming_followup_gets_support(predictor, repo, add_memory, user):
    await chat_at(repo, user.id, hours_ago(3))
    memory = await add_memory(user.id)
    await repo.create_trigger(
        user.id, TriggerType.FOLLOWUP, NOW + timedelta(hours=5), "How did the interview go?",
        created_at=NOW, memory_id=memory.id,
    )

    candidate = await predictor.predict(user.id)

    assert candidate.trigger_type == TriggerType.SUPPORT
    assert candidate.confidence == 70
    assert candidate.memory_id == memory.id
    assert candidate.reason == "Upcoming: How did the interview go?"


@pytest.mark.asyncio
async def test_reasoning_prediction(predictor, reasoning, repo, user):
    await chat_at(repo, user.id, hours_ago(3))
    reasoning.script(EngagementPrediction, {
        "trigger_type": "celebration", "confidence": 72, "reason": "Got promoted", "best_time": "18:30",
    })
    reasoning.script(GeneratedMessage, {"message": "  Congrats yaar, so proud! 🎉 "})

    candidate = await predictor.predict(user.id)

    assert candidate.trigger_type == TriggerType.CELEBRATION
    assert candidate.confidence == 72
    assert candidate.scheduled_for == datetime(2026, 3, 10, 18, 30)
    assert candidate.message == "Congrats yaar, so proud! 🎉"
    assert "Address the user as Aarav" in reasoning.calls_for(GeneratedMessage)[0]


@pytest.mark.asyncio
async def test_malformed_prediction_yields_nothing(predictor, reasoning, repo, user):
    await chat_at(repo, user.id, hours_ago(3))
    reasoning.script(EngagementPrediction, {"trigger_type": "serenade", "confidence": 90})

    assert await predictor.predict(user.id) is None


@pytest.mark.asyncio
async def test_unknown_user_message_uses_generic_name(predictor, reasoning):
    reasoning.script(GeneratedMessage, {"message": "Hi!"})

    await predictor.generate_message("ghost", TriggerType.CHECK_IN, "checking in", [])

    assert "Address the user as baby" in reasoning.calls_for(GeneratedMessage)[0]
