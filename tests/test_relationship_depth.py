"""
Tests for the Relationship Depth Calculator
"""

from datetime import date, timedelta

import pytest

from companion_memory.events import StageChanged
from companion_memory.schemas import MessageRole, RelationshipStage
from companion_memory.services.relationship_depth import (
    DepthHistory,
    DepthPolicy,
    RelationshipDepthCalculator,
    calculate_depth,
    classify_topic,
    communication_guidelines,
    count_consecutive_days,
    stage_for_score,
)

from conftest import NOW


@pytest.fixture
def calculator(repo, clock, bus):
    return RelationshipDepthCalculator(repo, clock, bus)


async def daily_sessions(repo, user_id, days, messages_per_session):
    """One session per day ending today, each with the given number of messages."""
    for days_ago in reversed(range(days)):
        started = NOW - timedelta(days=days_ago)
        session = await repo.create_session(user_id, started)
        for i in range(messages_per_session):
            role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
            await repo.add_message(session.id, user_id, role, f"message {i}", started + timedelta(minutes=i))
        await repo.end_session(session.id, started + timedelta(minutes=messages_per_session))


@pytest.mark.parametrize(
    "score,stage",
    [
        (0, RelationshipStage.ACQUAINTED),
        (29, RelationshipStage.ACQUAINTED),
        (30, RelationshipStage.FRIENDLY),
        (59, RelationshipStage.FRIENDLY),
        (60, RelationshipStage.INTIMATE),
        (84, RelationshipStage.INTIMATE),
        (85, RelationshipStage.DEEP_TRUST),
        (100, RelationshipStage.DEEP_TRUST),
    ],
)
def test_stage_boundaries(score, stage):
    assert stage_for_score(score) == stage


def test_consecutive_days_counts_back_from_today():
    today = date(2026, 3, 10)
    active = [today, today - timedelta(days=1), today - timedelta(days=3)]
    assert count_consecutive_days(active, today) == 2
    assert count_consecutive_days(active[1:], today) == 0
    assert count_consecutive_days([], today) == 0


def test_empty_history_is_acquainted():
    result = calculate_depth(DepthHistory(), NOW)

    assert result.intimacy_score == 0
    assert result.trust_score == 0
    assert result.vulnerability_level == 0
    assert result.stage == RelationshipStage.ACQUAINTED
    assert result.milestones == {}


@pytest.mark.asyncio
async def test_classify_topic(add_memory, user):
    insecure = await add_memory(user.id, event="Doubts about coding skills", emotions=["insecure"])
    exam = await add_memory(user.id, event="Physics exam", emotions=["focused"], life_area="growth")
    hobby = await add_memory(user.id, event="Started pottery", emotions=["happy"], life_area="hobby")
    other = await add_memory(user.id, event="Bought groceries", emotions=[], life_area="finance")

    assert classify_topic(insecure) == "insecurity"
    assert classify_topic(exam) == "exam"
    assert classify_topic(hobby) == "hobby"
    assert classify_topic(other) is None


@pytest.mark.asyncio
async def test_five_days_of_chats_reach_friendly(calculator, repo, add_memory, user):
    await daily_sessions(repo, user.id, days=5, messages_per_session=10)
    await add_memory(user.id, event="Doubts about coding skills", emotions=["insecure"], life_area="growth")

    result = await calculator.calculate(user.id)

    # 10 sessions pts + 30 engagement + 3.33 streak + 4 topic
    assert result.intimacy_score == 47
    assert result.stage == RelationshipStage.FRIENDLY
    assert result.trust_score == 20
    assert result.vulnerability_level == 44
    assert result.metrics.consecutive_days == 5
    assert result.metrics.vulnerability_count == 1
    assert list(result.milestones) == ["first_chat"]
    assert result.milestones["first_chat"] == (NOW - timedelta(days=4)).isoformat()


@pytest.mark.asyncio
async def test_vulnerable_topic_and_keyword_count_separately(calculator, add_memory, user):
    await add_memory(user.id, event="I feel insecure about my looks", emotions=["insecure"])
    await add_memory(user.id, event="Worried about rent", emotions=["calm"], life_area="finance")

    result = await calculator.calculate(user.id)

    assert result.metrics.vulnerability_count == 3


@pytest.mark.asyncio
async def test_components_are_capped(calculator, repo, add_memory, user):
    await daily_sessions(repo, user.id, days=40, messages_per_session=30)
    for _ in range(10):
        await add_memory(user.id, event="Scared of losing my job", emotions=["scared"])

    result = await calculator.calculate(user.id)

    # 40 + 30 + 20 + 10
    assert result.intimacy_score == 100
    assert result.stage == RelationshipStage.DEEP_TRUST
    assert result.trust_score == 100
    assert result.vulnerability_level == 100
    assert set(result.milestones) == {"first_chat", "10_chats"}


@pytest.mark.asyncio
async def test_inside_jokes_are_capped(repo, clock, add_memory, user):
    for i in range(4):
        await add_memory(user.id, event=f"Date night {i}", emotions=["happy"], life_area="relationship")
    calculator = RelationshipDepthCalculator(repo, clock, policy=DepthPolicy(max_inside_jokes=3))

    result = await calculator.calculate(user.id)
    assert result.metrics.inside_jokes_count == 3


@pytest.mark.asyncio
async def test_recompute_stores_and_announces_stage_change(calculator, repo, bus, add_memory, user):
    changes = []
    bus.subscribe(StageChanged, changes.append)
    await daily_sessions(repo, user.id, days=5, messages_per_session=10)
    await add_memory(user.id, event="Doubts about coding skills", emotions=["insecure"], life_area="growth")

    depth = await calculator.recompute(user.id)
    await calculator.recompute(user.id)

    assert depth.stage == RelationshipStage.FRIENDLY
    assert depth.total_sessions == 5
    assert await repo.get_relationship_depth(user.id) == depth
    assert changes == [StageChanged(
        user_id=user.id, previous_stage="acquainted", stage="friendly", intimacy_score=47,
    )]


@pytest.mark.asyncio
async def test_cold_start_recompute_announces_nothing(calculator, bus, user):
    changes = []
    bus.subscribe(StageChanged, changes.append)

    depth = await calculator.recompute(user.id)

    assert depth.stage == RelationshipStage.ACQUAINTED
    assert changes == []


@pytest.mark.asyncio
async def test_get_depth_defaults_for_new_user(calculator, repo, user):
    depth = await calculator.get_depth(user.id)

    assert depth.stage == RelationshipStage.ACQUAINTED
    assert depth.intimacy_score == 0
    assert await repo.get_relationship_depth(user.id) is None


def test_communication_guidelines():
    text = communication_guidelines(RelationshipStage.DEEP_TRUST)

    assert text.startswith("RELATIONSHIP STAGE: Deep Trust\n")
    assert "Reach out: daily" in text
