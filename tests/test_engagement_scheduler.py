"""
Tests for the Engagement Scheduler

At-most-once dispatch, proactive sessions, stale and failing triggers,
overlap guards, and the prediction loop's floor and de-duplication.
"""

import asyncio
from datetime import timedelta

import pytest

from companion_memory.config import Settings
from companion_memory.db.memory_repository import InMemoryRepository
from companion_memory.events import TriggerDispatched
from companion_memory.schemas import MessageRole, SessionType, TriggerType
from companion_memory.services.engagement_predictor import FALLBACK_MESSAGES, EngagementPredictor
from companion_memory.services.engagement_scheduler import EngagementScheduler, schedule_unique_trigger
from companion_memory.services.extraction_schemas import EngagementPrediction

from conftest import NOW, RecordingDispatcher, hours_ago


@pytest.fixture
def config():
    return Settings(companion_name="Riya", stale_trigger_hours=72, trigger_confidence_floor=60)


@pytest.fixture
def scheduler(repo, reasoning, clock, bus, dispatcher, config):
    predictor = EngagementPredictor(repo, reasoning, clock, config)
    return EngagementScheduler(repo, predictor, dispatcher, clock, bus, config)


async def due_trigger(repo, user_id, hours_overdue=0.5, trigger_type=TriggerType.CHECK_IN, message="Hey! How was your day?"):
    return await repo.create_trigger(
        user_id, trigger_type, NOW - timedelta(hours=hours_overdue), message, created_at=NOW - timedelta(days=4),
    )


async def chat_at(repo, user_id, started, minutes=20):
    session = await repo.create_session(user_id, started)
    await repo.end_session(session.id, started + timedelta(minutes=minutes))
    return session


# ============ Dispatch ============

@pytest.mark.asyncio
async def test_due_trigger_is_sent_exactly_once(scheduler, repo, dispatcher, user):
    trigger = await due_trigger(repo, user.id)

    first = await scheduler.dispatch_due()
    second = await scheduler.dispatch_due()

    assert len(first.dispatched) == 1
    assert second.dispatched == []
    assert dispatcher.delivered == [(user.id, "Hey! How was your day?", "tok-1")]

    stored = await repo.get_trigger(trigger.id)
    assert stored.sent is True
    assert stored.sent_at == NOW
    session = first.dispatched[0].session
    messages = await repo.list_messages(session.id)
    assert [(m.role, m.text, m.trigger_id) for m in messages] == [
        (MessageRole.ASSISTANT, "Hey! How was your day?", trigger.id)
    ]


@pytest.mark.asyncio
async def test_racing_dispatchers_emit_one_message(scheduler, repo, dispatcher, user):
    trigger = await due_trigger(repo, user.id)

    results = await asyncio.gather(scheduler.dispatch_trigger(trigger), scheduler.dispatch_trigger(trigger))

    assert sum(r is not None for r in results) == 1
    assert len(dispatcher.delivered) == 1
    sessions = await repo.list_sessions(user.id)
    assert len(sessions) == 1
    assert len(await repo.list_messages(sessions[0].id)) == 1


@pytest.mark.asyncio
async def test_dispatch_opens_proactive_session(scheduler, repo, user):
    await due_trigger(repo, user.id)

    report = await scheduler.dispatch_due()

    session = report.dispatched[0].session
    assert session.session_type == SessionType.PROACTIVE
    assert session.started_at == NOW
    assert session.note == "Proactive session started by Riya"


@pytest.mark.asyncio
async def test_dispatch_reuses_active_session(scheduler, repo, user):
    active = await repo.create_session(user.id, hours_ago(0.2))
    await due_trigger(repo, user.id)

    report = await scheduler.dispatch_due()

    assert report.dispatched[0].session.id == active.id
    assert len(await repo.list_sessions(user.id)) == 1


@pytest.mark.asyncio
async def test_stale_trigger_is_not_sent(scheduler, repo, dispatcher, user):
    stale = await due_trigger(repo, user.id, hours_overdue=80)
    fresh = await due_trigger(repo, user.id, hours_overdue=1, trigger_type=TriggerType.SUPPORT)

    report = await scheduler.dispatch_due()

    assert report.stale == 1
    assert [d.trigger.id for d in report.dispatched] == [fresh.id]
    assert (await repo.get_trigger(stale.id)).sent is False
    assert len(dispatcher.delivered) == 1


@pytest.mark.asyncio
async def test_stale_trigger_is_expired_once_and_never_retried(scheduler, repo, clock, dispatcher, user):
    stale = await due_trigger(repo, user.id, hours_overdue=80)

    counts = []
    for _ in range(3):
        counts.append((await scheduler.dispatch_due()).stale)
        clock.advance(minutes=5)

    assert counts == [1, 0, 0]
    stored = await repo.get_trigger(stale.id)
    assert stored.sent is False
    assert stored.expired_at == NOW
    assert await repo.list_due_triggers(clock.now()) == []
    assert dispatcher.delivered == []


@pytest.mark.asyncio
async def test_expired_trigger_does_not_block_a_new_one(scheduler, repo, user):
    await due_trigger(repo, user.id, hours_overdue=80)
    await scheduler.dispatch_due()

    # The window reaches back past the expired trigger
    fresh = await schedule_unique_trigger(
        repo, user_id=user.id, trigger_type=TriggerType.CHECK_IN, scheduled_for=NOW + timedelta(hours=2),
        message="Hey! How was your day?", now=NOW, dedup_hours=96,
    )

    assert fresh is not None


@pytest.mark.asyncio
async def test_trigger_for_missing_user_fails_and_stays_unsent(scheduler, repo, dispatcher):
    orphan = await due_trigger(repo, "ghost")

    report = await scheduler.dispatch_due()

    assert report.failed == 1
    assert report.dispatched == []
    assert (await repo.get_trigger(orphan.id)).sent is False
    assert dispatcher.delivered == []


@pytest.mark.asyncio
async def test_unexpected_error_on_one_trigger_does_not_stop_the_batch(reasoning, clock, dispatcher, config):
    class LockedOnceRepository(InMemoryRepository):
        locked_id = None

        async def claim_and_emit_trigger(self, trigger_id, now, session_note=None):
            if trigger_id == self.locked_id:
                raise RuntimeError("database is locked")
            return await super().claim_and_emit_trigger(trigger_id, now, session_note)

    repo = LockedOnceRepository()
    user = await repo.create_user("Aarav", NOW - timedelta(days=60), push_token="tok-1")
    locked = await due_trigger(repo, user.id, hours_overdue=2)
    other = await due_trigger(repo, user.id, hours_overdue=1, trigger_type=TriggerType.SUPPORT)
    repo.locked_id = locked.id
    scheduler = EngagementScheduler(
        repo, EngagementPredictor(repo, reasoning, clock, config), dispatcher, clock, config=config,
    )

    report = await scheduler.dispatch_due()

    assert report.failed == 1
    assert [d.trigger.id for d in report.dispatched] == [other.id]
    assert (await repo.get_trigger(locked.id)).sent is False
    assert len(dispatcher.delivered) == 1


@pytest.mark.asyncio
async def test_failed_notification_still_counts_as_dispatched(repo, reasoning, clock, bus, config, user):
    events = []
    bus.subscribe(TriggerDispatched, events.append)
    scheduler = EngagementScheduler(
        repo, EngagementPredictor(repo, reasoning, clock, config), RecordingDispatcher(fail=True), clock, bus, config,
    )
    trigger = await due_trigger(repo, user.id)

    report = await scheduler.dispatch_due()

    assert len(report.dispatched) == 1
    assert (await repo.get_trigger(trigger.id)).sent is True
    assert events == [TriggerDispatched(user_id=user.id, trigger_id=trigger.id, trigger_type="check_in")]


@pytest.mark.asyncio
async def test_overlapping_dispatch_run_is_skipped(repo, reasoning, clock, config, user):
    nested = []

    class ReentrantDispatcher(RecordingDispatcher):
        async def deliver(self, user_id, message, push_token=None):
            nested.append(await scheduler.dispatch_due())
            return await super().deliver(user_id, message, push_token)

    scheduler = EngagementScheduler(
        repo, EngagementPredictor(repo, reasoning, clock, config), ReentrantDispatcher(), clock, config=config,
    )
    await due_trigger(repo, user.id)

    report = await scheduler.dispatch_due()

    assert len(report.dispatched) == 1
    assert nested[0].skipped is True
    assert (await scheduler.dispatch_due()).skipped is False


# ============ Prediction ============

@pytest.mark.asyncio
async def test_inactive_user_gets_one_miss_you(scheduler, repo, user):
    await chat_at(repo, user.id, hours_ago(50), minutes=0)

    first = await scheduler.predict_all()
    second = await scheduler.predict_all()

    assert first.users == 1
    assert len(first.created) == 1
    trigger = first.created[0]
    assert trigger.trigger_type == TriggerType.MISS_YOU
    assert trigger.confidence == 85
    assert trigger.scheduled_for == NOW + timedelta(hours=1)
    assert trigger.message == FALLBACK_MESSAGES[TriggerType.MISS_YOU]

    assert second.created == []
    assert second.deduplicated == 1
    assert len(await repo.list_triggers(user.id)) == 1


@pytest.mark.asyncio
async def test_sent_miss_you_resets_inactivity(scheduler, repo, clock, user):
    await chat_at(repo, user.id, hours_ago(50), minutes=0)
    await scheduler.predict_all()

    clock.advance(hours=2)
    await scheduler.dispatch_due()
    clock.advance(hours=6)
    report = await scheduler.predict_all()

    # the proactive session is recent activity, so no second miss_you
    assert TriggerType.MISS_YOU not in [t.trigger_type for t in report.created]
    miss_you = [t for t in await repo.list_triggers(user.id) if t.trigger_type == TriggerType.MISS_YOU]
    assert len(miss_you) == 1 and miss_you[0].sent


@pytest.mark.asyncio
async def test_low_confidence_prediction_is_discarded(scheduler, reasoning, repo, user):
    await chat_at(repo, user.id, hours_ago(3))
    reasoning.script(EngagementPrediction, {"trigger_type": "advice", "confidence": 40, "best_time": "now"})

    report = await scheduler.predict_all()

    assert report.below_floor == 1
    assert report.created == []
    assert await repo.list_triggers(user.id) == []


@pytest.mark.asyncio
async def test_reasoned_prediction_is_scheduled_at_best_time(scheduler, reasoning, repo, user):
    await chat_at(repo, user.id, hours_ago(3))
    reasoning.script(EngagementPrediction, {
        "trigger_type": "check_in", "confidence": 65, "reason": "Quiet week", "best_time": "18:30",
    })

    trigger = await scheduler.predict_for_user(user.id)

    assert trigger.trigger_type == TriggerType.CHECK_IN
    assert trigger.scheduled_for == NOW.replace(hour=18, minute=30)
    assert trigger.reason == "Quiet week"
    assert trigger.message == FALLBACK_MESSAGES[TriggerType.CHECK_IN]


@pytest.mark.asyncio
async def test_one_failing_user_does_not_stop_the_run(repo, reasoning, clock, dispatcher, config, user):
    other = await repo.create_user("Meera", NOW - timedelta(days=10))
    await chat_at(repo, user.id, hours_ago(50), minutes=0)
    await chat_at(repo, other.id, hours_ago(60), minutes=0)

    class PickyPredictor(EngagementPredictor):
        async def predict(self, user_id):
            if user_id == other.id:
                raise RuntimeError("pattern analysis blew up")
            return await super().predict(user_id)

    scheduler = EngagementScheduler(repo, PickyPredictor(repo, reasoning, clock, config), dispatcher, clock, config=config)

    report = await scheduler.predict_all()

    assert report.users == 2
    assert report.failed == 1
    assert [t.user_id for t in report.created] == [user.id]


@pytest.mark.asyncio
async def test_users_without_recent_sessions_are_not_analyzed(scheduler, repo, user):
    await chat_at(repo, user.id, NOW - timedelta(days=45))

    report = await scheduler.predict_all()
    assert report.users == 0


# ============ De-duplication ============

@pytest.mark.asyncio
async def test_schedule_unique_trigger_window(repo, user):
    kwargs = dict(user_id=user.id, trigger_type=TriggerType.CHECK_IN, message="hi", now=NOW, dedup_hours=24)

    first = await schedule_unique_trigger(repo, scheduled_for=NOW + timedelta(hours=60), **kwargs)
    near = await schedule_unique_trigger(repo, scheduled_for=NOW + timedelta(hours=40), **kwargs)
    # pending one is more than a day after this slot
    early = await schedule_unique_trigger(repo, scheduled_for=NOW + timedelta(hours=10), **kwargs)

    assert first is not None
    assert near is None
    assert early is not None


@pytest.mark.asyncio
async def test_dedup_ignores_other_types_and_sent_triggers(repo, user):
    kwargs = dict(user_id=user.id, message="hi", now=NOW, dedup_hours=24, scheduled_for=NOW + timedelta(hours=2))
    sent = await schedule_unique_trigger(repo, trigger_type=TriggerType.SUPPORT, **kwargs)
    await repo.claim_and_emit_trigger(sent.id, NOW)

    assert await schedule_unique_trigger(repo, trigger_type=TriggerType.SUPPORT, **kwargs) is not None
    assert await schedule_unique_trigger(repo, trigger_type=TriggerType.GOOD_NIGHT, **kwargs) is not None
