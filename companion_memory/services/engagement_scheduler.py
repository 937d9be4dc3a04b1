"""
Engagement Scheduler

Two loops, each guarded against overlapping runs:

- dispatch_due(): every few minutes, emits due triggers. The repository's
  claim flips `sent` and writes the message in one transaction, so a trigger
  produces at most one message no matter how many dispatchers race for it.
- predict_all(): every few hours, asks the Engagement Predictor for one
  candidate per recently active user and stores it unless a pending trigger
  of the same type already covers that time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from companion_memory.clock import Clock, get_clock
from companion_memory.config import Settings, settings as default_settings
from companion_memory.db.repository import Repository
from companion_memory.errors import SchedulingError
from companion_memory.events import EventBus, TriggerDispatched
from companion_memory.schemas import DeliveredTrigger, EngagementTrigger, TriggerType

logger = logging.getLogger("companion.scheduler")


async def schedule_unique_trigger(
    repository: Repository,
    *,
    user_id: str,
    trigger_type: TriggerType,
    scheduled_for: datetime,
    message: str,
    now: datetime,
    dedup_hours: int,
    confidence: float = 100.0,
    reason: Optional[str] = None,
    memory_id: Optional[str] = None,
) -> Optional[EngagementTrigger]:
    """
    Create a trigger unless an unsent one of the same type is already pending
    within `dedup_hours` of `scheduled_for`. Returns None when deduplicated.
    """
    window = timedelta(hours=dedup_hours)
    existing = await repository.find_pending_trigger(
        user_id, trigger_type, min(now, scheduled_for - window), scheduled_for + window,
    )
    if existing is not None:
        logger.info(
            f"[PREDICT] Skipping {trigger_type.value} for user {user_id}: "
            f"trigger {existing.id} already pending for {existing.scheduled_for.isoformat()}"
        )
        return None

    return await repository.create_trigger(
        user_id,
        trigger_type,
        scheduled_for,
        message,
        created_at=now,
        memory_id=memory_id,
        confidence=confidence,
        reason=reason,
    )


@dataclass
class DispatchReport:
    dispatched: List[DeliveredTrigger] = field(default_factory=list)
    already_sent: int = 0
    stale: int = 0
    failed: int = 0
    skipped: bool = False


@dataclass
class PredictionReport:
    users: int = 0
    created: List[EngagementTrigger] = field(default_factory=list)
    below_floor: int = 0
    deduplicated: int = 0
    failed: int = 0
    skipped: bool = False


class EngagementScheduler:

    def __init__(
        self,
        repository: Repository,
        predictor,
        dispatcher,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
        config: Optional[Settings] = None,
    ):
        self.repository = repository
        self.predictor = predictor
        self.dispatcher = dispatcher
        self.clock = clock or get_clock()
        self.bus = bus
        self.config = config or default_settings
        self._dispatch_running = False
        self._predict_running = False

    # ── Dispatch ───────────────────────────────────────────────────

    async def dispatch_due(self) -> DispatchReport:
        report = DispatchReport()
        if self._dispatch_running:
            logger.info("[DISPATCH] Previous dispatch still running; skipping this tick")
            report.skipped = True
            return report

        self._dispatch_running = True
        try:
            now = self.clock.now()
            stale_before = now - timedelta(hours=self.config.stale_trigger_hours)
            for trigger in await self.repository.expire_stale_triggers(stale_before, now):
                report.stale += 1
                logger.warning(
                    f"[DISPATCH] Stale {trigger.trigger_type.value} trigger {trigger.id} for user "
                    f"{trigger.user_id} (scheduled {trigger.scheduled_for.isoformat()}); expired, not sending"
                )

            due = await self.repository.list_due_triggers(now)
            if due:
                logger.info(f"[DISPATCH] {len(due)} due trigger(s)")

            for trigger in due:
                try:
                    delivered = await self.dispatch_trigger(trigger)
                except SchedulingError as e:
                    report.failed += 1
                    logger.error(f"[DISPATCH] Trigger {trigger.id} for user {trigger.user_id} failed: {e}")
                    continue
                except Exception as e:
                    # Left unsent; the next tick retries it
                    report.failed += 1
                    logger.error(
                        f"[DISPATCH] Trigger {trigger.id} for user {trigger.user_id} failed unexpectedly: {e}",
                        exc_info=True,
                    )
                    continue
                if delivered is None:
                    report.already_sent += 1
                else:
                    report.dispatched.append(delivered)
        finally:
            self._dispatch_running = False

        if report.dispatched or report.failed or report.stale:
            logger.info(
                f"[DISPATCH] Sent {len(report.dispatched)}, failed {report.failed}, "
                f"stale {report.stale}, already sent {report.already_sent}"
            )
        return report

    async def dispatch_trigger(self, trigger: EngagementTrigger) -> Optional[DeliveredTrigger]:
        """
        Claim one trigger and emit its message. Returns None when another
        dispatcher already claimed it. Raises SchedulingError when the user
        no longer exists; the trigger then stays unsent.
        """
        user = await self.repository.get_user(trigger.user_id)
        if user is None:
            raise SchedulingError(f"User {trigger.user_id} not found for trigger {trigger.id}")

        delivered = await self.repository.claim_and_emit_trigger(
            trigger.id,
            self.clock.now(),
            session_note=f"Proactive session started by {self.config.companion_name}",
        )
        if delivered is None:
            logger.debug(f"[DISPATCH] Trigger {trigger.id} already sent")
            return None

        logger.info(
            f"[DISPATCH] {trigger.trigger_type.value} trigger {trigger.id} emitted to user {user.id} "
            f"in session {delivered.session.id}"
        )
        try:
            await self.dispatcher.deliver(user.id, delivered.message.text, push_token=user.push_token)
        except Exception as e:
            # The message is already in the session; a failed push is not retried
            logger.error(f"[DISPATCH] Notification for trigger {trigger.id} failed: {e}")

        if self.bus is not None:
            self.bus.publish(TriggerDispatched(
                user_id=user.id, trigger_id=trigger.id, trigger_type=trigger.trigger_type.value,
            ))
        return delivered

    # ── Prediction ─────────────────────────────────────────────────

    async def predict_all(self) -> PredictionReport:
        report = PredictionReport()
        if self._predict_running:
            logger.info("[PREDICT] Previous prediction run still going; skipping")
            report.skipped = True
            return report

        self._predict_running = True
        try:
            since = self.clock.now() - timedelta(days=self.config.prediction_active_days)
            user_ids = await self.repository.list_active_user_ids(since)
            report.users = len(user_ids)
            logger.info(f"[PREDICT] Analyzing {len(user_ids)} active users")

            for user_id in user_ids:
                try:
                    await self._predict_into(user_id, report)
                except Exception as e:
                    report.failed += 1
                    logger.error(f"[PREDICT] Prediction for user {user_id} failed: {e}")
        finally:
            self._predict_running = False

        logger.info(
            f"[PREDICT] Created {len(report.created)} triggers "
            f"({report.below_floor} below floor, {report.deduplicated} duplicates, {report.failed} failed)"
        )
        return report

    async def predict_for_user(self, user_id: str) -> Optional[EngagementTrigger]:
        report = PredictionReport(users=1)
        await self._predict_into(user_id, report)
        return report.created[0] if report.created else None

    async def _predict_into(self, user_id: str, report: PredictionReport) -> None:
        candidate = await self.predictor.predict(user_id)
        if candidate is None:
            return
        if candidate.confidence < self.config.trigger_confidence_floor:
            report.below_floor += 1
            logger.debug(
                f"[PREDICT] Discarding {candidate.trigger_type.value} for user {user_id}: "
                f"confidence {candidate.confidence} below {self.config.trigger_confidence_floor}"
            )
            return

        trigger = await schedule_unique_trigger(
            self.repository,
            user_id=user_id,
            trigger_type=candidate.trigger_type,
            scheduled_for=candidate.scheduled_for,
            message=candidate.message,
            now=self.clock.now(),
            dedup_hours=self.config.trigger_dedup_hours,
            confidence=candidate.confidence,
            reason=candidate.reason,
            memory_id=candidate.memory_id,
        )
        if trigger is None:
            report.deduplicated += 1
            return
        report.created.append(trigger)
        logger.info(
            f"[PREDICT] Scheduled {trigger.trigger_type.value} for user {user_id} at "
            f"{trigger.scheduled_for.isoformat()} (confidence {trigger.confidence})"
        )
