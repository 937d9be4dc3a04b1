"""
Scheduled Tasks for the Engagement Engine

Periodic background jobs:
1. Trigger dispatch - emit due proactive messages (every few minutes)
2. Engagement prediction - propose new triggers for active users (every few hours)
3. Confidence sweep - rescore unverified memories (nightly)

Uses APScheduler in-process. Each job runs with max_instances=1 and the
engine's own loops skip overlapping runs as well.
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from companion_memory.config import settings
from companion_memory.db.database import init_db
from companion_memory.engine import CognitiveEngine

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("companion.scheduled_tasks")

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None
_engine: Optional[CognitiveEngine] = None


def get_engine() -> CognitiveEngine:
    global _engine
    if _engine is None:
        _engine = CognitiveEngine.from_settings()
    return _engine


async def run_trigger_dispatch():
    """Emit every due trigger exactly once."""
    report = await get_engine().run_dispatch_tick()
    if report.dispatched or report.failed or report.stale:
        logger.info(
            f"Dispatch tick: {len(report.dispatched)} sent, {report.failed} failed, {report.stale} stale"
        )


async def run_engagement_prediction():
    """Predict proactive messages for recently active users."""
    logger.info("Starting scheduled engagement prediction...")
    report = await get_engine().run_prediction_tick()
    logger.info(
        f"Prediction task complete: {len(report.created)} triggers created for {report.users} users"
    )


async def run_confidence_sweep():
    """Rescore memories that are still not_verified."""
    logger.info("Starting scheduled confidence sweep...")
    scored = await get_engine().run_confidence_sweep()
    logger.info(f"Confidence sweep complete: {scored} memories rescored")


def setup_scheduler(
    dispatch_interval_minutes: int = settings.dispatch_interval_minutes,
    prediction_interval_hours: int = settings.prediction_interval_hours,
    confidence_sweep_hour: int = settings.confidence_sweep_cron_hour,
) -> AsyncIOScheduler:
    """
    Set up the APScheduler with engagement tasks.

    Args:
        dispatch_interval_minutes: How often to dispatch due triggers (default: every 5 minutes)
        prediction_interval_hours: How often to run prediction (default: every 6 hours)
        confidence_sweep_hour: Hour of the nightly confidence sweep (default: 3 AM)

    Returns:
        Configured scheduler instance
    """
    global scheduler

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_trigger_dispatch,
        trigger=IntervalTrigger(minutes=dispatch_interval_minutes),
        id="trigger_dispatch",
        name="Proactive Trigger Dispatch",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        run_engagement_prediction,
        trigger=IntervalTrigger(hours=prediction_interval_hours),
        id="engagement_prediction",
        name="Engagement Prediction",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        run_confidence_sweep,
        trigger=CronTrigger(hour=confidence_sweep_hour, minute=0),
        id="confidence_sweep",
        name="Memory Confidence Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info(
        f"Scheduler configured: dispatch every {dispatch_interval_minutes}min, "
        f"prediction every {prediction_interval_hours}h, "
        f"confidence sweep daily at {confidence_sweep_hour}:00"
    )

    return scheduler


def start_scheduler():
    """Start the scheduler if not already running."""
    global scheduler

    if not settings.enable_scheduler:
        logger.info("Scheduler disabled by configuration")
        return

    if scheduler is None:
        scheduler = setup_scheduler()

    if not scheduler.running:
        scheduler.start()
        logger.info("Engagement scheduler started")


async def stop_scheduler():
    """Stop the scheduler and let in-flight analysis finish."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Engagement scheduler stopped")
    if _engine is not None:
        await _engine.shutdown()


# Run every task once, manually
if __name__ == "__main__":
    async def main():
        await init_db()

        print("1. Dispatching due triggers...")
        await run_trigger_dispatch()

        print("2. Running engagement prediction...")
        await run_engagement_prediction()

        print("3. Running confidence sweep...")
        await run_confidence_sweep()

        await stop_scheduler()
        print("Done!")

    asyncio.run(main())
