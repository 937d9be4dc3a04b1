"""
Event Bus: typed in-process pub/sub between the chat path and background analysis.

Publishing never blocks the caller. Sync handlers run inline; coroutine
handlers are scheduled as background tasks. A failing handler is logged and
recorded as a dead letter without affecting its siblings or the publisher.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set, Type, TypeVar

logger = logging.getLogger("companion.event_bus")


class Event:
    """Base class for bus events. Concrete events are frozen dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": type(self).__name__, **asdict(self)}


@dataclass(frozen=True)
class AnalyzeInteraction(Event):
    """A chat turn or session finished and is ready for background analysis."""
    user_id: str
    session_id: str
    message: str = ""
    reply: str = ""


@dataclass(frozen=True)
class MemoryFormed(Event):
    """A four-layer memory was persisted."""
    user_id: str
    memory_id: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class StageChanged(Event):
    """The recomputed relationship stage differs from the stored one."""
    user_id: str
    previous_stage: Optional[str]
    stage: str
    intimacy_score: int


@dataclass(frozen=True)
class TriggerDispatched(Event):
    """A proactive message was emitted for a trigger."""
    user_id: str
    trigger_id: str
    trigger_type: str


E = TypeVar("E", bound=Event)


@dataclass
class Subscription:
    event_type: Type[Event]
    handler: Callable
    subscriber_id: str = ""
    is_async: bool = False


class EventBus:
    """
    Process-local event bus keyed by event class.

    Delivery is "whoever is subscribed at publish time". Every consumer is an
    idempotent recomputation, so there is no replay or persistence.
    """

    def __init__(self, dead_letter_size: int = 100):
        self._subscriptions: Dict[Type[Event], List[Subscription]] = {}
        self._dead_letters: deque = deque(maxlen=dead_letter_size)
        self._pending: Set[asyncio.Task] = set()
        self._stats = {
            "published": 0,
            "delivered": 0,
            "failed": 0,
        }

    def subscribe(
        self,
        event_type: Type[E],
        handler: Callable[[E], Any],
        subscriber_id: str = "",
    ) -> Subscription:
        """Register a handler for an event type for the lifetime of the bus."""
        sub = Subscription(
            event_type=event_type,
            handler=handler,
            subscriber_id=subscriber_id,
            is_async=asyncio.iscoroutinefunction(handler),
        )
        self._subscriptions.setdefault(event_type, []).append(sub)
        logger.debug(f"Subscribed {subscriber_id or 'anonymous'} to {event_type.__name__}")
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        subs = self._subscriptions.get(subscription.event_type, [])
        if subscription in subs:
            subs.remove(subscription)
            return True
        return False

    def publish(self, event: Event) -> int:
        """Fan out an event. Returns the number of handlers invoked or scheduled."""
        self._stats["published"] += 1
        notified = 0

        for sub in list(self._subscriptions.get(type(event), [])):
            try:
                if sub.is_async:
                    task = asyncio.get_running_loop().create_task(sub.handler(event))
                    self._pending.add(task)
                    task.add_done_callback(partial(self._on_task_done, event, sub))
                else:
                    sub.handler(event)
                    self._stats["delivered"] += 1
                notified += 1
            except Exception as e:
                self._record_failure(event, sub, e)

        return notified

    def _on_task_done(self, event: Event, sub: Subscription, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._record_failure(event, sub, error)
        else:
            self._stats["delivered"] += 1

    def _record_failure(self, event: Event, sub: Subscription, error: BaseException) -> None:
        logger.error(
            f"Event handler error for {type(event).__name__} in "
            f"{sub.subscriber_id or sub.handler!r}: {error}"
        )
        self._dead_letters.append({
            "event": event.to_dict(),
            "error": str(error),
            "subscriber": sub.subscriber_id,
            "failed_at": time.time(),
        })
        self._stats["failed"] += 1

    async def drain(self) -> None:
        """Wait for every in-flight async handler, including ones they publish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_dead_letters(self, limit: int = 20) -> List[dict]:
        """Get recent failed deliveries."""
        return list(self._dead_letters)[-limit:]

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "event_types": [t.__name__ for t in self._subscriptions],
            "total_subscriptions": sum(len(s) for s in self._subscriptions.values()),
            "pending": len(self._pending),
            "dead_letters": len(self._dead_letters),
        }


# Singleton
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the global event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
