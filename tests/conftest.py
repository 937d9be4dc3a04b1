"""
Shared fixtures: a scripted reasoning service, a frozen clock, the in-memory
repository, and a SQLite-backed repository for storage tests.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Type

import pytest
import pytest_asyncio

from companion_memory.clock import FrozenClock
from companion_memory.db.database import build_engine, init_db
from companion_memory.db.memory_repository import InMemoryRepository
from companion_memory.db.sql_repository import SqlAlchemyRepository
from companion_memory.errors import InferenceError
from companion_memory.events import EventBus
from companion_memory.schemas import MemoryLayers
from companion_memory.services.reasoning_service import ReasoningService, decode_response

# Tuesday afternoon: no morning or night greeting rules apply
NOW = datetime(2026, 3, 10, 14, 0, 0)


class FakeReasoningService(ReasoningService):
    """
    Reasoning double scripted per response model.

    `script(Model, *payloads)` queues one-shot responses; `always(Model, payload)`
    sets a fallback. A payload may be a dict (encoded as JSON), a raw string,
    an exception to raise, or a callable taking the user prompt and returning
    any of those. Unscripted models raise InferenceError, like a dead endpoint.
    """

    def __init__(self):
        self.queued: Dict[Type, List[Any]] = {}
        self.defaults: Dict[Type, Any] = {}
        self.calls: List[Tuple[Type, str]] = []

    def script(self, response_model: Type, *payloads: Any) -> None:
        self.queued.setdefault(response_model, []).extend(payloads)

    def always(self, response_model: Type, payload: Any) -> None:
        self.defaults[response_model] = payload

    def calls_for(self, response_model: Type) -> List[str]:
        return [prompt for model, prompt in self.calls if model is response_model]

    async def infer(self, system_prompt, user_prompt, response_model):
        self.calls.append((response_model, user_prompt))
        queue = self.queued.get(response_model)
        if queue:
            payload = queue.pop(0)
        elif response_model in self.defaults:
            payload = self.defaults[response_model]
        else:
            raise InferenceError(f"No scripted response for {response_model.__name__}")

        if callable(payload) and not isinstance(payload, type):
            payload = payload(user_prompt)
        if isinstance(payload, Exception):
            raise payload
        content = payload if isinstance(payload, str) else json.dumps(payload)
        return decode_response(content, response_model)


class RecordingDispatcher:
    def __init__(self, fail: bool = False):
        self.delivered: List[Tuple[str, str, Optional[str]]] = []
        self.fail = fail

    async def deliver(self, user_id, message, push_token=None) -> bool:
        if self.fail:
            raise RuntimeError("push gateway unavailable")
        self.delivered.append((user_id, message, push_token))
        return True

    async def close(self) -> None:
        pass


def memory_payload(
    event: str = "Job interview at Google",
    weight: float = 7,
    emotions: Optional[List[str]] = None,
    life_area: str = "career",
    people: Optional[List[str]] = None,
    location: Optional[str] = None,
    timing: Optional[str] = None,
    followup_message: Optional[str] = None,
    pattern_type: Optional[str] = None,
) -> Dict[str, Any]:
    """A complete four-layer memory candidate as the reasoning service returns it."""
    return {
        "surface": {
            "event": event,
            "date": None,
            "people_involved": people or [],
            "location": location,
        },
        "emotional": {
            "emotional_weight": weight,
            "emotions_involved": emotions if emotions is not None else ["nervous"],
            "emotional_trajectory": "anxious -> hopeful",
            "vulnerability_level": 5,
            "confidence_score": 80,
        },
        "contextual": {
            "life_area": life_area,
            "recurring_theme": False,
            "pattern_type": pattern_type,
            "related_memories": [],
            "significance": "major",
        },
        "predictive": {
            "likely_followup_need": "reassurance",
            "best_followup_timing": timing,
            "suggested_followup_angle": "ask how it went",
            "followup_message": followup_message,
            "trigger_keywords": [],
            "prediction_confidence": 75,
        },
    }


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def reasoning():
    return FakeReasoningService()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def user(repo, clock):
    return await repo.create_user("Aarav", clock.now() - timedelta(days=60), push_token="tok-1")


@pytest.fixture
def add_memory(repo, clock):
    """Store a memory directly, bypassing extraction."""

    async def _add(user_id: str, created_at: Optional[datetime] = None, **payload_kwargs):
        layers = MemoryLayers.model_validate(memory_payload(**payload_kwargs))
        return await repo.create_memory(user_id, layers, created_at or clock.now())

    return _add


@pytest_asyncio.fixture
async def sql_repo():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield SqlAlchemyRepository.from_engine(engine)
    await engine.dispose()


def hours_ago(hours: float) -> datetime:
    return NOW - timedelta(hours=hours)

