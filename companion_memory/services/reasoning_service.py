"""
Reasoning Service - structured JSON inference over an OpenAI-compatible API

Provides:
- A narrow `infer(system_prompt, user_prompt, response_model)` contract
- JSON-mode completions with retries on transient errors
- A bounded timeout on every call
- Strict schema-validated decoding, the single place where a bad payload
  becomes an InferenceError
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type, TypeVar

from openai import AsyncOpenAI, APIError, RateLimitError, APIConnectionError
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from companion_memory.config import settings
from companion_memory.errors import InferenceError

logger = logging.getLogger("companion.reasoning")

T = TypeVar("T", bound=BaseModel)


def strip_code_fence(content: str) -> str:
    """Remove a surrounding ```json ... ``` markdown fence, if any."""
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def decode_response(content: Optional[str], response_model: Type[T]) -> T:
    """Decode a raw completion into `response_model` or raise InferenceError."""
    content = strip_code_fence(content or "")
    if not content:
        raise InferenceError(f"Empty response for {response_model.__name__}")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise InferenceError(f"Malformed JSON for {response_model.__name__}: {e}") from e
    if not isinstance(payload, dict):
        raise InferenceError(f"Expected a JSON object for {response_model.__name__}, got {type(payload).__name__}")
    try:
        return response_model.model_validate(payload)
    except PydanticValidationError as e:
        raise InferenceError(
            f"Response does not match {response_model.__name__}: {e.error_count()} error(s)"
        ) from e


class ReasoningService(ABC):
    """Language reasoning collaborator. Any failure surfaces as InferenceError."""

    @abstractmethod
    async def infer(self, system_prompt: str, user_prompt: str, response_model: Type[T]) -> T:
        ...


class OpenAIReasoningService(ReasoningService):
    """
    Reasoning over the OpenAI chat completions API (or any compatible
    endpoint via `base_url`, e.g. Groq).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.client = AsyncOpenAI(
            api_key=api_key or settings.openai_api_key,
            base_url=base_url or settings.reasoning_base_url,
        )
        self.model = model or settings.reasoning_model
        self.temperature = temperature if temperature is not None else settings.reasoning_temperature
        self.max_tokens = max_tokens or settings.reasoning_max_tokens
        self.timeout_seconds = timeout_seconds or settings.reasoning_timeout_seconds
        self.max_retries = max_retries or settings.reasoning_max_retries

    async def _complete_json(self, messages: List[Dict[str, str]]) -> str:
        """Run a JSON-mode completion, retrying rate limits and connection errors."""
        retry_delay = 1.0

        for attempt in range(self.max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                )
                return response.choices[0].message.content or ""

            except (RateLimitError, APIConnectionError) as e:
                if attempt < self.max_retries - 1:
                    wait_time = retry_delay * (2 ** attempt)
                    logger.warning(f"Reasoning call failed ({type(e).__name__}), retrying in {wait_time}s: {e}")
                    await asyncio.sleep(wait_time)
                else:
                    raise

        raise InferenceError("Reasoning call exhausted retries")

    async def infer(self, system_prompt: str, user_prompt: str, response_model: Type[T]) -> T:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            content = await asyncio.wait_for(self._complete_json(messages), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise InferenceError(
                f"Reasoning call for {response_model.__name__} timed out after {self.timeout_seconds}s"
            ) from e
        except APIError as e:
            logger.error(f"Reasoning API error for {response_model.__name__}: {e}")
            raise InferenceError(f"Reasoning API error: {e}") from e

        return decode_response(content, response_model)


def to_prompt_json(data: Any) -> str:
    """Compact JSON for embedding records into prompts."""
    return json.dumps(data, ensure_ascii=False, default=str)


# Singleton instance
_reasoning_service: Optional[ReasoningService] = None


def get_reasoning_service() -> ReasoningService:
    """Get the reasoning service singleton."""
    global _reasoning_service
    if _reasoning_service is None:
        _reasoning_service = OpenAIReasoningService()
    return _reasoning_service
