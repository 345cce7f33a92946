# stina/services/llm/openai_client.py
"""
OpenAI language model client.

Two calls: JSON-mode structured generation (extraction) and a function
calling round (orchestration planning). Transient provider failures are
retried here with exponential backoff; callers only see a final
LanguageModelError or a MalformedResponseError.
"""

import asyncio
import json
from typing import Any, Protocol, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from stina.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class LanguageModelError(Exception):
    """Provider failure that survived the client's retries."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


class MalformedResponseError(LanguageModelError):
    """The model answered, but not with something that fits the schema."""

    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message, recoverable=True)
        self.raw_response = raw_response


class RequestedToolCall(BaseModel):
    id: str
    name: str
    arguments_json: str = "{}"


class PlannerReply(BaseModel):
    text: str | None = None
    tool_calls: list[RequestedToolCall] = Field(default_factory=list)


class LanguageModel(Protocol):
    async def generate_structured(
        self, system_prompt: str, user_prompt: str, response_model: type[ModelT]
    ) -> ModelT: ...

    async def plan_with_tools(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> PlannerReply: ...


def parse_structured(raw: str, response_model: type[ModelT]) -> ModelT:
    """All-or-nothing: invalid JSON or any schema violation is malformed."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Response is not valid JSON: {e}", raw_response=raw) from e

    try:
        return response_model.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedResponseError(
            f"Response does not match {response_model.__name__}: {e.error_count()} error(s)",
            raw_response=raw,
        ) from e


class OpenAILanguageModel:
    """AsyncOpenAI wrapper with the retry policy used by both pipeline stages."""

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-4o",
        max_tokens: int = 1500,
        temperature: float = 0.2,
        timeout: float = 45.0,
        max_retries: int = 3,
        client: AsyncOpenAI | None = None,
    ):
        if client is None and not api_key:
            raise LanguageModelError("OPENAI_API_KEY not configured", recoverable=False)

        # Retries are ours, not the SDK's
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries

        logger.info("OpenAI client initialized", model=model, timeout=timeout)

    async def generate_structured(
        self, system_prompt: str, user_prompt: str, response_model: type[ModelT]
    ) -> ModelT:
        response = await self._call_openai_with_retry(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
        )

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise MalformedResponseError("Empty response from OpenAI API")

        return parse_structured(content.strip(), response_model)

    async def plan_with_tools(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> PlannerReply:
        response = await self._call_openai_with_retry(
            messages=messages, tools=tools, tool_choice="auto"
        )

        if not response.choices:
            raise MalformedResponseError("Empty response from OpenAI API")

        message = response.choices[0].message
        tool_calls = [
            RequestedToolCall(
                id=call.id,
                name=call.function.name,
                arguments_json=call.function.arguments or "{}",
            )
            for call in (message.tool_calls or [])
        ]
        return PlannerReply(text=message.content, tool_calls=tool_calls)

    async def _call_openai_with_retry(self, **request: Any):
        """Call the chat completions API, retrying transient failures."""
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                logger.debug(
                    "Calling OpenAI API",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    model=self.model,
                )

                response = await self.client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    **request,
                )

                logger.info(
                    "OpenAI API call successful",
                    attempt=attempt + 1,
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return response

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    attempt=attempt + 1,
                    wait_time=wait_time,
                    error=str(e),
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(wait_time)

            except (openai.APITimeoutError, openai.APIConnectionError) as e:
                last_error = e
                logger.warning(
                    "OpenAI API unreachable, retrying",
                    attempt=attempt + 1,
                    timeout=self.timeout,
                    error=str(e),
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(min(2**attempt, 30))

            except openai.APIStatusError as e:
                last_error = e
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    raise LanguageModelError(
                        f"OpenAI rejected the request: {e}", api_error=str(e), recoverable=False
                    ) from e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(min(2**attempt, 30))

        logger.error(
            "OpenAI API call failed after all retries",
            max_retries=self.max_retries,
            final_error=str(last_error),
        )
        raise LanguageModelError(
            f"OpenAI API failed after {self.max_retries} attempts",
            api_error=str(last_error),
        ) from last_error
