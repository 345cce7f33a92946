import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from stina.models.domain.extraction_domain import MeetingIntent
from stina.services.llm.openai_client import (
    LanguageModelError,
    MalformedResponseError,
    OpenAILanguageModel,
)

CHAT_URL = "https://api.openai.com/v1/chat/completions"

INTENT_JSON = json.dumps(
    {
        "initiator": {"name": "Sam Lee", "email": "sam@partner.io"},
        "invitees": [{"name": "Owner", "email": "owner@example.com"}],
        "meeting_intent": "Quarterly planning catch-up",
        "requested_timeframe": "early next week",
        "duration_minutes": 30,
        "location_hint": None,
    }
)


def _completion(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(total_tokens=42),
    )


def _model(*responses, max_retries=1):
    client = AsyncMock()
    client.chat.completions.create.side_effect = list(responses)
    return OpenAILanguageModel(api_key=None, client=client, max_retries=max_retries), client


@pytest.mark.asyncio
async def test_generate_structured_uses_json_mode():
    model, client = _model(_completion(INTENT_JSON))

    intent = await model.generate_structured("system", "user", MeetingIntent)

    assert intent.initiator.email == "sam@partner.io"
    assert intent.duration_minutes == 30
    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0] == {"role": "system", "content": "system"}


@pytest.mark.asyncio
async def test_schema_violation_is_malformed():
    model, _ = _model(_completion('{"meeting_intent": 7}'))

    with pytest.raises(MalformedResponseError) as exc:
        await model.generate_structured("system", "user", MeetingIntent)

    assert exc.value.raw_response == '{"meeting_intent": 7}'


@pytest.mark.asyncio
async def test_empty_content_is_malformed():
    model, _ = _model(_completion(""))

    with pytest.raises(MalformedResponseError):
        await model.generate_structured("system", "user", MeetingIntent)


@pytest.mark.asyncio
async def test_plan_with_tools_maps_tool_calls():
    call = SimpleNamespace(
        id="call_1",
        function=SimpleNamespace(name="check_schedule", arguments='{"duration_minutes": 30}'),
    )
    model, client = _model(_completion(None, [call]))
    tools = [{"type": "function", "function": {"name": "check_schedule"}}]

    result = await model.plan_with_tools([{"role": "user", "content": "hi"}], tools)

    assert result.text is None
    assert [(c.id, c.name) for c in result.tool_calls] == [("call_1", "check_schedule")]
    assert client.chat.completions.create.await_args.kwargs["tool_choice"] == "auto"


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    request = httpx.Request("POST", CHAT_URL)
    error = openai.BadRequestError(
        "context too long", response=httpx.Response(400, request=request), body=None
    )
    model, client = _model(error, max_retries=3)

    with pytest.raises(LanguageModelError) as exc:
        await model.plan_with_tools([], [])

    assert exc.value.recoverable is False
    assert client.chat.completions.create.await_count == 1


@pytest.mark.asyncio
async def test_connection_failure_surfaces_after_retries():
    error = openai.APIConnectionError(request=httpx.Request("POST", CHAT_URL))
    model, _ = _model(error, max_retries=1)

    with pytest.raises(LanguageModelError) as exc:
        await model.generate_structured("system", "user", MeetingIntent)

    assert exc.value.recoverable is True
    assert not isinstance(exc.value, MalformedResponseError)


def test_missing_api_key_is_rejected():
    with pytest.raises(LanguageModelError):
        OpenAILanguageModel(api_key=None)
