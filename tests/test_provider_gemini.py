"""Gemini REST characterization tests."""

from __future__ import annotations

import pytest

from switchboard.errors import ErrorKind
from switchboard.models import (
    EmbeddingRequest,
    FinishReason,
    Message,
    NamedToolChoice,
    ThinkingConfig,
    ToolCall,
    ToolSpec,
)
from switchboard.providers.gemini import GeminiAdapter
from tests.conftest import GEMINI_MODEL
from tests.helpers import chat, config_for, json_response

pytestmark = pytest.mark.contract

ADAPTER = GeminiAdapter()
CONFIG = config_for("gemini")
WEATHER = ToolSpec(name="get_weather", parameters={"type": "object"})


def test_streaming_uses_sse_endpoint() -> None:
    http = ADAPTER.build_request(chat(GEMINI_MODEL, stream=True), CONFIG)
    assert http.url.endswith("/models/gemini-2.0-flash:streamGenerateContent?alt=sse")
    assert http.headers["Accept"] == "text/event-stream"


def test_generation_config() -> None:
    body = ADAPTER.transform_request(
        chat(GEMINI_MODEL, temperature=0.2, top_p=0.5, max_tokens=64, stop=("END",)), CONFIG
    )
    assert body["generationConfig"] == {
        "temperature": 0.2,
        "topP": 0.5,
        "maxOutputTokens": 64,
        "stopSequences": ["END"],
    }


def test_assistant_role_is_model_and_tool_results_are_named() -> None:
    call = ToolCall.create("call_1", "get_weather", '{"location":"Paris"}')
    body = ADAPTER.transform_request(
        chat(
            GEMINI_MODEL,
            Message.user("Weather?"),
            Message.assistant(tool_calls=[call]),
            Message.tool("call_1", '{"temp": 21}'),
            tools=(WEATHER,),
        ),
        CONFIG,
    )
    assert body["contents"][1] == {
        "role": "model",
        "parts": [{"functionCall": {"name": "get_weather", "args": {"location": "Paris"}}}],
    }
    assert body["contents"][2] == {
        "role": "user",
        "parts": [{"functionResponse": {"name": "get_weather", "response": {"temp": 21}}}],
    }
    assert body["tools"][0]["functionDeclarations"][0]["name"] == "get_weather"


def test_plain_text_tool_result_is_wrapped() -> None:
    call = ToolCall.create("call_1", "get_weather", {})
    body = ADAPTER.transform_request(
        chat(
            GEMINI_MODEL,
            Message.assistant(tool_calls=[call]),
            Message.tool("call_1", "sunny"),
        ),
        CONFIG,
    )
    assert body["contents"][1]["parts"][0]["functionResponse"]["response"] == {"content": "sunny"}


@pytest.mark.parametrize(
    ("choice", "config"),
    [
        ("auto", {"mode": "AUTO"}),
        ("none", {"mode": "NONE"}),
        ("required", {"mode": "ANY"}),
        (NamedToolChoice("get_weather"), {"mode": "ANY", "allowedFunctionNames": ["get_weather"]}),
    ],
)
def test_tool_config(choice, config) -> None:
    body = ADAPTER.transform_request(chat(GEMINI_MODEL, tools=(WEATHER,), tool_choice=choice), CONFIG)
    assert body["toolConfig"] == {"functionCallingConfig": config}


def test_thinking_budget() -> None:
    body = ADAPTER.transform_request(
        chat("gemini-2.5-flash", thinking=ThinkingConfig(budget_tokens=512)), CONFIG
    )
    assert body["generationConfig"]["thinkingConfig"] == {
        "thinkingBudget": 512,
        "includeThoughts": True,
    }
    dynamic = ADAPTER.transform_request(chat("gemini-2.5-flash", thinking=ThinkingConfig()), CONFIG)
    assert dynamic["generationConfig"]["thinkingConfig"]["thinkingBudget"] == -1


def test_reasoning_support_ignores_models_prefix() -> None:
    assert ADAPTER.supports_reasoning("models/gemini-2.5-flash")
    assert ADAPTER.supports_reasoning("gemini-2.5-pro")
    assert not ADAPTER.supports_reasoning("models/gemini-1.5-flash")


def test_thought_parts_become_reasoning() -> None:
    response = ADAPTER.transform_response(
        {
            "candidates": [
                {
                    "content": {
                        "role": "model",
                        "parts": [{"text": "pondering", "thought": True}, {"text": "Answer"}],
                    },
                    "finishReason": "MAX_TOKENS",
                }
            ],
            "modelVersion": "gemini-2.5-flash-001",
        },
        model="gemini-2.5-flash",
    )
    assert response.content == "Answer"
    assert response.message.reasoning_content == "pondering"
    assert response.model == "gemini-2.5-flash-001"
    assert response.choices[0].finish_reason is FinishReason.LENGTH


def test_blocked_prompt_is_content_filter() -> None:
    response = ADAPTER.transform_response({"promptFeedback": {"blockReason": "SAFETY"}})
    assert response.choices[0].finish_reason is FinishReason.CONTENT_FILTER
    assert response.content is None


def test_stream_chunk_carries_usage_only_with_finish() -> None:
    partial = ADAPTER.transform_streaming_chunk(
        {
            "candidates": [{"content": {"parts": [{"text": "Hel"}]}}],
            "usageMetadata": {"promptTokenCount": 2},
        }
    )
    assert partial is not None
    assert partial.content == "Hel"
    assert partial.usage is None

    final = ADAPTER.transform_streaming_chunk(
        {
            "candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 3, "totalTokenCount": 5},
        }
    )
    assert final is not None
    assert final.finish_reason is FinishReason.STOP
    assert final.usage is not None and final.usage.total_tokens == 5


def test_invalid_api_key_is_authentication() -> None:
    record = ADAPTER.classify_error(
        json_response(
            {"error": {"code": 400, "message": "API key not valid.", "status": "INVALID_ARGUMENT"}},
            400,
        )
    )
    assert record.kind is ErrorKind.AUTHENTICATION
    assert record.recoverable is False


def test_quota_429_with_retry_info_is_rate_limit() -> None:
    body = {
        "error": {
            "code": 429,
            "message": "Quota exceeded for metric generate_content_requests per minute",
            "details": [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "8s"}],
        }
    }
    record = ADAPTER.classify_error(json_response(body, 429))
    assert record.kind is ErrorKind.RATE_LIMIT
    assert record.retry_after == 8.0
    assert record.recoverable is True


def test_quota_429_without_retry_info_is_hard_quota() -> None:
    record = ADAPTER.classify_error(
        json_response({"error": {"code": 429, "message": "You exceeded your current quota"}}, 429)
    )
    assert record.kind is ErrorKind.QUOTA_EXCEEDED
    assert record.recoverable is False


def test_embeddings_use_batch_endpoint() -> None:
    request = EmbeddingRequest(model="text-embedding-004", input=("a", "b"), dimensions=8)
    http = ADAPTER.build_embedding_request(request, CONFIG)
    assert http.url.endswith("/models/text-embedding-004:batchEmbedContents")
    assert http.body == {
        "requests": [
            {"model": "models/text-embedding-004", "content": {"parts": [{"text": "a"}]}, "outputDimensionality": 8},
            {"model": "models/text-embedding-004", "content": {"parts": [{"text": "b"}]}, "outputDimensionality": 8},
        ]
    }
    response = ADAPTER.transform_embedding_response(
        {"embeddings": [{"values": [0.1, 0.2]}, {"values": [0.3]}]}, model="text-embedding-004"
    )
    assert [e.embedding for e in response.data] == [(0.1, 0.2), (0.3,)]
    assert response.model == "text-embedding-004"
