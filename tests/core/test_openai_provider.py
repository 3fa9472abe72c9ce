# ==============================
# OpenAI Provider + Model Router Tests
# ==============================
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from tiller.config.schema import ModelPricing, OpenAIConfig, Settings
from tiller.contracts.llm_schema import (
    LLMRequest,
    Message,
    Role,
    StopReason,
    StreamAccumulator,
    StreamEventKind,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)
from tiller.models.providers.errors import (
    ProviderAuthError,
    ProviderNetworkError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderTimeoutError,
)
from tiller.models.providers.openai_provider import OpenAIProvider
from tiller.models.router import ModelRouter
from tiller.utils.retry import RetryPolicy


class FakeHTTPResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        *,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        lines: Optional[List[str]] = None,
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)
        self.headers = headers or {}
        self._lines = lines or []
        self.closed = False

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("not json")
        return self._payload

    def iter_lines(self, decode_unicode: bool = False):
        return iter(self._lines)

    def close(self) -> None:
        self.closed = True


class FakeHTTPSession:
    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.posts: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeHTTPResponse:
        self.posts.append({"url": url, **kwargs})
        out = self.outcomes.pop(0)
        if isinstance(out, BaseException):
            raise out
        return out


def _completion(content: Optional[str] = "hi there", *, tool_calls: Optional[List[Dict[str, Any]]] = None, finish: str = "stop") -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "message": message, "finish_reason": finish}],
        "usage": {"prompt_tokens": 11, "completion_tokens": 4},
    }


def _provider(*outcomes: Any, **config: Any) -> OpenAIProvider:
    cfg = OpenAIConfig(api_key="sk-test", **config)
    return OpenAIProvider(config=cfg, default_model="gpt-4o-mini", session=FakeHTTPSession(*outcomes))


def _request(**overrides: Any) -> LLMRequest:
    fields: Dict[str, Any] = {"model": "gpt-4o-mini", "messages": [Message.user("hello")]}
    fields.update(overrides)
    return LLMRequest(**fields)


# ==============================
# Wire Mapping
# ==============================
def test_to_wire_maps_roles_tools_and_results() -> None:
    provider = _provider()
    request = _request(
        system="be brief",
        messages=[
            Message.user("list files"),
            Message(
                role=Role.ASSISTANT,
                content=[TextBlock(text="checking"), ToolUseBlock(id="call_1", name="ls", input={"path": "."})],
            ),
            Message(role=Role.USER, content=[ToolResultBlock(tool_use_id="call_1", content="a.py")]),
        ],
        tools=[ToolDefinition(name="ls", description="list", input_schema={"type": "object"})],
    )

    body = provider.to_wire(request)

    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "list files"},
        {
            "role": "assistant",
            "content": "checking",
            "tool_calls": [
                {"id": "call_1", "type": "function", "function": {"name": "ls", "arguments": '{"path": "."}'}}
            ],
        },
        {"role": "tool", "tool_call_id": "call_1", "content": "a.py"},
    ]
    assert body["tools"][0]["function"]["name"] == "ls"
    assert "stream" not in body


def test_from_wire_parses_tool_calls_and_usage() -> None:
    payload = _completion(
        None,
        tool_calls=[
            {"id": "c1", "type": "function", "function": {"name": "grep", "arguments": '{"pattern": "TODO"}'}},
            {"id": "c2", "type": "function", "function": {"name": "ls", "arguments": "not json"}},
        ],
        finish="tool_calls",
    )

    res = _provider().from_wire(payload, model="gpt-4o-mini")

    assert res.stop_reason == StopReason.TOOL_USE
    assert [(u.id, u.name, u.input) for u in res.tool_uses()] == [("c1", "grep", {"pattern": "TODO"}), ("c2", "ls", {})]
    assert res.usage.total_tokens == 15


# ==============================
# Calls
# ==============================
@pytest.mark.asyncio
async def test_complete_posts_with_auth_headers() -> None:
    provider = _provider(FakeHTTPResponse(200, _completion()), org_id="org-9", api_base="https://proxy.local/v1/")

    res = await provider.complete(_request())

    assert res.text() == "hi there"
    assert res.stop_reason == StopReason.END_TURN
    (post,) = provider.session.posts
    assert post["url"] == "https://proxy.local/v1/chat/completions"
    assert post["headers"]["Authorization"] == "Bearer sk-test"
    assert post["headers"]["OpenAI-Organization"] == "org-9"
    assert post["stream"] is False
    assert post["json"]["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, error_type",
    [
        (FakeHTTPResponse(401, {"error": {"message": "bad key"}}), ProviderAuthError),
        (FakeHTTPResponse(503, None, text="upstream down"), ProviderServerError),
        (FakeHTTPResponse(504, None, text=""), ProviderTimeoutError),
        (requests.ConnectionError("refused"), ProviderNetworkError),
        (requests.Timeout("slow"), ProviderTimeoutError),
    ],
)
async def test_transport_failures_map_to_provider_errors(response: Any, error_type: type) -> None:
    with pytest.raises(error_type):
        await _provider(response).complete(_request())


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after() -> None:
    response = FakeHTTPResponse(429, {"error": {"message": "slow down"}}, headers={"Retry-After": "2"})
    with pytest.raises(ProviderRateLimitError) as info:
        await _provider(response).complete(_request())
    assert info.value.retry_after == 2.0
    assert str(info.value) == "slow down"


def _sse(chunk: Dict[str, Any]) -> str:
    return "data: " + json.dumps(chunk)


@pytest.mark.asyncio
async def test_stream_decodes_text_tool_calls_and_usage() -> None:
    lines = [
        ": keep-alive",
        _sse({"id": "c9", "choices": [{"delta": {"content": "Hel"}}]}),
        "",
        _sse({"id": "c9", "choices": [{"delta": {"content": "lo"}}]}),
        _sse({"id": "c9", "choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "ls", "arguments": '{"pa'}}]}}]}),
        _sse({"id": "c9", "choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'th": "."}'}}]}, "finish_reason": "tool_calls"}]}),
        _sse({"id": "c9", "choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 7}}),
        "data: [DONE]",
    ]
    http = FakeHTTPResponse(200, None, text="", lines=lines)
    provider = _provider(http)

    events = [e async for e in provider.stream(_request())]

    assert [e.kind for e in events] == [
        StreamEventKind.TEXT_DELTA,
        StreamEventKind.TEXT_DELTA,
        StreamEventKind.USAGE,
        StreamEventKind.TOOL_USE,
        StreamEventKind.STOP,
    ]
    assert http.closed
    assert provider.session.posts[0]["json"]["stream"] is True

    acc = StreamAccumulator(model="gpt-4o-mini")
    for event in events:
        acc.add(event)
    res = acc.build()
    assert res.id == "c9"
    assert res.text() == "Hello"
    assert [(u.id, u.name, u.input) for u in res.tool_uses()] == [("call_1", "ls", {"path": "."})]
    assert res.stop_reason == StopReason.TOOL_USE
    assert (res.usage.input_tokens, res.usage.output_tokens) == (12, 7)


# ==============================
# Router
# ==============================
@pytest.mark.asyncio
async def test_router_retries_transient_server_error() -> None:
    provider = _provider(FakeHTTPResponse(503, None, text="busy"), FakeHTTPResponse(200, _completion("recovered")))
    router = ModelRouter(
        providers={"openai": provider},
        default_provider="openai",
        default_model="gpt-4o",
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.001, jitter=0.0),
    )

    res = await router.complete(_request(model=""))

    assert res.text() == "recovered"
    assert [p["json"]["model"] for p in provider.session.posts] == ["gpt-4o", "gpt-4o"]


@pytest.mark.asyncio
async def test_router_does_not_retry_auth_failure() -> None:
    provider = _provider(FakeHTTPResponse(401, {"error": {"message": "nope"}}))
    router = ModelRouter(providers={"openai": provider}, default_provider="openai", retry_policy=RetryPolicy(jitter=0.0))
    with pytest.raises(ProviderAuthError):
        await router.complete(_request())
    assert len(provider.session.posts) == 1


def test_cost_uses_builtin_and_configured_pricing() -> None:
    provider = OpenAIProvider(
        config=OpenAIConfig(api_key="k"),
        pricing={"custom-model": ModelPricing(input_per_million=1.0, output_per_million=2.0)},
        session=FakeHTTPSession(),
    )
    assert provider.calculate_cost("gpt-4o", 1_000_000, 1_000_000) == pytest.approx(12.5)
    assert provider.calculate_cost("custom-model", 500_000, 250_000) == pytest.approx(1.0)
    assert provider.calculate_cost("mystery", 10, 10) == 0.0


def test_router_from_settings_falls_back_to_echo_without_key() -> None:
    router = ModelRouter.from_settings(Settings())
    assert router.default_provider == "echo"
    assert router.select().model == "echo"
    assert "openai" not in router.providers


def test_router_from_settings_wires_openai_with_key() -> None:
    settings = Settings.model_validate({"models": {"openai": {"api_key": "sk-x"}, "routing": {"default_model": "gpt-4o"}}})
    router = ModelRouter.from_settings(settings)
    assert router.default_provider == "openai"
    assert router.select().model == "gpt-4o"
    assert router.context_window() == 128_000
