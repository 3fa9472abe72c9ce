# ==============================
# OpenAI Provider
# ==============================
"""
OpenAI chat-completions adapter.

Important:
- HTTP goes through a requests.Session run in a worker thread (asyncio.to_thread),
  so the event loop stays free while a call is in flight.
- No environment reads here. api_key/api_base come from OpenAIConfig (the loader
  hydrates the key from env/secrets).
- HTTP status -> ProviderError mapping lives in providers/errors.py; this module
  only extracts the message and Retry-After.

Wire mapping:
- system prompt         -> leading {"role": "system"} message
- assistant tool uses   -> "tool_calls" with JSON-encoded arguments
- tool results          -> one {"role": "tool", "tool_call_id": ...} message each
- finish_reason         -> StopReason (stop/length/tool_calls)
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import requests

from tiller.config.schema import ModelPricing, OpenAIConfig
from tiller.contracts.llm_schema import (
    LLMRequest,
    LLMResponse,
    Message,
    StopReason,
    StreamEvent,
    StreamEventKind,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from tiller.models.providers.base import Provider
from tiller.models.providers.errors import (
    ProviderError,
    ProviderNetworkError,
    ProviderStreamError,
    ProviderTimeoutError,
    error_for_status,
    parse_retry_after,
)

logger = logging.getLogger("tiller.models.openai")

DEFAULT_API_BASE = "https://api.openai.com/v1"

_FINISH_REASONS: Dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
}


class OpenAIProvider(Provider):
    name = "openai"
    supports_streaming = True
    supports_tools = True
    supports_vision = False

    context_windows = {
        "gpt-4o-mini": 128_000,
        "gpt-4o": 128_000,
        "gpt-4-turbo": 128_000,
        "gpt-4": 8_192,
        "gpt-3.5-turbo": 16_385,
    }
    pricing = {
        "gpt-4o-mini": ModelPricing(input_per_million=0.15, output_per_million=0.60),
        "gpt-4o": ModelPricing(input_per_million=2.50, output_per_million=10.0),
        "gpt-4-turbo": ModelPricing(input_per_million=10.0, output_per_million=30.0),
        "gpt-4": ModelPricing(input_per_million=30.0, output_per_million=60.0),
        "gpt-3.5-turbo": ModelPricing(input_per_million=0.5, output_per_million=1.5),
    }

    def __init__(
        self,
        *,
        config: Optional[OpenAIConfig] = None,
        default_model: Optional[str] = None,
        pricing: Optional[Dict[str, ModelPricing]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(default_model=default_model, pricing=pricing)
        self.config = config or OpenAIConfig()
        self.session = session or requests.Session()
        self.base_url = (self.config.api_base or DEFAULT_API_BASE).rstrip("/")

    # ------------------------------
    # Wire mapping
    # ------------------------------

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        if self.config.org_id:
            headers["OpenAI-Organization"] = self.config.org_id
        return headers

    def to_wire(self, request: LLMRequest) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        for msg in request.messages:
            messages.extend(_wire_messages(msg))

        body: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
                }
                for t in request.tools
            ]
        if request.stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    def from_wire(self, payload: Dict[str, Any], *, model: str) -> LLMResponse:
        choices = payload.get("choices") or []
        choice = choices[0] if choices else {"message": {"content": ""}, "finish_reason": None}
        message = choice.get("message") or {}

        blocks: List[Any] = []
        text = message.get("content")
        if text:
            blocks.append(TextBlock(text=text))
        for call in message.get("tool_calls") or []:
            fn = call.get("function") or {}
            blocks.append(
                ToolUseBlock(id=call.get("id") or "", name=fn.get("name") or "", input=_parse_args(fn.get("arguments")))
            )

        usage = payload.get("usage") or {}
        return LLMResponse(
            id=payload.get("id") or "",
            model=payload.get("model") or model,
            content=blocks,
            stop_reason=_FINISH_REASONS.get(choice.get("finish_reason") or ""),
            usage=TokenUsage(
                input_tokens=int(usage.get("prompt_tokens") or 0),
                output_tokens=int(usage.get("completion_tokens") or 0),
            ),
        )

    # ------------------------------
    # Calls
    # ------------------------------

    async def complete(self, request: LLMRequest) -> LLMResponse:
        body = self.to_wire(request.model_copy(update={"stream": False}))
        logger.debug("openai request model=%s messages=%d", request.model, len(request.messages))
        resp = await asyncio.to_thread(self._post, body, False)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ProviderError(f"Invalid JSON from provider: {exc}", status=resp.status_code) from exc
        return self.from_wire(payload, model=request.model)

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamEvent]:
        body = self.to_wire(request.model_copy(update={"stream": True}))
        resp = await asyncio.to_thread(self._post, body, True)
        lines = resp.iter_lines(decode_unicode=True)
        decoder = _SSEDecoder()
        try:
            while True:
                line = await asyncio.to_thread(_next_line, lines)
                if line is None:
                    break
                for event in decoder.feed(line):
                    yield event
                if decoder.done:
                    break
        except requests.RequestException as exc:
            raise ProviderStreamError(f"Stream interrupted: {exc}") from exc
        finally:
            resp.close()
        for event in decoder.finish():
            yield event

    def _post(self, body: Dict[str, Any], stream: bool) -> requests.Response:
        url = f"{self.base_url}/chat/completions"
        try:
            resp = self.session.post(
                url,
                json=body,
                headers=self.headers(),
                timeout=self.config.timeout_seconds,
                stream=stream,
            )
        except requests.Timeout as exc:
            raise ProviderTimeoutError(f"Request timed out: {exc}") from exc
        except requests.ConnectionError as exc:
            raise ProviderNetworkError(f"Network error: {exc}") from exc
        except requests.RequestException as exc:
            raise ProviderNetworkError(str(exc)) from exc

        if resp.status_code >= 400:
            raise error_for_status(
                resp.status_code,
                _error_message(resp),
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            )
        return resp


# ==============================
# Helpers
# ==============================
def _wire_messages(msg: Message) -> List[Dict[str, Any]]:
    role = msg.role.value
    texts = [b.text for b in msg.content if isinstance(b, TextBlock)]
    uses = [b for b in msg.content if isinstance(b, ToolUseBlock)]
    results = [b for b in msg.content if isinstance(b, ToolResultBlock)]

    if uses:
        return [
            {
                "role": role,
                "content": "\n".join(texts) if texts else None,
                "tool_calls": [
                    {
                        "id": u.id,
                        "type": "function",
                        "function": {"name": u.name, "arguments": json.dumps(u.input)},
                    }
                    for u in uses
                ],
            }
        ]
    if results:
        out = [{"role": "tool", "tool_call_id": r.tool_use_id, "content": r.content} for r in results]
        if texts:
            out.append({"role": role, "content": "\n".join(texts)})
        return out
    return [{"role": role, "content": "\n".join(texts)}]


def _parse_args(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("could not parse tool arguments: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _error_message(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return (resp.text or "")[:500] or f"HTTP {resp.status_code}"
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return json.dumps(payload)[:500]


def _next_line(lines: Iterator[Any]) -> Optional[str]:
    line = next(lines, None)
    if isinstance(line, bytes):
        return line.decode("utf-8", errors="replace")
    return line


class _SSEDecoder:
    """Turns chat-completions SSE lines into StreamEvents; tool calls are buffered until the end."""

    def __init__(self) -> None:
        self.done = False
        self.response_id: Optional[str] = None
        self._calls: Dict[int, Dict[str, str]] = {}
        self._stop: Optional[StopReason] = None
        self._finished = False

    def feed(self, line: str) -> List[StreamEvent]:
        line = line.strip()
        if not line.startswith("data:"):
            return []
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            self.done = True
            return []
        try:
            chunk = json.loads(data)
        except ValueError:
            logger.warning("unparseable stream chunk: %.200s", data)
            return []

        events: List[StreamEvent] = []
        self.response_id = chunk.get("id") or self.response_id
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                events.append(
                    StreamEvent(kind=StreamEventKind.TEXT_DELTA, text=delta["content"], response_id=self.response_id)
                )
            for call in delta.get("tool_calls") or []:
                slot = self._calls.setdefault(int(call.get("index", 0)), {"id": "", "name": "", "arguments": ""})
                fn = call.get("function") or {}
                slot["id"] = call.get("id") or slot["id"]
                slot["name"] = fn.get("name") or slot["name"]
                slot["arguments"] += fn.get("arguments") or ""
            if choice.get("finish_reason"):
                self._stop = _FINISH_REASONS.get(choice["finish_reason"])
        usage = chunk.get("usage")
        if usage:
            events.append(
                StreamEvent(
                    kind=StreamEventKind.USAGE,
                    usage=TokenUsage(
                        input_tokens=int(usage.get("prompt_tokens") or 0),
                        output_tokens=int(usage.get("completion_tokens") or 0),
                    ),
                )
            )
        return events

    def finish(self) -> List[StreamEvent]:
        if self._finished:
            return []
        self._finished = True
        events = [
            StreamEvent(
                kind=StreamEventKind.TOOL_USE,
                tool_use=ToolUseBlock(id=c["id"], name=c["name"], input=_parse_args(c["arguments"])),
                response_id=self.response_id,
            )
            for _, c in sorted(self._calls.items())
        ]
        events.append(StreamEvent(kind=StreamEventKind.STOP, stop_reason=self._stop))
        return events
