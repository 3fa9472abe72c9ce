# ==============================
# Echo Provider (Offline)
# ==============================
"""
Deterministic offline provider.

Purpose:
- Lets the CLI run end to end without an API key.
- Proves the router/provider boundary is real.

Behavior:
- Never requests tools; answers with the last user text (or a summary of the last
  tool results) so a turn always ends after one round-trip.
"""

from __future__ import annotations

from uuid import uuid4

from tiller.contracts.llm_schema import LLMRequest, LLMResponse, Role, StopReason, TextBlock, TokenUsage
from tiller.models.providers.base import Provider

MAX_ECHO_CHARS = 400


class EchoProvider(Provider):
    name = "echo"
    supports_streaming = False
    supports_tools = False
    context_windows = {"echo": 1_000_000}

    async def complete(self, request: LLMRequest) -> LLMResponse:
        return LLMResponse(
            id=f"echo-{uuid4().hex[:12]}",
            model=request.model,
            content=[TextBlock(text=_echo(request))],
            stop_reason=StopReason.END_TURN,
            usage=TokenUsage(
                input_tokens=sum(len(m.text()) for m in request.messages) // 4,
                output_tokens=0,
            ),
        )


def _echo(request: LLMRequest) -> str:
    if not request.messages:
        return "EchoProvider: no messages provided."
    last = request.messages[-1]
    results = last.tool_results()
    if results:
        return f"EchoProvider: received {len(results)} tool result(s)."
    content = last.text().strip() if last.role == Role.USER else ""
    if len(content) > MAX_ECHO_CHARS:
        content = content[:MAX_ECHO_CHARS] + "..."
    return f"EchoProvider: {content}"
