# ==============================
# Provider Contract
# ==============================
"""
Provider boundary for tiller/.

Rules:
- Providers speak tiller/contracts/llm_schema.py on the outside and their vendor
  wire format on the inside. Nothing outside providers/ knows a wire format.
- No env reads here. Configuration (keys, base urls) is injected.
- Failures raise ProviderError subclasses (providers/errors.py); retry lives in
  the ModelRouter, not here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional

from tiller.config.schema import ModelPricing
from tiller.contracts.llm_schema import (
    LLMRequest,
    LLMResponse,
    StreamEvent,
    StreamEventKind,
    TextBlock,
    ToolUseBlock,
)


class Provider(ABC):
    name: str = "provider"
    supports_streaming: bool = False
    supports_tools: bool = True
    supports_vision: bool = False

    # model -> context window in tokens
    context_windows: Dict[str, int] = {}
    # model -> USD per million tokens
    pricing: Dict[str, ModelPricing] = {}

    def __init__(self, *, default_model: Optional[str] = None, pricing: Optional[Dict[str, ModelPricing]] = None) -> None:
        self._default_model = default_model
        self.pricing = {**type(self).pricing, **(pricing or {})}

    @property
    def default_model(self) -> str:
        return self._default_model or (self.supported_models()[0] if self.supported_models() else "")

    def supported_models(self) -> List[str]:
        return list(self.context_windows)

    def validate_model(self, model: str) -> bool:
        return model in self.supported_models()

    def context_window(self, model: str) -> Optional[int]:
        return self.context_windows.get(model)

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        price = self.pricing.get(model)
        if price is None:
            return 0.0
        return (input_tokens / 1_000_000.0) * price.input_per_million + (
            output_tokens / 1_000_000.0
        ) * price.output_per_million

    @abstractmethod
    async def complete(self, request: LLMRequest) -> LLMResponse:
        raise NotImplementedError

    def stream(self, request: LLMRequest) -> AsyncIterator[StreamEvent]:
        """
        Async iterator of StreamEvents.

        Default: one complete() call replayed as events, for providers without
        native streaming.
        """
        return _replay(self, request)


async def _replay(provider: Provider, request: LLMRequest) -> AsyncIterator[StreamEvent]:
    response = await provider.complete(request)
    for block in response.content:
        if isinstance(block, TextBlock):
            yield StreamEvent(kind=StreamEventKind.TEXT_DELTA, text=block.text, response_id=response.id)
        elif isinstance(block, ToolUseBlock):
            yield StreamEvent(kind=StreamEventKind.TOOL_USE, tool_use=block, response_id=response.id)
    yield StreamEvent(kind=StreamEventKind.USAGE, usage=response.usage)
    yield StreamEvent(kind=StreamEventKind.STOP, stop_reason=response.stop_reason)
