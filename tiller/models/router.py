# ==============================
# Model Router
# ==============================
"""
Model routing for tiller/.

Goals:
- Centralize provider + model selection behind a single interface.
- Avoid vendor-specific imports outside providers/ (except in from_settings wiring).
- No env reads here. Configuration is injected by the caller.

Retry:
- complete(...) runs under the provider RetryPolicy (retry_async).
- stream(...) is re-opened only before its first event (retry_stream); after the
  first event any failure reaches the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from tiller.config.schema import Settings
from tiller.contracts.llm_schema import LLMRequest, LLMResponse, StreamEvent
from tiller.models.providers.base import Provider
from tiller.models.providers.echo_provider import EchoProvider
from tiller.models.providers.openai_provider import OpenAIProvider
from tiller.utils.retry import RetryPolicy, retry_async, retry_stream

logger = logging.getLogger("tiller.models")


@dataclass(frozen=True)
class ModelSelection:
    provider: str
    model: str


class ModelRouter:
    def __init__(
        self,
        *,
        providers: Dict[str, Provider],
        default_provider: str,
        default_model: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        if default_provider not in providers:
            raise KeyError(f"Unknown model provider: {default_provider}")
        self.providers = providers
        self.default_provider = default_provider
        self.default_model = default_model
        self.retry_policy = retry_policy or RetryPolicy()

    def select(self, *, override_model: Optional[str] = None, override_provider: Optional[str] = None) -> ModelSelection:
        provider = override_provider or self.default_provider
        model = override_model or self.default_model or self._get_provider(provider).default_model
        return ModelSelection(provider=provider, model=model)

    def provider_for(self, selection: Optional[ModelSelection] = None) -> Provider:
        return self._get_provider((selection or self.select()).provider)

    # ------------------------------
    # Calls
    # ------------------------------

    async def complete(self, request: LLMRequest, *, selection: Optional[ModelSelection] = None) -> LLMResponse:
        sel = selection or self.select(override_model=request.model or None)
        provider = self._get_provider(sel.provider)
        req = request.model_copy(update={"model": sel.model})
        return await retry_async(
            lambda: provider.complete(req),
            self.retry_policy,
            what=f"{sel.provider}.complete",
        )

    def stream(self, request: LLMRequest, *, selection: Optional[ModelSelection] = None) -> AsyncIterator[StreamEvent]:
        sel = selection or self.select(override_model=request.model or None)
        provider = self._get_provider(sel.provider)
        req = request.model_copy(update={"model": sel.model, "stream": True})
        return retry_stream(lambda: provider.stream(req), self.retry_policy, what=f"{sel.provider}.stream")

    def supports_streaming(self, selection: Optional[ModelSelection] = None) -> bool:
        return self.provider_for(selection).supports_streaming

    def context_window(self, selection: Optional[ModelSelection] = None) -> Optional[int]:
        sel = selection or self.select()
        return self._get_provider(sel.provider).context_window(sel.model)

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int, *, provider: Optional[str] = None) -> float:
        return self._get_provider(provider or self.default_provider).calculate_cost(model, input_tokens, output_tokens)

    def _get_provider(self, name: str) -> Provider:
        p = self.providers.get(name)
        if p is None:
            raise KeyError(f"Unknown model provider: {name}")
        return p

    # ------------------------------
    # Wiring
    # ------------------------------

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelRouter":
        routing = settings.models.routing
        pricing = settings.models.pricing
        providers: Dict[str, Provider] = {"echo": EchoProvider(default_model="echo")}
        if settings.models.openai.api_key:
            providers["openai"] = OpenAIProvider(
                config=settings.models.openai,
                default_model=routing.default_model,
                pricing=pricing,
            )

        default_provider = routing.default_provider
        default_model: Optional[str] = routing.default_model
        if default_provider not in providers:
            logger.warning("provider %s is not configured (no API key); falling back to echo", default_provider)
            default_provider = "echo"
            default_model = "echo"

        return cls(
            providers=providers,
            default_provider=default_provider,
            default_model=default_model,
            retry_policy=RetryPolicy.from_config(settings.retry.provider),
        )
