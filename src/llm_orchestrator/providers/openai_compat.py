"""Adapters for vendors exposing the OpenAI chat-completions wire format."""

from __future__ import annotations

from typing import Any

import httpx

from llm_orchestrator.config import ProviderType
from llm_orchestrator.providers.base import ProviderAdapter, usage_from
from llm_orchestrator.types import CompletionRequest, ProbeResult, TokenUsage


class OpenAICompatibleAdapter(ProviderAdapter):
    provider_type = ProviderType.OPENAI
    vendor_label = "OpenAI"
    default_base_url = "https://api.openai.com/v1"
    # Vendors without a model listing endpoint probe with a one-token completion.
    lists_models = True

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = super()._headers(api_key)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _probe(self, client: httpx.AsyncClient, api_key: str | None) -> ProbeResult:
        if not self.lists_models:
            return await self._probe_with_completion(client)

        response = await client.get("/models")
        response.raise_for_status()
        models = tuple(item["id"] for item in response.json().get("data", []))
        if not models:
            return ProbeResult(ok=True, partial_reason=f"{self.vendor_label} reported no models")
        if self.config.models and not set(self.config.models) & set(models):
            return ProbeResult(
                ok=True,
                models=models,
                partial_reason=f"None of the configured models are offered by {self.vendor_label}",
            )
        return ProbeResult(ok=True, models=models)

    async def _probe_with_completion(self, client: httpx.AsyncClient) -> ProbeResult:
        model = self.config.default_model()
        if model is None:
            return ProbeResult(ok=True, partial_reason=f"No models configured for {self.vendor_label}")
        response = await client.post(
            "/chat/completions",
            json={"model": model, "messages": [{"role": "user", "content": "ping"}], "max_tokens": 1},
        )
        response.raise_for_status()
        return ProbeResult(ok=True, models=self.config.models)

    async def _complete(
        self,
        client: httpx.AsyncClient,
        api_key: str | None,
        request: CompletionRequest,
        model: str,
    ) -> tuple[str, str, TokenUsage]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": request.messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        response = await client.post("/chat/completions", json=payload)
        response.raise_for_status()
        body = response.json()
        content = body["choices"][0]["message"]["content"] or ""
        usage = usage_from(body.get("usage") or {}, "prompt_tokens", "completion_tokens")
        return content, body.get("model", model), usage


class MistralAdapter(OpenAICompatibleAdapter):
    provider_type = ProviderType.MISTRAL
    vendor_label = "Mistral"
    default_base_url = "https://api.mistral.ai/v1"


class GroqAdapter(OpenAICompatibleAdapter):
    provider_type = ProviderType.GROQ
    vendor_label = "Groq"
    default_base_url = "https://api.groq.com/openai/v1"


class PerplexityAdapter(OpenAICompatibleAdapter):
    provider_type = ProviderType.PERPLEXITY
    vendor_label = "Perplexity"
    default_base_url = "https://api.perplexity.ai"
    lists_models = False
