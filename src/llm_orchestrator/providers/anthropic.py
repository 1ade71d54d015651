"""Anthropic Messages API adapter."""

from __future__ import annotations

from typing import Any

import httpx

from llm_orchestrator.config import ProviderType
from llm_orchestrator.providers.base import ProviderAdapter, split_system_messages, usage_from
from llm_orchestrator.types import CompletionRequest, ProbeResult, TokenUsage

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(ProviderAdapter):
    provider_type = ProviderType.ANTHROPIC
    vendor_label = "Anthropic"
    default_base_url = "https://api.anthropic.com"

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = super()._headers(api_key)
        headers["anthropic-version"] = ANTHROPIC_VERSION
        if api_key:
            headers["x-api-key"] = api_key
        return headers

    async def _probe(self, client: httpx.AsyncClient, api_key: str | None) -> ProbeResult:
        response = await client.get("/v1/models")
        response.raise_for_status()
        models = tuple(item["id"] for item in response.json().get("data", []))
        if not models:
            return ProbeResult(ok=True, partial_reason="Anthropic reported no models")
        return ProbeResult(ok=True, models=models)

    async def _complete(
        self,
        client: httpx.AsyncClient,
        api_key: str | None,
        request: CompletionRequest,
        model: str,
    ) -> tuple[str, str, TokenUsage]:
        system, messages = split_system_messages(request.messages)
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if system:
            payload["system"] = system
        response = await client.post("/v1/messages", json=payload)
        response.raise_for_status()
        body = response.json()
        content = "".join(
            block.get("text", "") for block in body["content"] if block.get("type") == "text"
        )
        usage = usage_from(body.get("usage") or {}, "input_tokens", "output_tokens")
        return content, body.get("model", model), usage
