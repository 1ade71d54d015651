"""Local Ollama adapter. No credential; requires an explicit base URL."""

from __future__ import annotations

import httpx

from llm_orchestrator.config import ProviderType
from llm_orchestrator.providers.base import ProviderAdapter, usage_from
from llm_orchestrator.types import CompletionRequest, ProbeResult, TokenUsage


class OllamaAdapter(ProviderAdapter):
    provider_type = ProviderType.OLLAMA
    vendor_label = "Ollama"
    requires_credential = False

    async def _probe(self, client: httpx.AsyncClient, api_key: str | None) -> ProbeResult:
        response = await client.get("/api/tags")
        response.raise_for_status()
        models = tuple(item["name"] for item in response.json().get("models", []))
        if not models:
            return ProbeResult(
                ok=True,
                partial_reason="Ollama is running but no models are installed (run: ollama pull <model>)",
            )
        return ProbeResult(ok=True, models=models)

    async def _complete(
        self,
        client: httpx.AsyncClient,
        api_key: str | None,
        request: CompletionRequest,
        model: str,
    ) -> tuple[str, str, TokenUsage]:
        response = await client.post(
            "/api/chat",
            json={
                "model": model,
                "messages": request.messages,
                "stream": False,
                "options": {"temperature": request.temperature, "num_predict": request.max_tokens},
            },
        )
        response.raise_for_status()
        body = response.json()
        usage = usage_from(body, "prompt_eval_count", "eval_count")
        return body["message"]["content"], body.get("model", model), usage
