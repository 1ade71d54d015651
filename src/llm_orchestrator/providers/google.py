"""Google Gemini (generativelanguage) adapter."""

from __future__ import annotations

from typing import Any

import httpx

from llm_orchestrator.config import ProviderType
from llm_orchestrator.providers.base import ProviderAdapter, split_system_messages
from llm_orchestrator.types import CompletionRequest, ProbeResult, TokenUsage

_ROLE_MAP = {"user": "user", "assistant": "model"}


class GoogleAdapter(ProviderAdapter):
    provider_type = ProviderType.GOOGLE
    vendor_label = "Google"
    default_base_url = "https://generativelanguage.googleapis.com"

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = super()._headers(api_key)
        if api_key:
            headers["x-goog-api-key"] = api_key
        return headers

    async def _probe(self, client: httpx.AsyncClient, api_key: str | None) -> ProbeResult:
        response = await client.get("/v1beta/models")
        response.raise_for_status()
        models = tuple(
            item["name"].removeprefix("models/") for item in response.json().get("models", [])
        )
        if not models:
            return ProbeResult(ok=True, partial_reason="Google reported no models")
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
            "contents": [
                {"role": _ROLE_MAP.get(m["role"], "user"), "parts": [{"text": m["content"]}]}
                for m in messages
            ],
            "generationConfig": {
                "maxOutputTokens": request.max_tokens,
                "temperature": request.temperature,
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        response = await client.post(f"/v1beta/models/{model}:generateContent", json=payload)
        response.raise_for_status()
        body = response.json()
        parts = body["candidates"][0]["content"]["parts"]
        content = "".join(part.get("text", "") for part in parts)
        meta = body.get("usageMetadata") or {}
        prompt = int(meta.get("promptTokenCount") or 0)
        completion = int(meta.get("candidatesTokenCount") or 0)
        total = int(meta.get("totalTokenCount") or prompt + completion)
        return content, model, TokenUsage(prompt=prompt, completion=completion, total=total)
