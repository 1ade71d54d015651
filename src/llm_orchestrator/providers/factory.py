"""Maps provider types to adapters and caches one adapter per provider config."""

from __future__ import annotations

import threading

import httpx

from llm_orchestrator.config import ProviderConfig, ProviderType
from llm_orchestrator.errors import ConfigurationError
from llm_orchestrator.ledger.pricing import PricingTable
from llm_orchestrator.providers.anthropic import AnthropicAdapter
from llm_orchestrator.providers.base import ProviderAdapter
from llm_orchestrator.providers.google import GoogleAdapter
from llm_orchestrator.providers.ollama import OllamaAdapter
from llm_orchestrator.providers.openai_compat import (
    GroqAdapter,
    MistralAdapter,
    OpenAICompatibleAdapter,
    PerplexityAdapter,
)
from llm_orchestrator.registry.credentials import CredentialStore

ADAPTER_TYPES: dict[ProviderType, type[ProviderAdapter]] = {
    ProviderType.OPENAI: OpenAICompatibleAdapter,
    ProviderType.ANTHROPIC: AnthropicAdapter,
    ProviderType.GOOGLE: GoogleAdapter,
    ProviderType.MISTRAL: MistralAdapter,
    ProviderType.OLLAMA: OllamaAdapter,
    ProviderType.GROQ: GroqAdapter,
    ProviderType.PERPLEXITY: PerplexityAdapter,
}


def create_adapter(
    config: ProviderConfig,
    credentials: CredentialStore,
    *,
    pricing: PricingTable | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    adapter_type = ADAPTER_TYPES.get(config.type)
    if adapter_type is None:
        raise ConfigurationError(f"Unsupported provider type: {config.type}", provider_id=config.id)
    return adapter_type(config, credentials, pricing=pricing, transport=transport)


class AdapterPool:
    """Hands out adapters keyed by provider id, rebuilt when the config changes."""

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        pricing: PricingTable | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credentials = credentials
        self._pricing = pricing or PricingTable()
        self._transport = transport
        self._adapters: dict[str, ProviderAdapter] = {}
        self._lock = threading.Lock()

    def get(self, config: ProviderConfig) -> ProviderAdapter:
        with self._lock:
            adapter = self._adapters.get(config.id)
            if adapter is None or adapter.config != config:
                adapter = create_adapter(
                    config, self._credentials, pricing=self._pricing, transport=self._transport
                )
                self._adapters[config.id] = adapter
            return adapter
