"""Per-model token pricing used to price completions."""

from __future__ import annotations

from dataclasses import dataclass, field

from llm_orchestrator.config import ProviderType

# USD per 1K tokens, blended prompt/completion.
DEFAULT_RATES_PER_1K: dict[str, float] = {
    "gpt-4o": 0.005,
    "gpt-4o-mini": 0.00015,
    "gpt-4-turbo": 0.01,
    "gpt-3.5-turbo": 0.0015,
    "claude-3-5-sonnet-20241022": 0.003,
    "claude-3-5-haiku-20241022": 0.001,
    "claude-3-haiku-20240307": 0.00025,
    "gemini-1.5-pro": 0.00125,
    "gemini-1.5-flash": 0.000075,
    "mistral-large-latest": 0.004,
    "mistral-small-latest": 0.001,
    "codestral-latest": 0.001,
}


@dataclass(slots=True)
class PricingTable:
    """Simple token pricing model (USD per 1K tokens)."""

    rates_per_1k: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RATES_PER_1K))
    fallback_per_1k: float = 0.001
    free_provider_types: frozenset[ProviderType] = frozenset({ProviderType.OLLAMA})

    def estimate_cost(self, provider_type: ProviderType, model: str, total_tokens: int) -> float:
        if provider_type in self.free_provider_types:
            return 0.0
        rate = self.rates_per_1k.get(model, self.fallback_per_1k)
        return (total_tokens / 1000.0) * rate
