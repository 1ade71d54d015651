"""Provider registry: the single writer of provider configuration."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from llm_orchestrator.config import ProviderConfig, ProviderType
from llm_orchestrator.errors import InputValidationError, NotFoundError

logger = logging.getLogger(__name__)

RegistryListener = Callable[[str], None]


class ProviderRegistry:
    """Holds provider configs in registration order.

    Updating an existing id keeps its original registration slot, so priority
    ties keep resolving the same way after an admin edit. Every mutation bumps
    ``version`` and notifies listeners with the affected provider id.
    """

    def __init__(self, configs: list[ProviderConfig] | None = None) -> None:
        self._lock = threading.Lock()
        self._configs: dict[str, ProviderConfig] = {}
        self._order: dict[str, int] = {}
        self._next_slot = 0
        self._listeners: list[RegistryListener] = []
        self.version = 0
        for config in configs or []:
            self.upsert(config)

    def add_listener(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    def list_all(self) -> list[ProviderConfig]:
        with self._lock:
            return sorted(self._configs.values(), key=lambda cfg: self._order[cfg.id])

    def list_enabled(self) -> list[ProviderConfig]:
        return [config for config in self.list_all() if config.enabled]

    def get(self, provider_id: str) -> ProviderConfig:
        config = self._configs.get(provider_id)
        if config is None:
            raise NotFoundError(f"Provider not found: {provider_id}")
        return config

    def registration_index(self, provider_id: str) -> int:
        return self._order.get(provider_id, self._next_slot)

    def upsert(self, config: ProviderConfig | dict[str, Any]) -> ProviderConfig:
        """Validate and store a provider config.

        Raises:
            InputValidationError: If the config violates priority, ceiling or
                provider-type constraints.
        """
        validated = _validate(config)
        with self._lock:
            if validated.id not in self._order:
                self._order[validated.id] = self._next_slot
                self._next_slot += 1
            self._configs[validated.id] = validated
            self.version += 1
        logger.info(
            "Provider %s upserted (type=%s enabled=%s priority=%d)",
            validated.id,
            validated.type.value,
            validated.enabled,
            validated.priority,
        )
        self._notify(validated.id)
        return validated

    def set_enabled(self, provider_id: str, enabled: bool) -> ProviderConfig:
        return self.upsert(self.get(provider_id).model_copy(update={"enabled": enabled}))

    def remove(self, provider_id: str) -> None:
        with self._lock:
            if provider_id not in self._configs:
                raise NotFoundError(f"Provider not found: {provider_id}")
            del self._configs[provider_id]
            del self._order[provider_id]
            self.version += 1
        logger.info("Provider %s removed", provider_id)
        self._notify(provider_id)

    def _notify(self, provider_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(provider_id)
            except Exception:
                logger.exception("Registry listener failed for provider %s", provider_id)


def _validate(config: ProviderConfig | dict[str, Any]) -> ProviderConfig:
    try:
        if isinstance(config, ProviderConfig):
            # Re-validate: model_copy(update=...) bypasses field constraints.
            data = config.model_dump()
            data["credential_ref"] = config.credential_ref
            return ProviderConfig.model_validate(data)
        return ProviderConfig.model_validate(config)
    except ValidationError as exc:
        raise InputValidationError(f"Invalid provider config: {exc}") from exc


def default_provider_configs() -> list[ProviderConfig]:
    """Disabled seed providers, one per supported vendor kind."""
    seeds: list[dict[str, Any]] = [
        {
            "id": "openai",
            "name": "OpenAI GPT-4o",
            "type": ProviderType.OPENAI,
            "priority": 1,
            "models": ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"),
            "credential_ref": "env:OPENAI_API_KEY",
        },
        {
            "id": "anthropic",
            "name": "Claude 3.5 Sonnet",
            "type": ProviderType.ANTHROPIC,
            "priority": 2,
            "models": (
                "claude-3-5-sonnet-20241022",
                "claude-3-5-haiku-20241022",
                "claude-3-haiku-20240307",
            ),
            "credential_ref": "env:ANTHROPIC_API_KEY",
        },
        {
            "id": "google",
            "name": "Google Gemini",
            "type": ProviderType.GOOGLE,
            "priority": 3,
            "models": ("gemini-1.5-pro", "gemini-1.5-flash"),
            "credential_ref": "env:GOOGLE_API_KEY",
        },
        {
            "id": "mistral",
            "name": "Mistral AI",
            "type": ProviderType.MISTRAL,
            "priority": 4,
            "models": ("mistral-large-latest", "mistral-small-latest", "codestral-latest"),
            "credential_ref": "env:MISTRAL_API_KEY",
        },
        {
            "id": "ollama",
            "name": "Ollama Local",
            "type": ProviderType.OLLAMA,
            "priority": 5,
            "models": ("llama3.1:8b", "mistral:7b", "phi3:mini", "qwen2:7b"),
            "max_requests_per_minute": 120,
            "max_cost_per_day": 1.0,
            "timeout_seconds": 60.0,
            "retry_attempts": 2,
            "base_url": "http://localhost:11434",
        },
        {
            "id": "groq",
            "name": "Groq",
            "type": ProviderType.GROQ,
            "priority": 6,
            "models": ("llama-3.1-70b-versatile", "llama-3.1-8b-instant", "mixtral-8x7b-32768"),
            "max_requests_per_minute": 30,
            "max_cost_per_day": 5.0,
            "credential_ref": "env:GROQ_API_KEY",
        },
        {
            "id": "perplexity",
            "name": "Perplexity",
            "type": ProviderType.PERPLEXITY,
            "priority": 7,
            "models": ("llama-3.1-sonar-large-128k-online", "llama-3.1-sonar-small-128k-online"),
            "max_requests_per_minute": 20,
            "max_cost_per_day": 5.0,
            "credential_ref": "env:PERPLEXITY_API_KEY",
        },
    ]
    return [ProviderConfig(**seed) for seed in seeds]
