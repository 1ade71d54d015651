"""Configuration models for the orchestration engine."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProviderType(str, Enum):
    """Closed set of supported vendor kinds."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    MISTRAL = "mistral"
    OLLAMA = "ollama"
    GROQ = "groq"
    PERPLEXITY = "perplexity"


class ProviderConfig(BaseModel):
    """Admin-managed provider configuration; read-only to the core."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    type: ProviderType
    enabled: bool = False
    priority: int = Field(default=1, ge=1)
    models: tuple[str, ...] = ()
    max_requests_per_minute: int = Field(default=60, gt=0)
    max_cost_per_day: float = Field(default=10.0, gt=0.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    retry_attempts: int = Field(default=3, ge=1)
    health_check_interval_seconds: float = Field(default=300.0, gt=0.0)
    base_url: str | None = None
    # Opaque reference resolved by a CredentialStore; never serialized.
    credential_ref: str | None = Field(default=None, exclude=True, repr=False)

    def supports_model(self, model: str | None) -> bool:
        if model is None:
            return bool(self.models)
        return model in self.models

    def default_model(self) -> str | None:
        return self.models[0] if self.models else None


class RouterConfig(BaseModel):
    """Configures fallback budgets for one routing decision."""

    max_total_attempts: int = Field(default=5, ge=1)
    same_provider_retries: int = Field(default=0, ge=0)
    # Exponential backoff before retrying the same provider.
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_max_seconds: float = Field(default=30.0, ge=0.0)
    # A retry that would wait longer than this moves on to the next provider.
    max_retry_wait_seconds: float = Field(default=60.0, ge=0.0)


class HealthConfig(BaseModel):
    """Configures probe timing and degradation thresholds."""

    probe_timeout_seconds: float = Field(default=5.0, gt=0.0)
    slow_threshold_ms: float = Field(default=2000.0, gt=0.0)
    freshness_window_seconds: float = Field(default=600.0, gt=0.0)


class LedgerConfig(BaseModel):
    """Configures rolling windows and alerting for usage accounting."""

    timezone: str = "UTC"
    rate_window_seconds: float = Field(default=60.0, gt=0.0)
    alert_warning_ratio: float = Field(default=0.8, gt=0.0, le=1.0)
    usage_log_path: str | None = None
    max_retained_records: int = Field(default=10_000, ge=1)
    error_window_seconds: float = Field(default=3600.0, gt=0.0)
    unstable_error_threshold: int = Field(default=10, ge=1)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
            raise ValueError(f"Unknown timezone: {value!r}") from exc
        return value


class ContextConfig(BaseModel):
    """Configures context assembly and compression."""

    history_limit: int = Field(default=20, ge=1)
    max_tokens: int = Field(default=8000, ge=1)
    relevance_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    retrieval_limit: int = Field(default=10, ge=0)
    preserve_recent_turns: int = Field(default=4, ge=1)
    recap_after_minutes: float = Field(default=30.0, ge=0.0)
    embedding_dimension: int = Field(default=256, ge=1)


class OrchestratorSettings(BaseModel):
    """Top-level settings for the composition root."""

    router: RouterConfig = Field(default_factory=RouterConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    request_deadline_seconds: float = Field(default=90.0, gt=0.0)
    completion_max_tokens: int = Field(default=2000, ge=1)
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)


_SETTINGS_KEYS = set(OrchestratorSettings.model_fields)


def load_settings(path: str | Path) -> OrchestratorSettings:
    """Load settings from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the document is empty or contains unknown sections.
        pydantic.ValidationError: If a value violates its constraints.
    """
    raw = _read_yaml(path)
    unknown = set(raw) - _SETTINGS_KEYS
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
    return OrchestratorSettings.model_validate(raw)


def load_provider_configs(path: str | Path) -> list[ProviderConfig]:
    """Load provider definitions from a YAML file with a top-level ``providers`` list."""
    raw = _read_yaml(path)
    unknown = set(raw) - {"providers"}
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
    entries = raw.get("providers")
    if not isinstance(entries, list):
        raise ValueError("'providers' must be a list")

    allowed = set(ProviderConfig.model_fields)
    configs: list[ProviderConfig] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"providers[{index}] must be a mapping")
        unknown_fields = set(entry) - allowed
        if unknown_fields:
            raise ValueError(f"Unknown keys in providers[{index}]: {sorted(unknown_fields)}")
        configs.append(ProviderConfig.model_validate(entry))
    return configs


def _read_yaml(path: str | Path) -> dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with config_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if not data:
        raise ValueError(f"Configuration file is empty: {path}")
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return data
