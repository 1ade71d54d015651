"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from llm_orchestrator.errors import ErrorClass, FailureReason


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class HealthStatus:
    """Latest probe outcome for one provider."""

    provider_id: str
    state: HealthState
    last_checked: datetime
    response_time_ms: float | None = None
    error_message: str | None = None
    error_class: ErrorClass | None = None
    available_models: tuple[str, ...] = ()

    def is_fresh(self, now: datetime, window: timedelta) -> bool:
        return now - self.last_checked < window


@dataclass(slots=True)
class TokenUsage:
    prompt: int = 0
    completion: int = 0
    total: int = 0


@dataclass(slots=True)
class UsageRecord:
    """One provider attempt, successful or not. Append-only."""

    provider_id: str
    provider_type: str
    model: str
    timestamp: datetime
    success: bool
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    response_time_ms: float = 0.0
    error_message: str | None = None
    failure_reason: FailureReason | None = None
    user_id: str | None = None
    conversation_id: str | None = None
    concept_id: str | None = None


@dataclass(slots=True, frozen=True)
class ContextChunk:
    """A stored unit of semantic memory derived from one conversation turn."""

    chunk_id: str
    turn_id: str
    conversation_id: str
    user_id: str
    content: str
    embedding: tuple[float, ...]
    timestamp: datetime
    concept_id: str | None = None
    relevance_score: float | None = None


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    turn_id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    concept_id: str | None = None
    is_summary: bool = False


@dataclass(slots=True, frozen=True)
class Conversation:
    conversation_id: str
    user_id: str
    created_at: datetime
    concept_id: str | None = None


@dataclass(slots=True, frozen=True)
class UserProfile:
    user_id: str
    name: str
    experience_level: str = "beginner"
    learning_style: str | None = None
    preferences: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AssembledContext:
    """Per-request context; never persisted."""

    user_profile: UserProfile
    turns: tuple[ConversationTurn, ...] = ()
    chunks: tuple[ContextChunk, ...] = ()
    recap: str | None = None
    total_tokens: int = 0
    compression_level: int = 0


@dataclass(slots=True)
class CompletionRequest:
    """Logical request handed to the router."""

    messages: list[dict[str, str]]
    user_id: str | None = None
    conversation_id: str | None = None
    concept_id: str | None = None
    model: str | None = None
    max_tokens: int = 1000
    temperature: float = 0.7
    preferred_provider_type: str | None = None


@dataclass(slots=True)
class CompletionResponse:
    content: str
    provider_id: str
    model: str
    usage: TokenUsage
    cost: float
    processing_time_ms: float
    request_id: str


@dataclass(slots=True, frozen=True)
class ProviderFailure:
    reason: FailureReason
    message: str
    retry_after_seconds: float | None = None

    @property
    def error_class(self) -> ErrorClass:
        return self.reason.error_class


@dataclass(slots=True)
class ProviderResult:
    """Outcome of one dispatch: exactly one of ``response`` / ``failure`` is set."""

    response: CompletionResponse | None = None
    failure: ProviderFailure | None = None

    @property
    def ok(self) -> bool:
        return self.response is not None

    @classmethod
    def success(cls, response: CompletionResponse) -> "ProviderResult":
        return cls(response=response)

    @classmethod
    def failed(
        cls,
        reason: FailureReason,
        message: str,
        retry_after_seconds: float | None = None,
    ) -> "ProviderResult":
        return cls(failure=ProviderFailure(reason, message, retry_after_seconds))


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of a health probe."""

    ok: bool
    models: tuple[str, ...] = ()
    failure: ProviderFailure | None = None
    partial_reason: str | None = None


@dataclass(slots=True, frozen=True)
class RoutingAttempt:
    provider_id: str
    provider_name: str
    model: str
    success: bool
    reason: FailureReason | None = None
    message: str | None = None
    response_time_ms: float = 0.0

    def trail_entry(self) -> str:
        reason = self.reason.value if self.reason else FailureReason.UNKNOWN.value
        return f"{self.provider_name} ({reason})"
