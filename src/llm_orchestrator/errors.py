"""Error taxonomy for provider routing and context assembly."""

from __future__ import annotations

from enum import Enum


class ErrorClass(str, Enum):
    """Coarse failure classes used for health diagnostics and fallback policy."""

    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"

    @property
    def label(self) -> str:
        return _CLASS_LABELS[self]


_CLASS_LABELS = {
    ErrorClass.CONFIGURATION: "Configuration error",
    ErrorClass.AUTHENTICATION: "Authentication error",
    ErrorClass.RATE_LIMIT: "Rate limit error",
    ErrorClass.TRANSIENT: "Network error",
}


class FailureReason(str, Enum):
    """Reason attached to a single failed provider attempt."""

    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    API_KEY_INVALID = "API_KEY_INVALID"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    SERVER_ERROR = "SERVER_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    UNKNOWN = "UNKNOWN"

    @property
    def error_class(self) -> ErrorClass:
        return _REASON_CLASSES.get(self, ErrorClass.TRANSIENT)

    @property
    def retryable(self) -> bool:
        """Whether the same provider may be attempted again in one decision."""
        return self in (
            FailureReason.NETWORK_ERROR,
            FailureReason.TIMEOUT,
            FailureReason.SERVER_ERROR,
        )


_REASON_CLASSES = {
    FailureReason.RATE_LIMIT: ErrorClass.RATE_LIMIT,
    FailureReason.API_KEY_INVALID: ErrorClass.AUTHENTICATION,
    FailureReason.CONFIGURATION_ERROR: ErrorClass.CONFIGURATION,
    FailureReason.MODEL_UNAVAILABLE: ErrorClass.CONFIGURATION,
}


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestration core."""


class ProviderError(OrchestratorError):
    """A classified failure of one provider."""

    error_class: ErrorClass = ErrorClass.TRANSIENT

    def __init__(self, message: str, *, provider_id: str | None = None) -> None:
        super().__init__(message)
        self.provider_id = provider_id


class ConfigurationError(ProviderError):
    error_class = ErrorClass.CONFIGURATION


class AllProvidersExhausted(OrchestratorError):
    """Terminal routing failure carrying the full fallback trail."""

    def __init__(self, fallbacks_used: list[str], attempts: int = 0, *, reason: str = "") -> None:
        detail = reason or "no eligible provider could serve the request"
        trail = ", ".join(fallbacks_used) if fallbacks_used else "none"
        super().__init__(f"All AI providers failed: {detail}. Fallbacks used: {trail}")
        self.fallbacks_used = list(fallbacks_used)
        self.attempts = attempts
        self.reason = detail


class InputValidationError(OrchestratorError):
    """Bad caller input; surfaced immediately and never retried."""


class NotFoundError(OrchestratorError, KeyError):
    """An unknown provider, user or conversation id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"
