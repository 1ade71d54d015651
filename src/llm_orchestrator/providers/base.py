"""Provider adapter interface shared by the router and the health monitor.

Adapters never raise across the provider boundary. Every transport or vendor
failure is classified into a ``FailureReason`` and returned as a value, so the
router's fallback loop and the monitor's state machine consume plain results.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx

from llm_orchestrator.config import ProviderConfig, ProviderType
from llm_orchestrator.errors import FailureReason
from llm_orchestrator.ledger.pricing import PricingTable
from llm_orchestrator.obs.tracing import Timer, redact_for_log
from llm_orchestrator.registry.credentials import CredentialStore
from llm_orchestrator.types import (
    CompletionRequest,
    CompletionResponse,
    ProbeResult,
    ProviderFailure,
    ProviderResult,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    """One vendor integration: a health probe and a chat completion call."""

    provider_type: ClassVar[ProviderType]
    vendor_label: ClassVar[str] = "Provider"
    default_base_url: ClassVar[str | None] = None
    requires_credential: ClassVar[bool] = True

    def __init__(
        self,
        config: ProviderConfig,
        credentials: CredentialStore,
        *,
        pricing: PricingTable | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._credentials = credentials
        self._pricing = pricing or PricingTable()
        self._transport = transport

    @property
    def base_url(self) -> str | None:
        return self.config.base_url or self.default_base_url

    async def probe(self, timeout: float) -> ProbeResult:
        """Cheapest call that proves credentials, reachability and model availability."""
        failure = self._configuration_failure()
        if failure is not None:
            return ProbeResult(ok=False, failure=failure)
        api_key = self._api_key()
        try:
            async with self._client(timeout) as client:
                return await self._probe(client, api_key)
        except Exception as exc:
            return ProbeResult(ok=False, failure=self._classify_exception(exc, timeout))

    async def complete(
        self,
        request: CompletionRequest,
        model: str,
        timeout: float,
    ) -> ProviderResult:
        failure = self._configuration_failure()
        if failure is not None:
            return ProviderResult(failure=failure)
        api_key = self._api_key()
        try:
            with Timer() as timer:
                async with self._client(timeout) as client:
                    content, reported_model, usage = await self._complete(
                        client, api_key, request, model
                    )
        except Exception as exc:
            return ProviderResult(failure=self._classify_exception(exc, timeout))

        cost = self._pricing.estimate_cost(self.provider_type, reported_model, usage.total)
        return ProviderResult.success(
            CompletionResponse(
                content=content,
                provider_id=self.config.id,
                model=reported_model,
                usage=usage,
                cost=cost,
                processing_time_ms=timer.elapsed_ms,
                request_id=f"req_{uuid.uuid4().hex[:12]}",
            )
        )

    @abstractmethod
    async def _probe(self, client: httpx.AsyncClient, api_key: str | None) -> ProbeResult:
        """Vendor-specific probe; may raise httpx errors."""

    @abstractmethod
    async def _complete(
        self,
        client: httpx.AsyncClient,
        api_key: str | None,
        request: CompletionRequest,
        model: str,
    ) -> tuple[str, str, TokenUsage]:
        """Vendor-specific completion returning ``(content, model, usage)``."""

    def _headers(self, api_key: str | None) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url or "",
            headers=self._headers(self._api_key()),
            timeout=httpx.Timeout(timeout),
            transport=self._transport,
        )

    def _api_key(self) -> str | None:
        return self._credentials.resolve(self.config.credential_ref)

    def _configuration_failure(self) -> ProviderFailure | None:
        if self.requires_credential and not self._api_key():
            return ProviderFailure(
                FailureReason.CONFIGURATION_ERROR,
                f"{self.vendor_label} API key not configured for provider '{self.config.id}'",
            )
        if not self.base_url:
            return ProviderFailure(
                FailureReason.CONFIGURATION_ERROR,
                f"{self.vendor_label} base URL not configured for provider '{self.config.id}'",
            )
        return None

    def _classify_exception(self, exc: Exception, timeout: float) -> ProviderFailure:
        label = self.vendor_label
        if isinstance(exc, httpx.TimeoutException):
            return ProviderFailure(
                FailureReason.TIMEOUT, f"{label} request timed out after {timeout:.1f}s"
            )
        if isinstance(exc, httpx.HTTPStatusError):
            return self._classify_response(exc.response)
        if isinstance(exc, httpx.RequestError):
            return ProviderFailure(
                FailureReason.NETWORK_ERROR,
                f"{label} unreachable at {self.base_url}: {redact_for_log(str(exc)) or type(exc).__name__}",
            )
        if isinstance(exc, (KeyError, IndexError, TypeError, ValueError)):
            return ProviderFailure(
                FailureReason.UNKNOWN,
                f"{label} returned an unexpected response shape: {type(exc).__name__}",
            )
        logger.exception("Unclassified %s failure for provider %s", label, self.config.id)
        return ProviderFailure(FailureReason.UNKNOWN, f"{label} call failed: {redact_for_log(str(exc))}")

    def _classify_response(self, response: httpx.Response) -> ProviderFailure:
        label = self.vendor_label
        status = response.status_code
        body = _safe_body(response)
        if status in (401, 403):
            return ProviderFailure(
                FailureReason.API_KEY_INVALID,
                f"{label} rejected the credential (HTTP {status}); check the API key and its permissions",
            )
        if status == 429:
            return ProviderFailure(
                FailureReason.RATE_LIMIT,
                f"{label} rate limit or quota exceeded (HTTP 429)",
                retry_after_seconds=_retry_after(response),
            )
        if status == 404 and "model" in body.lower():
            return ProviderFailure(
                FailureReason.MODEL_UNAVAILABLE, f"{label} model unavailable (HTTP 404): {body}"
            )
        if status == 408:
            return ProviderFailure(FailureReason.TIMEOUT, f"{label} request timed out (HTTP 408)")
        if status >= 500:
            return ProviderFailure(
                FailureReason.SERVER_ERROR,
                f"{label} server error (HTTP {status}): {body}",
                retry_after_seconds=_retry_after(response),
            )
        return ProviderFailure(FailureReason.UNKNOWN, f"{label} returned HTTP {status}: {body}")


def split_system_messages(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    """Separate system prompts for vendors that take them out-of-band."""
    system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
    rest = [m for m in messages if m.get("role") != "system"]
    return system, rest


def _safe_body(response: httpx.Response) -> str:
    try:
        return redact_for_log(response.text[:300])
    except Exception:
        return "(unreadable)"


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def usage_from(payload: dict[str, Any], prompt_key: str, completion_key: str) -> TokenUsage:
    prompt = int(payload.get(prompt_key) or 0)
    completion = int(payload.get(completion_key) or 0)
    return TokenUsage(prompt=prompt, completion=completion, total=prompt + completion)
