"""Priority-ordered provider selection with sequential fallback."""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from llm_orchestrator.config import ProviderConfig, RouterConfig
from llm_orchestrator.errors import AllProvidersExhausted, FailureReason
from llm_orchestrator.health.monitor import HealthStore
from llm_orchestrator.ledger.ledger import CostRateLedger, utc_now
from llm_orchestrator.obs.tracing import Timer
from llm_orchestrator.providers.factory import AdapterPool
from llm_orchestrator.registry.provider_registry import ProviderRegistry
from llm_orchestrator.types import (
    CompletionRequest,
    CompletionResponse,
    HealthState,
    ProviderResult,
    RoutingAttempt,
    UsageRecord,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RoutingResult:
    provider: ProviderConfig
    response: CompletionResponse
    attempts: list[RoutingAttempt] = field(default_factory=list)
    fallbacks_used: list[str] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


class ProviderRouter:
    """Chooses a provider per request and falls back on classified failures.

    Attempts run strictly one after another. Each attempt writes exactly one
    usage record. A provider that answered with a rate-limit or credential
    failure is not attempted again within the same decision. Retries on the
    same provider wait with exponential backoff plus jitter, or for the
    provider's ``Retry-After`` when it sent one; a wait that is too long or
    would overrun the deadline moves on to the next provider instead.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        health: HealthStore,
        ledger: CostRateLedger,
        adapters: AdapterPool,
        config: RouterConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._health = health
        self._ledger = ledger
        self._adapters = adapters
        self.config = config or RouterConfig()
        self._clock = clock
        self._sleep = sleep
        self._ordering: list[str] | None = None
        self._ordering_version = -1
        self._ordering_lock = threading.Lock()
        registry.add_listener(self._invalidate_ordering)

    def ordered_providers(self) -> list[ProviderConfig]:
        """Enabled providers by ascending priority, ties by registration order."""
        with self._ordering_lock:
            if self._ordering is None or self._ordering_version != self._registry.version:
                enabled = self._registry.list_enabled()
                enabled.sort(key=lambda cfg: (cfg.priority, self._registry.registration_index(cfg.id)))
                self._ordering = [config.id for config in enabled]
                self._ordering_version = self._registry.version
            ordering = list(self._ordering)

        configs: list[ProviderConfig] = []
        for provider_id in ordering:
            try:
                configs.append(self._registry.get(provider_id))
            except KeyError:
                continue
        return configs

    def eligible_providers(self, request: CompletionRequest) -> list[ProviderConfig]:
        now = self._clock()
        healthy: list[ProviderConfig] = []
        degraded: list[ProviderConfig] = []
        for config in self.ordered_providers():
            if not config.supports_model(request.model):
                continue
            if self._ledger.is_over_limit(config.id):
                logger.debug("Provider %s skipped: over rate or cost ceiling", config.id)
                continue
            state = self._health.effective_state(config.id, now)
            if state is HealthState.HEALTHY:
                healthy.append(config)
            elif state is HealthState.DEGRADED:
                degraded.append(config)

        eligible = healthy or degraded
        if request.preferred_provider_type:
            preferred = [c for c in eligible if c.type.value == request.preferred_provider_type]
            eligible = preferred + [c for c in eligible if c not in preferred]
        return eligible

    async def route(
        self,
        request: CompletionRequest,
        deadline: float | None = None,
    ) -> RoutingResult:
        """Dispatch ``request`` to the best eligible provider.

        Args:
            request: Logical completion request.
            deadline: Absolute ``loop.time()`` after which no new attempt starts.

        Raises:
            AllProvidersExhausted: Nothing was eligible, every attempt failed,
                the attempt budget ran out, or the deadline passed.
        """
        loop = asyncio.get_running_loop()
        eligible = self.eligible_providers(request)
        if not eligible:
            logger.error("No eligible providers for request (model=%s)", request.model)
            raise AllProvidersExhausted([], 0, reason="no eligible providers")

        budget = min(
            sum(config.retry_attempts for config in eligible),
            self.config.max_total_attempts,
        )
        attempts: list[RoutingAttempt] = []
        fallbacks: list[str] = []

        for config in eligible:
            failed_here = 0
            tries_left = 1 + min(self.config.same_provider_retries, config.retry_attempts - 1)
            while tries_left > 0:
                if len(attempts) >= budget:
                    raise AllProvidersExhausted(
                        fallbacks, len(attempts), reason="attempt budget exhausted"
                    )
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    raise AllProvidersExhausted(
                        fallbacks, len(attempts), reason="request deadline exceeded"
                    )

                tries_left -= 1
                attempt, result = await self._attempt(config, request, remaining)
                attempts.append(attempt)
                if result.ok and result.response is not None:
                    if fallbacks:
                        logger.info(
                            "Request served by %s after fallbacks: %s", config.id, ", ".join(fallbacks)
                        )
                    return RoutingResult(
                        provider=config,
                        response=result.response,
                        attempts=attempts,
                        fallbacks_used=fallbacks,
                    )

                fallbacks.append(attempt.trail_entry())
                logger.warning(
                    "Provider %s failed (%s): %s",
                    config.id,
                    attempt.reason.value if attempt.reason else "UNKNOWN",
                    attempt.message,
                )
                if attempt.reason is None or not attempt.reason.retryable:
                    break
                failed_here += 1
                if tries_left == 0 or len(attempts) >= budget:
                    continue

                delay = self._retry_delay(failed_here, result)
                remaining = None if deadline is None else deadline - loop.time()
                if delay > self.config.max_retry_wait_seconds or (
                    remaining is not None and delay >= remaining
                ):
                    logger.info(
                        "Not retrying %s: a %.1fs wait exceeds the retry window", config.id, delay
                    )
                    break
                logger.debug("Retrying %s in %.2fs (retry %d)", config.id, delay, failed_here)
                await self._sleep(delay)

        raise AllProvidersExhausted(fallbacks, len(attempts), reason="all attempts failed")

    def _retry_delay(self, retry_number: int, result: ProviderResult) -> float:
        if result.failure is not None and result.failure.retry_after_seconds is not None:
            return max(result.failure.retry_after_seconds, 0.0)
        delay = min(
            self.config.backoff_base_seconds * 2 ** (retry_number - 1),
            self.config.backoff_max_seconds,
        )
        return delay + random.uniform(0.0, 0.1 * delay)

    async def _attempt(
        self,
        config: ProviderConfig,
        request: CompletionRequest,
        remaining: float | None,
    ) -> tuple[RoutingAttempt, ProviderResult]:
        model = request.model or config.default_model() or ""
        timeout = config.timeout_seconds if remaining is None else min(config.timeout_seconds, remaining)
        adapter = self._adapters.get(config)
        with Timer() as timer:
            try:
                result = await asyncio.wait_for(adapter.complete(request, model, timeout), timeout=timeout)
            except asyncio.TimeoutError:
                reason = FailureReason.TIMEOUT
                if remaining is not None and timeout >= remaining:
                    reason = FailureReason.DEADLINE_EXCEEDED
                result = ProviderResult.failed(reason, f"{config.name} did not answer within {timeout:.1f}s")

        attempt = RoutingAttempt(
            provider_id=config.id,
            provider_name=config.name,
            model=result.response.model if result.response else model,
            success=result.ok,
            reason=result.failure.reason if result.failure else None,
            message=result.failure.message if result.failure else None,
            response_time_ms=timer.elapsed_ms,
        )
        self._record(config, request, attempt, result)
        return attempt, result

    def _record(
        self,
        config: ProviderConfig,
        request: CompletionRequest,
        attempt: RoutingAttempt,
        result: ProviderResult,
    ) -> None:
        response = result.response
        record = UsageRecord(
            provider_id=config.id,
            provider_type=config.type.value,
            model=attempt.model,
            timestamp=self._clock(),
            success=attempt.success,
            prompt_tokens=response.usage.prompt if response else 0,
            completion_tokens=response.usage.completion if response else 0,
            total_tokens=response.usage.total if response else 0,
            cost=response.cost if response else 0.0,
            response_time_ms=attempt.response_time_ms,
            error_message=attempt.message,
            failure_reason=attempt.reason,
            user_id=request.user_id,
            conversation_id=request.conversation_id,
            concept_id=request.concept_id,
        )
        try:
            self._ledger.record_usage(record)
        except Exception:
            logger.exception("Failed to record usage for provider %s", config.id)

    def _invalidate_ordering(self, provider_id: str) -> None:
        with self._ordering_lock:
            self._ordering = None
