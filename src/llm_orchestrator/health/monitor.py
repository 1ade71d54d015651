"""Periodic provider health probing and the shared health state store."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from llm_orchestrator.config import HealthConfig, ProviderConfig
from llm_orchestrator.errors import FailureReason
from llm_orchestrator.ledger.ledger import utc_now
from llm_orchestrator.obs.tracing import Timer, redact_for_log
from llm_orchestrator.providers.factory import AdapterPool
from llm_orchestrator.registry.provider_registry import ProviderRegistry
from llm_orchestrator.types import HealthState, HealthStatus, ProbeResult, ProviderFailure

logger = logging.getLogger(__name__)


class HealthStore:
    """Single-writer map of provider id to its latest ``HealthStatus``.

    Statuses are immutable; ``record`` swaps the whole entry, so a reader
    holding a status never sees a half-updated one.
    """

    def __init__(self, freshness_window: timedelta | None = None) -> None:
        self._statuses: dict[str, HealthStatus] = {}
        self._lock = threading.Lock()
        self.freshness_window = freshness_window or timedelta(minutes=10)

    def record(self, status: HealthStatus) -> None:
        with self._lock:
            self._statuses[status.provider_id] = status

    def get(self, provider_id: str) -> HealthStatus | None:
        return self._statuses.get(provider_id)

    def all(self) -> dict[str, HealthStatus]:
        with self._lock:
            return dict(self._statuses)

    def effective_state(self, provider_id: str, now: datetime) -> HealthState:
        status = self.get(provider_id)
        if status is None or not status.is_fresh(now, self.freshness_window):
            return HealthState.UNKNOWN
        return status.state


class HealthMonitor:
    """Runs one probe task per enabled provider and records the outcomes."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: HealthStore,
        adapters: AdapterPool,
        config: HealthConfig | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._registry = registry
        self._store = store
        self._adapters = adapters
        self.config = config or HealthConfig()
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        registry.add_listener(self._on_registry_change)

    @property
    def running(self) -> bool:
        return self._loop is not None

    async def check_provider(self, config: ProviderConfig) -> HealthStatus:
        """Probe one provider and record the resulting status. Never raises."""
        adapter = self._adapters.get(config)
        timeout = self.config.probe_timeout_seconds
        probe: ProbeResult
        with Timer() as timer:
            try:
                probe = await asyncio.wait_for(adapter.probe(timeout), timeout=timeout)
            except asyncio.TimeoutError:
                probe = ProbeResult(
                    ok=False,
                    failure=ProviderFailure(
                        FailureReason.TIMEOUT, f"{config.name} probe timed out after {timeout:.1f}s"
                    ),
                )
            except Exception as exc:
                logger.exception("Probe for provider %s raised", config.id)
                probe = ProbeResult(
                    ok=False,
                    failure=ProviderFailure(FailureReason.UNKNOWN, redact_for_log(str(exc))),
                )

        status = self._status_from_probe(config, probe, timer.elapsed_ms)
        previous = self._store.get(config.id)
        self._store.record(status)
        if previous is None or previous.state != status.state:
            logger.info(
                "Provider %s health %s -> %s",
                config.id,
                previous.state.value if previous else HealthState.UNKNOWN.value,
                status.state.value,
            )
        if status.error_message:
            logger.warning("Provider %s: %s", config.id, status.error_message)
        return status

    async def check_now(self, provider_id: str) -> HealthStatus:
        return await self.check_provider(self._registry.get(provider_id))

    async def check_all(self) -> dict[str, HealthStatus]:
        """Probe every enabled provider concurrently."""
        configs = self._registry.list_enabled()
        statuses = await asyncio.gather(*(self.check_provider(config) for config in configs))
        return {status.provider_id: status for status in statuses}

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._sync_tasks()
        logger.info("Health monitor started for %d providers", len(self._tasks))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._loop = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Health monitor stopped")

    def _status_from_probe(
        self, config: ProviderConfig, probe: ProbeResult, elapsed_ms: float
    ) -> HealthStatus:
        now = self._clock()
        if not probe.ok:
            failure = probe.failure or ProviderFailure(FailureReason.UNKNOWN, "probe failed")
            return HealthStatus(
                provider_id=config.id,
                state=HealthState.UNHEALTHY,
                last_checked=now,
                response_time_ms=elapsed_ms,
                error_message=f"{failure.error_class.label}: {redact_for_log(failure.message)}",
                error_class=failure.error_class,
            )

        message = None
        state = HealthState.HEALTHY
        if probe.partial_reason:
            state = HealthState.DEGRADED
            message = probe.partial_reason
        elif elapsed_ms > self.config.slow_threshold_ms:
            state = HealthState.DEGRADED
            message = f"Slow response: {elapsed_ms:.0f}ms"
        return HealthStatus(
            provider_id=config.id,
            state=state,
            last_checked=now,
            response_time_ms=elapsed_ms,
            error_message=message,
            available_models=probe.models,
        )

    async def _run_periodic(self, provider_id: str) -> None:
        while True:
            try:
                config = self._registry.get(provider_id)
            except KeyError:
                return
            if not config.enabled:
                return
            await self.check_provider(config)
            await asyncio.sleep(config.health_check_interval_seconds)

    def _sync_tasks(self) -> None:
        if self._loop is None:
            return
        enabled = {config.id for config in self._registry.list_enabled()}
        for provider_id in list(self._tasks):
            task = self._tasks[provider_id]
            if provider_id not in enabled or task.done():
                task.cancel()
                del self._tasks[provider_id]
        for provider_id in enabled - set(self._tasks):
            self._tasks[provider_id] = self._loop.create_task(
                self._run_periodic(provider_id), name=f"health:{provider_id}"
            )

    def _on_registry_change(self, provider_id: str) -> None:
        loop = self._loop
        if loop is None:
            return
        # Registry mutations may come from any thread.
        loop.call_soon_threadsafe(self._resync_provider, provider_id)

    def _resync_provider(self, provider_id: str) -> None:
        task = self._tasks.pop(provider_id, None)
        if task is not None:
            task.cancel()
        self._sync_tasks()
