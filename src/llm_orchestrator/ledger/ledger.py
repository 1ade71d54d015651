"""Cost and rate accounting per provider and per user."""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from llm_orchestrator.config import LedgerConfig
from llm_orchestrator.errors import FailureReason
from llm_orchestrator.ledger.usage_log import UsageSink
from llm_orchestrator.registry.provider_registry import ProviderRegistry
from llm_orchestrator.types import UsageRecord

logger = logging.getLogger(__name__)

_DAY_RETENTION = 31


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(slots=True)
class _ProviderCounters:
    lock: threading.Lock = field(default_factory=threading.Lock)
    recent: deque[datetime] = field(default_factory=deque)
    cost_by_day: dict[date, float] = field(default_factory=dict)
    requests_by_day: dict[date, int] = field(default_factory=dict)
    errors: deque[tuple[datetime, FailureReason]] = field(default_factory=deque)


@dataclass(slots=True)
class CostAlert:
    provider_id: str
    severity: str
    message: str
    current_amount: float
    threshold: float


class CostRateLedger:
    """Accumulates usage and answers rate/cost ceiling questions.

    Writes for one provider are serialized by that provider's lock, so
    concurrent requests never lose counter updates. Reads take the same lock
    briefly and see every write that completed before them.

    Windows:
    - request rate: sliding ``rate_window_seconds`` (60 s by default);
    - cost: calendar day in ``config.timezone`` (UTC midnight by default);
    - failures: sliding ``error_window_seconds`` (one hour by default).

    Only the latest ``max_retained_records`` records are kept in memory; a
    ``JsonlUsageLog`` sink holds the full trail.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: LedgerConfig | None = None,
        *,
        sinks: list[UsageSink] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._registry = registry
        self.config = config or LedgerConfig()
        self._sinks = list(sinks or [])
        self._clock = clock
        self._tz = ZoneInfo(self.config.timezone)
        self._window = timedelta(seconds=self.config.rate_window_seconds)
        self._error_window = timedelta(seconds=self.config.error_window_seconds)
        self._counters: dict[str, _ProviderCounters] = {}
        self._counters_lock = threading.Lock()
        self._records: deque[UsageRecord] = deque(maxlen=self.config.max_retained_records)
        self._records_lock = threading.Lock()

    def record_usage(self, record: UsageRecord) -> None:
        counters = self._provider_counters(record.provider_id)
        timestamp = _as_utc(record.timestamp)
        day = self._day_of(timestamp)
        with counters.lock:
            counters.recent.append(timestamp)
            counters.cost_by_day[day] = counters.cost_by_day.get(day, 0.0) + record.cost
            counters.requests_by_day[day] = counters.requests_by_day.get(day, 0) + 1
            if not record.success:
                counters.errors.append((timestamp, record.failure_reason or FailureReason.UNKNOWN))
            self._prune(counters)
        with self._records_lock:
            self._records.append(record)

        for sink in self._sinks:
            try:
                sink.write(record)
            except Exception:
                logger.exception("Usage sink %s failed; record kept in memory only", type(sink).__name__)

    def requests_in_last_minute(self, provider_id: str) -> int:
        counters = self._existing_counters(provider_id)
        if counters is None:
            return 0
        cutoff = self._clock() - self._window
        with counters.lock:
            self._prune(counters)
            return sum(1 for ts in counters.recent if ts > cutoff)

    def cost_today(self, provider_id: str) -> float:
        counters = self._existing_counters(provider_id)
        if counters is None:
            return 0.0
        with counters.lock:
            return counters.cost_by_day.get(self._today(), 0.0)

    def requests_today(self, provider_id: str) -> int:
        counters = self._existing_counters(provider_id)
        if counters is None:
            return 0
        with counters.lock:
            return counters.requests_by_day.get(self._today(), 0)

    def error_stats(self, provider_id: str) -> dict[str, int]:
        """Failed attempts per failure reason within the error window."""
        counters = self._existing_counters(provider_id)
        if counters is None:
            return {}
        with counters.lock:
            self._prune(counters)
            return dict(Counter(reason.value for _, reason in counters.errors))

    def is_unstable(self, provider_id: str) -> bool:
        return sum(self.error_stats(provider_id).values()) >= self.config.unstable_error_threshold

    def is_over_limit(self, provider_id: str) -> bool:
        config = self._registry.get(provider_id)
        if self.requests_in_last_minute(provider_id) >= config.max_requests_per_minute:
            return True
        return self.cost_today(provider_id) >= config.max_cost_per_day

    def records(self) -> list[UsageRecord]:
        with self._records_lock:
            return list(self._records)

    def user_usage(self, user_id: str) -> dict[str, float | int]:
        records = [record for record in self.records() if record.user_id == user_id]
        return {
            "requests": len(records),
            "successful_requests": sum(1 for record in records if record.success),
            "total_tokens": sum(record.total_tokens for record in records),
            "total_cost": sum(record.cost for record in records),
        }

    def summary(self) -> dict[str, Any]:
        """Aggregate usage metrics for dashboard display."""
        records = self.records()
        total = len(records)
        successful = sum(1 for record in records if record.success)
        by_provider: dict[str, dict[str, Any]] = {}
        by_model: dict[str, dict[str, Any]] = {}
        for record in records:
            for key, bucket in ((record.provider_id, by_provider), (record.model, by_model)):
                entry = bucket.setdefault(
                    key, {"requests": 0, "successful_requests": 0, "cost": 0.0, "tokens": 0}
                )
                entry["requests"] += 1
                entry["successful_requests"] += int(record.success)
                entry["cost"] += record.cost
                entry["tokens"] += record.total_tokens

        for bucket in (by_provider, by_model):
            for entry in bucket.values():
                entry["success_rate"] = entry["successful_requests"] / entry["requests"]

        response_times = [record.response_time_ms for record in records if record.success]
        return {
            "total_requests": total,
            "successful_requests": successful,
            "failed_requests": total - successful,
            "total_tokens": sum(record.total_tokens for record in records),
            "total_cost": sum(record.cost for record in records),
            "avg_response_time_ms": (
                sum(response_times) / len(response_times) if response_times else 0.0
            ),
            "providers": by_provider,
            "models": by_model,
        }

    def cost_alerts(self) -> list[CostAlert]:
        """Providers whose spend today crossed the warning ratio of their ceiling."""
        alerts: list[CostAlert] = []
        for config in self._registry.list_all():
            spent = self.cost_today(config.id)
            limit = config.max_cost_per_day
            if spent < limit * self.config.alert_warning_ratio:
                continue
            severity = "critical" if spent >= limit else "warning"
            alerts.append(
                CostAlert(
                    provider_id=config.id,
                    severity=severity,
                    message=f"{config.name} daily cost is {spent / limit * 100:.1f}% of limit",
                    current_amount=spent,
                    threshold=limit,
                )
            )
        return alerts

    def _provider_counters(self, provider_id: str) -> _ProviderCounters:
        with self._counters_lock:
            counters = self._counters.get(provider_id)
            if counters is None:
                counters = self._counters[provider_id] = _ProviderCounters()
            return counters

    def _existing_counters(self, provider_id: str) -> _ProviderCounters | None:
        with self._counters_lock:
            return self._counters.get(provider_id)

    def _prune(self, counters: _ProviderCounters) -> None:
        cutoff = self._clock() - self._window
        while counters.recent and counters.recent[0] <= cutoff:
            counters.recent.popleft()
        error_cutoff = self._clock() - self._error_window
        while counters.errors and counters.errors[0][0] <= error_cutoff:
            counters.errors.popleft()
        if len(counters.cost_by_day) > _DAY_RETENTION:
            oldest = sorted(counters.cost_by_day)[: len(counters.cost_by_day) - _DAY_RETENTION]
            for day in oldest:
                counters.cost_by_day.pop(day, None)
                counters.requests_by_day.pop(day, None)

    def _day_of(self, moment: datetime) -> date:
        return _as_utc(moment).astimezone(self._tz).date()

    def _today(self) -> date:
        return self._day_of(self._clock())
