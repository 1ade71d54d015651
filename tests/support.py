from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from llm_orchestrator.config import ProviderConfig, ProviderType
from llm_orchestrator.health.monitor import HealthStore
from llm_orchestrator.types import HealthState, HealthStatus


class FixedClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_provider(
    provider_id: str,
    *,
    priority: int = 1,
    name: str | None = None,
    provider_type: ProviderType = ProviderType.OPENAI,
    enabled: bool = True,
    **overrides: Any,
) -> ProviderConfig:
    data: dict[str, Any] = {
        "id": provider_id,
        "name": name or provider_id.upper(),
        "type": provider_type,
        "enabled": enabled,
        "priority": priority,
        "models": ("gpt-4o-mini",),
        "base_url": f"http://{provider_id}.test/v1",
        "credential_ref": f"{provider_id}-key",
    }
    data.update(overrides)
    return ProviderConfig(**data)


def mark(store: HealthStore, provider_id: str, state: HealthState, when: datetime) -> None:
    store.record(HealthStatus(provider_id=provider_id, state=state, last_checked=when))


def completion_body(content: str = "Hello!", model: str = "gpt-4o-mini") -> dict[str, Any]:
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20},
    }


def routed_transport(
    handlers: dict[str, Callable[[httpx.Request], httpx.Response]],
    calls: list[httpx.Request] | None = None,
) -> httpx.MockTransport:
    """Dispatch mock requests by host name."""

    def _handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        handler = handlers.get(request.url.host)
        if handler is None:
            return httpx.Response(404, json={"error": "unknown host"})
        return handler(request)

    return httpx.MockTransport(_handler)


def json_response(payload: dict[str, Any], status_code: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status_code, content=json.dumps(payload).encode())
