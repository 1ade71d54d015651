import asyncio
import json

import httpx
import pytest

from llm_orchestrator.config import ProviderType
from llm_orchestrator.errors import FailureReason
from llm_orchestrator.providers.factory import ADAPTER_TYPES, AdapterPool, create_adapter
from llm_orchestrator.registry.credentials import StaticCredentialStore
from llm_orchestrator.types import CompletionRequest
from support import completion_body, make_provider

_SECRET = "sk-abcdefghijklmnopqrstuvwxyz"


def _request() -> CompletionRequest:
    return CompletionRequest(
        messages=[
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "What is a closure?"},
            {"role": "assistant", "content": "A function with captured scope."},
            {"role": "user", "content": "Example?"},
        ],
        max_tokens=64,
        temperature=0.2,
    )


def _adapter(config, handler, secrets=None):
    store = StaticCredentialStore(secrets if secrets is not None else {config.credential_ref or "": _SECRET})
    return create_adapter(config, store, transport=httpx.MockTransport(handler))


def test_openai_completion_parses_reply_and_prices_usage() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=completion_body("Closures capture variables."))

    adapter = _adapter(make_provider("oa"), handler)

    result = asyncio.run(adapter.complete(_request(), "gpt-4o-mini", timeout=5))

    assert result.ok
    assert result.response.content == "Closures capture variables."
    assert result.response.usage.total == 20
    assert result.response.cost == pytest.approx(20 / 1000 * 0.00015)
    assert result.response.provider_id == "oa"
    assert seen[0].url.path == "/v1/chat/completions"
    assert seen[0].headers["authorization"] == f"Bearer {_SECRET}"
    body = json.loads(seen[0].content)
    assert body["max_tokens"] == 64
    assert body["messages"][0]["role"] == "system"


def test_anthropic_sends_system_prompt_separately() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "claude-3-5-haiku-20241022",
                "content": [{"type": "text", "text": "def outer(): ..."}],
                "usage": {"input_tokens": 30, "output_tokens": 10},
            },
        )

    config = make_provider(
        "claude",
        provider_type=ProviderType.ANTHROPIC,
        base_url="http://claude.test",
        models=("claude-3-5-haiku-20241022",),
    )
    adapter = _adapter(config, handler)

    result = asyncio.run(adapter.complete(_request(), "claude-3-5-haiku-20241022", timeout=5))

    assert result.ok
    assert result.response.content == "def outer(): ..."
    assert result.response.usage.prompt == 30
    request = seen[0]
    assert request.url.path == "/v1/messages"
    assert request.headers["x-api-key"] == _SECRET
    assert request.headers["anthropic-version"]
    body = json.loads(request.content)
    assert body["system"] == "Be brief."
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]


def test_google_maps_roles_and_reads_usage_metadata() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "Here is one."}]}}],
                "usageMetadata": {"promptTokenCount": 11, "candidatesTokenCount": 4, "totalTokenCount": 15},
            },
        )

    config = make_provider(
        "gem",
        provider_type=ProviderType.GOOGLE,
        base_url="http://gem.test",
        models=("gemini-1.5-flash",),
    )
    adapter = _adapter(config, handler)

    result = asyncio.run(adapter.complete(_request(), "gemini-1.5-flash", timeout=5))

    assert result.response.content == "Here is one."
    assert result.response.usage.total == 15
    request = seen[0]
    assert request.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
    assert request.headers["x-goog-api-key"] == _SECRET
    body = json.loads(request.content)
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["systemInstruction"]["parts"][0]["text"] == "Be brief."


def test_ollama_needs_no_credential_and_is_free() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat"
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(
            200,
            json={
                "model": "llama3.1:8b",
                "message": {"role": "assistant", "content": "Local answer"},
                "prompt_eval_count": 40,
                "eval_count": 12,
            },
        )

    config = make_provider(
        "local",
        provider_type=ProviderType.OLLAMA,
        base_url="http://local.test",
        credential_ref=None,
        models=("llama3.1:8b",),
    )
    adapter = _adapter(config, handler, secrets={})

    result = asyncio.run(adapter.complete(_request(), "llama3.1:8b", timeout=5))

    assert result.response.content == "Local answer"
    assert result.response.usage.total == 52
    assert result.response.cost == 0.0


def test_ollama_without_base_url_is_configuration_error() -> None:
    config = make_provider("local", provider_type=ProviderType.OLLAMA, base_url=None, credential_ref=None)
    adapter = _adapter(config, lambda request: httpx.Response(200), secrets={})

    probe = asyncio.run(adapter.probe(timeout=1))

    assert not probe.ok
    assert probe.failure.reason is FailureReason.CONFIGURATION_ERROR
    assert "base URL not configured" in probe.failure.message


def test_perplexity_probes_with_minimal_completion() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=completion_body("pong", model="sonar"))

    config = make_provider(
        "pplx", provider_type=ProviderType.PERPLEXITY, base_url="http://pplx.test", models=("sonar",)
    )
    adapter = _adapter(config, handler)

    probe = asyncio.run(adapter.probe(timeout=1))

    assert probe.ok
    assert probe.models == ("sonar",)
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content)["max_tokens"] == 1


@pytest.mark.parametrize(
    ("status", "body", "reason"),
    [
        (401, {"error": "bad key"}, FailureReason.API_KEY_INVALID),
        (403, {"error": "forbidden"}, FailureReason.API_KEY_INVALID),
        (429, {"error": "quota exceeded"}, FailureReason.RATE_LIMIT),
        (404, {"error": "model not found"}, FailureReason.MODEL_UNAVAILABLE),
        (500, {"error": "internal"}, FailureReason.SERVER_ERROR),
        (400, {"error": "bad request"}, FailureReason.UNKNOWN),
    ],
)
def test_http_failures_are_classified(status: int, body: dict, reason: FailureReason) -> None:
    adapter = _adapter(make_provider("oa"), lambda request: httpx.Response(status, json=body))

    result = asyncio.run(adapter.complete(_request(), "gpt-4o-mini", timeout=5))

    assert not result.ok
    assert result.failure.reason is reason


def test_rate_limit_carries_retry_after() -> None:
    adapter = _adapter(
        make_provider("oa"),
        lambda request: httpx.Response(429, headers={"retry-after": "7"}, json={"error": "slow down"}),
    )

    result = asyncio.run(adapter.complete(_request(), "gpt-4o-mini", timeout=5))

    assert result.failure.retry_after_seconds == 7.0


def test_malformed_body_is_unknown_failure() -> None:
    adapter = _adapter(make_provider("oa"), lambda request: httpx.Response(200, json={"choices": []}))

    result = asyncio.run(adapter.complete(_request(), "gpt-4o-mini", timeout=5))

    assert result.failure.reason is FailureReason.UNKNOWN
    assert "unexpected response shape" in result.failure.message


def test_error_bodies_echoing_secrets_are_redacted() -> None:
    adapter = _adapter(
        make_provider("oa"),
        lambda request: httpx.Response(500, text=f"upstream rejected Bearer {_SECRET}"),
    )

    result = asyncio.run(adapter.complete(_request(), "gpt-4o-mini", timeout=5))

    assert _SECRET not in result.failure.message
    assert "[REDACTED]" in result.failure.message


def test_every_provider_type_has_an_adapter() -> None:
    assert set(ADAPTER_TYPES) == set(ProviderType)


def test_adapter_pool_rebuilds_on_config_change() -> None:
    pool = AdapterPool(StaticCredentialStore({"oa-key": _SECRET}))
    config = make_provider("oa")

    first = pool.get(config)
    assert pool.get(config) is first

    changed = pool.get(make_provider("oa", timeout_seconds=10.0))
    assert changed is not first
    assert changed.config.timeout_seconds == 10.0
