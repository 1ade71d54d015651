import asyncio

import httpx
from fastapi.testclient import TestClient

from llm_orchestrator.api.main import create_app
from llm_orchestrator.orchestrator import build_orchestrator
from llm_orchestrator.registry.credentials import StaticCredentialStore
from support import FixedClock, completion_body, make_provider, routed_transport

_SECRET = "sk-live-0123456789abcdefghij"


def _client(clock: FixedClock, completion_status: int = 200) -> TestClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json={"data": [{"id": "gpt-4o-mini"}]})
        if completion_status != 200:
            return httpx.Response(completion_status, json={"error": "down"})
        return httpx.Response(200, json=completion_body("Loops repeat a block of code."))

    orchestrator = build_orchestrator(
        providers=[make_provider("p1", max_cost_per_day=0.000001)],
        credentials=StaticCredentialStore({"p1-key": _SECRET}),
        transport=routed_transport({"p1.test": handler}),
        clock=clock,
    )
    asyncio.run(orchestrator.monitor.check_all())
    return TestClient(create_app(orchestrator, start_monitor=False))


def _open_conversation(client: TestClient) -> str:
    profile = client.put("/users/u1/profile", json={"name": "Ada", "experience_level": "beginner"})
    assert profile.status_code == 200
    conversation = client.post("/conversations", json={"user_id": "u1", "concept_id": "loops"})
    assert conversation.status_code == 200
    return conversation.json()["conversation_id"]


def test_respond_status_and_usage_endpoints(clock: FixedClock) -> None:
    with _client(clock) as client:
        assert client.get("/health").json() == {
            "status": "ok",
            "providers_enabled": 1,
            "monitor_running": False,
        }
        conversation_id = _open_conversation(client)

        respond = client.post(f"/conversations/{conversation_id}/respond", json={"message": "Explain loops"})
        assert respond.status_code == 200
        payload = respond.json()
        assert payload["reply"] == "Loops repeat a block of code."
        assert payload["provider_used"] == "p1"
        assert payload["fallbacks_used"] == []
        assert payload["context_info"]["compression_level"] == 0

        statuses = client.get("/providers/status").json()["items"]
        assert [item["provider_id"] for item in statuses] == ["p1"]
        assert statuses[0]["requests_today"] == 1
        assert statuses[0]["health_status"] == "healthy"

        summary = client.get("/usage/summary").json()
        assert summary["total_requests"] == 1
        assert summary["providers"]["p1"]["success_rate"] == 1.0

        alerts = client.get("/usage/alerts").json()["items"]
        assert alerts[0]["provider_id"] == "p1"
        assert alerts[0]["severity"] == "critical"


def test_exhaustion_maps_to_bad_gateway(clock: FixedClock) -> None:
    with _client(clock, completion_status=500) as client:
        conversation_id = _open_conversation(client)

        response = client.post(f"/conversations/{conversation_id}/respond", json={"message": "Explain loops"})

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["error"] == "AI service unavailable"
    assert detail["fallbacks_used"] == ["P1 (SERVER_ERROR)"]
    assert detail["attempts"] == 1


def test_invalid_input_and_unknown_ids(clock: FixedClock) -> None:
    with _client(clock) as client:
        conversation_id = _open_conversation(client)

        blank = client.post(f"/conversations/{conversation_id}/respond", json={"message": "   "})
        unknown_conversation = client.post("/conversations/missing/respond", json={"message": "hi"})
        unknown_user = client.post("/conversations", json={"user_id": "ghost"})
        unknown_provider = client.get("/providers/nope/status")
        unknown_check = client.post("/providers/nope/health-check")

    assert blank.status_code == 400
    assert unknown_conversation.status_code == 400
    assert unknown_user.status_code == 404
    assert unknown_provider.status_code == 404
    assert unknown_check.status_code == 404


def test_manual_health_check_never_leaks_credentials(clock: FixedClock) -> None:
    with _client(clock) as client:
        response = client.post("/providers/p1/health-check")
        single = client.get("/providers/p1/status")

    assert response.status_code == 200
    payload = response.json()
    assert payload["health_status"] == "healthy"
    assert payload["error_class"] is None
    assert _SECRET not in response.text
    assert "p1-key" not in response.text
    assert single.json()["name"] == "P1"
