import asyncio
import json

import httpx
import pytest

from llm_orchestrator.errors import AllProvidersExhausted, InputValidationError, NotFoundError
from llm_orchestrator.orchestrator import GenerateOptions, Orchestrator, build_orchestrator
from llm_orchestrator.registry.credentials import StaticCredentialStore
from llm_orchestrator.types import UserProfile
from support import FixedClock, completion_body, make_provider, routed_transport

_MODELS = {"data": [{"id": "gpt-4o-mini"}]}
_REPLY = "A closure keeps its enclosing scope alive."


def _provider_handler(completion_status: int, bodies: list[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json=_MODELS)
        bodies.append(json.loads(request.content))
        if completion_status != 200:
            return httpx.Response(completion_status, json={"error": "upstream failure"})
        return httpx.Response(200, json=completion_body(_REPLY))

    return handler


def _orchestrator(
    clock: FixedClock, p1_status: int, p2_status: int
) -> tuple[Orchestrator, dict[str, list[dict]]]:
    bodies: dict[str, list[dict]] = {"p1": [], "p2": []}
    transport = routed_transport(
        {
            "p1.test": _provider_handler(p1_status, bodies["p1"]),
            "p2.test": _provider_handler(p2_status, bodies["p2"]),
        }
    )
    orchestrator = build_orchestrator(
        providers=[make_provider("p1", priority=1), make_provider("p2", priority=2)],
        credentials=StaticCredentialStore(
            {"p1-key": "sk-p1-0123456789abcdef", "p2-key": "sk-p2-0123456789abcdef"}
        ),
        transport=transport,
        clock=clock,
    )
    orchestrator.profiles.upsert(UserProfile(user_id="u1", name="Ada", experience_level="beginner"))
    asyncio.run(orchestrator.monitor.check_all())
    return orchestrator, bodies


def _ask(orchestrator: Orchestrator, conversation_id: str, message: str, **options):
    return asyncio.run(
        orchestrator.generate_response(conversation_id, message, GenerateOptions(**options))
    )


def test_failed_primary_falls_back_and_records_the_exchange(clock: FixedClock) -> None:
    orchestrator, bodies = _orchestrator(clock, 500, 200)
    conversation = orchestrator.start_conversation("u1", concept_id="closures")

    result = _ask(orchestrator, conversation.conversation_id, "What is a closure?")

    assert result.reply == _REPLY
    assert result.provider_used == "p2"
    assert result.model_used == "gpt-4o-mini"
    assert result.tokens == 20
    assert result.fallbacks_used == ["P1 (SERVER_ERROR)"]
    assert result.context_info.relevant_chunks == 0
    assert result.context_info.compression_level == 0
    assert not result.context_info.recap_included

    turns = orchestrator.history.all_turns(conversation.conversation_id)
    assert [(turn.role, turn.content) for turn in turns] == [
        ("user", "What is a closure?"),
        ("assistant", _REPLY),
    ]
    assert all(turn.concept_id == "closures" for turn in turns)

    records = orchestrator.ledger.records()
    assert [(record.provider_id, record.success) for record in records] == [("p1", False), ("p2", True)]
    assert records[1].user_id == "u1"
    assert records[1].conversation_id == conversation.conversation_id

    messages = bodies["p2"][0]["messages"]
    assert messages[0]["role"] == "system"
    assert "Learner: Ada" in messages[0]["content"]
    assert messages[-1] == {"role": "user", "content": "What is a closure?"}


def test_second_turn_carries_conversation_history(clock: FixedClock) -> None:
    orchestrator, bodies = _orchestrator(clock, 200, 200)
    conversation = orchestrator.start_conversation("u1")

    _ask(orchestrator, conversation.conversation_id, "What is a closure?")
    clock.advance(minutes=1)
    second = _ask(orchestrator, conversation.conversation_id, "Show me an example")

    assert second.provider_used == "p1"
    assert second.fallbacks_used == []
    assert bodies["p2"] == []
    roles_and_content = [(m["role"], m["content"]) for m in bodies["p1"][1]["messages"]]
    assert roles_and_content[1:] == [
        ("user", "What is a closure?"),
        ("assistant", _REPLY),
        ("user", "Show me an example"),
    ]
    assert len(orchestrator.history.all_turns(conversation.conversation_id)) == 4
    assert orchestrator.ledger.requests_today("p1") == 2


def test_options_reach_the_provider(clock: FixedClock) -> None:
    orchestrator, bodies = _orchestrator(clock, 200, 200)
    conversation = orchestrator.start_conversation("u1")

    _ask(orchestrator, conversation.conversation_id, "Hi", max_tokens=50, temperature=0.1)

    assert bodies["p1"][0]["max_tokens"] == 50
    assert bodies["p1"][0]["temperature"] == pytest.approx(0.1)


def test_exhaustion_leaves_history_untouched(clock: FixedClock) -> None:
    orchestrator, _ = _orchestrator(clock, 500, 503)
    conversation = orchestrator.start_conversation("u1")

    with pytest.raises(AllProvidersExhausted) as excinfo:
        _ask(orchestrator, conversation.conversation_id, "What is a closure?")

    assert excinfo.value.fallbacks_used == ["P1 (SERVER_ERROR)", "P2 (SERVER_ERROR)"]
    assert excinfo.value.attempts == 2
    assert orchestrator.history.all_turns(conversation.conversation_id) == []
    assert len(orchestrator.ledger.records()) == 2


@pytest.mark.parametrize(
    ("conversation_id", "message"),
    [("", "hello"), ("   ", "hello"), ("missing", "hello"), (None, "hello")],
)
def test_bad_input_is_rejected_before_routing(
    clock: FixedClock, conversation_id: str | None, message: str
) -> None:
    orchestrator, bodies = _orchestrator(clock, 200, 200)

    with pytest.raises(InputValidationError):
        _ask(orchestrator, conversation_id, message)

    assert bodies["p1"] == []


def test_empty_message_is_rejected(clock: FixedClock) -> None:
    orchestrator, bodies = _orchestrator(clock, 200, 200)
    conversation = orchestrator.start_conversation("u1")

    for message in ("", "  \n "):
        with pytest.raises(InputValidationError):
            _ask(orchestrator, conversation.conversation_id, message)

    assert orchestrator.ledger.records() == []


def test_start_conversation_requires_known_user(clock: FixedClock) -> None:
    orchestrator, _ = _orchestrator(clock, 200, 200)

    with pytest.raises(NotFoundError):
        orchestrator.start_conversation("ghost")


def test_status_reports_health_and_daily_usage(clock: FixedClock) -> None:
    orchestrator, _ = _orchestrator(clock, 500, 200)
    conversation = orchestrator.start_conversation("u1")
    _ask(orchestrator, conversation.conversation_id, "What is a closure?")

    reports = orchestrator.get_status()
    single = orchestrator.get_status("p2")

    assert [report.provider_id for report in reports] == ["p1", "p2"]
    assert all(report.health_status == "healthy" for report in reports)
    assert single.requests_today == 1
    assert single.cost_today > 0
    assert single.last_checked == clock()
    assert reports[0].requests_today == 1
    assert reports[0].cost_today == 0.0

    with pytest.raises(NotFoundError):
        orchestrator.get_status("nope")


def test_disabled_provider_reports_unknown(clock: FixedClock) -> None:
    orchestrator, _ = _orchestrator(clock, 200, 200)
    orchestrator.registry.set_enabled("p2", False)

    report = orchestrator.get_status("p2")

    assert report.enabled is False
    assert report.health_status == "unknown"


def test_status_reports_recent_errors_per_reason(clock: FixedClock) -> None:
    orchestrator, _ = _orchestrator(clock, 500, 200)
    conversation = orchestrator.start_conversation("u1")
    _ask(orchestrator, conversation.conversation_id, "What is a closure?")

    failing = orchestrator.get_status("p1")
    healthy = orchestrator.get_status("p2")

    assert failing.recent_errors == {"SERVER_ERROR": 1}
    assert failing.unstable is False
    assert healthy.recent_errors == {}

    clock.advance(hours=1, minutes=1)
    assert orchestrator.get_status("p1").recent_errors == {}
