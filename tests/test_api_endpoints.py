# tests/test_api_endpoints.py
"""
HTTP surface: /search, /ai/session, /ai/turn, /ai/transcribe.
Services are built from fakes and a disposable SQLite cache.
"""
import itertools

import pytest
from fastapi.testclient import TestClient

from caloric.agent.loop import AgentService
from caloric.agent.sessions import InMemorySessionStore
from caloric.agent.tools import ToolExecutor
from caloric.app import Services, create_app, parse_boolean, parse_integer
from caloric.connectors.nutrition_client import UpstreamError
from caloric.llm_wrapper import ChatTurn, MockTranscriber
from caloric.orchestrator import SearchOrchestrator
from fakes import FakeNutritionClient, ScriptedChat, make_cache, search_items, tool_call


@pytest.fixture
def upstream():
    return FakeNutritionClient(search_data=search_items(("1", "1"), ("2", "1")))


@pytest.fixture
def chat():
    return ScriptedChat()


@pytest.fixture
def client(tmp_path, upstream, chat):
    orchestrator = SearchOrchestrator(make_cache(tmp_path), upstream)
    counter = itertools.count(1)
    agent = AgentService(
        store=InMemorySessionStore(),
        executor=ToolExecutor(orchestrator, new_id=lambda: f"s{next(counter)}"),
        chat=chat,
        transcriber=MockTranscriber(),
    )
    app = create_app(services=Services(orchestrator=orchestrator, agent=agent))
    with TestClient(app) as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_search_returns_payload(client, upstream):
    r = client.get("/search", params={"query": "  banana ", "countryCode": "gb", "resourceType": "FOODS"})
    assert r.status_code == 200
    j = r.json()
    assert j["detailCount"] == 2
    assert [d["foodId"] for d in j["details"]] == ["1", "2"]
    assert j["search"]["status"] == 200

    p = upstream.search_calls[0]
    assert (p.query, p.offset, p.max_items, p.country_code, p.resource_type) == ("banana", 0, 100, "GB", "foods")

    again = client.get("/search", params={"query": "banana", "countryCode": "GB"})
    assert again.json()["searchResponseId"] == j["searchResponseId"]
    assert len(upstream.search_calls) == 1


def test_search_param_clamping(client, upstream):
    client.get("/search", params={"query": "x", "offset": "-4", "maxItems": "5000", "includeDetails": "0"})
    client.get("/search", params={"query": "y", "maxItems": "0", "offset": "abc"})
    assert [(p.offset, p.max_items) for p in upstream.search_calls] == [(0, 1000), (0, 1)]


def test_search_without_details(client, upstream):
    r = client.get("/search", params={"query": "z", "includeDetails": "false"})
    assert r.json()["details"] == []
    assert upstream.detail_calls == []


def test_search_requires_query(client):
    r = client.get("/search", params={"query": "   "})
    assert r.status_code == 400
    assert r.json()["error_code"] == "E_QUERY_REQUIRED"


def test_search_upstream_failure_is_502(client, upstream, monkeypatch):
    async def boom(params):
        raise UpstreamError("search timed out")

    monkeypatch.setattr(upstream, "search_nutrition", boom)
    r = client.get("/search", params={"query": "banana"})
    assert r.status_code == 502
    assert r.json() == {"status": "error", "error_code": "E_SEARCH_FAILED", "message": "search timed out"}


def test_parsers():
    assert parse_integer("12abc", 0) == 12
    assert parse_integer(" ", 7) == 7
    assert parse_integer(None, 7) == 7
    assert parse_boolean("TRUE", False) is True
    assert parse_boolean("0", True) is False
    assert parse_boolean("maybe", True) is True


def test_agent_round_trip(client, chat):
    chat.turns = [
        ChatTurn(tool_calls=[tool_call("c1", "searchFoods", query="oats", limit=1)]),
        ChatTurn(assistant_text="Here is what I found.", tool_calls=[
            tool_call("a1", "requestFoodApprovals",
                      suggestions=[{"resultId": "r1", "meal": "breakfast", "portion": 1, "reason": "oats"}]),
        ]),
        ChatTurn(assistant_text="Logged."),
    ]

    r = client.post("/ai/session", json={"userId": "u1"})
    assert r.status_code == 200
    session = r.json()
    assert session["status"] == "ready"
    sid = session["sessionId"]

    r = client.post("/ai/turn", json={"sessionId": sid, "userId": "u1",
                                      "action": {"type": "user-message", "message": "log oats"}})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "awaiting-approval"
    assert [e["type"] for e in body["events"]] == ["search", "assistant", "approval"]
    approval = body["events"][-1]
    assert approval["suggestions"][0]["suggestionId"] == "s1"
    assert approval["suggestions"][0]["food"]["name"] == "Detail 1"

    r = client.post("/ai/turn", json={"sessionId": sid, "userId": "u1",
                                      "action": {"type": "approval", "toolCallId": "a1",
                                                 "suggestionId": "s1", "approved": True}})
    assert r.json() == {"status": "ready", "events": [{"type": "assistant", "text": "Logged."}]}


def test_turn_errors_map_to_status_codes(client):
    sid = client.post("/ai/session", json={"userId": "u1"}).json()["sessionId"]
    msg = {"type": "user-message", "message": "hi"}

    r = client.post("/ai/turn", json={"sessionId": sid, "userId": "u2", "action": msg})
    assert r.status_code == 403
    assert r.json()["error_code"] == "E_SESSION_FORBIDDEN"

    r = client.post("/ai/turn", json={"sessionId": "missing", "userId": "u1", "action": msg})
    assert r.status_code == 404

    r = client.post("/ai/turn", json={"sessionId": sid, "userId": "u1",
                                      "action": {"type": "approval", "toolCallId": "x",
                                                 "suggestionId": "y", "approved": True}})
    assert r.status_code == 409

    r = client.post("/ai/turn", json={"sessionId": sid, "userId": "u1",
                                      "action": {"type": "user-message", "message": "   "}})
    assert r.status_code == 422

    r = client.post("/ai/turn", json={"sessionId": sid, "userId": "u1", "action": {"type": "dance"}})
    assert r.status_code == 422


def test_session_requires_user(client):
    assert client.post("/ai/session", json={}).status_code == 422


def test_transcribe(client):
    r = client.post("/ai/transcribe", content=b"\x00\x01\x02")
    assert r.status_code == 200
    assert r.json() == {"text": "(mock transcript of 3 bytes)"}

    r = client.post("/ai/transcribe", content=b"")
    assert r.status_code == 400
    assert r.json()["error_code"] == "E_AUDIO_INVALID"


def test_transcribe_checks_session_owner(client):
    sid = client.post("/ai/session", json={"userId": "u1"}).json()["sessionId"]
    r = client.post("/ai/transcribe", params={"sessionId": sid, "userId": "u2"}, content=b"abc")
    assert r.status_code == 403
