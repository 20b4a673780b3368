"""
Tests for the agent HTTP routes.

The application is started with its in-memory sample stores; the reasoning
backends are replaced with scripted fakes once startup has completed.
"""

import json

import pytest
from fastapi.testclient import TestClient
from jose import jwt as jose_jwt

from fundsagent.app import app_state, create_app
from fundsagent.config.settings import AgentSettings, StreamSettings, settings
from fundsagent.services.chat_service import ChatService
from fundsagent.services.engine_coordinator import AnalysisEngine, EngineCoordinator, ToolLoopEngine
from fundsagent.services.stream_adapter import StreamAdapter

from fakes import FakeChatClient, text_chunk, text_response, tool_call_response


def bearer(employee_number):
    token = jose_jwt.encode({"employee_number": employee_number}, "test-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def sse_events(body):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def fakes():
    return {
        "primary": FakeChatClient(engine_id="primary", display_name="FundsAgent"),
        "engine2": FakeChatClient(engine_id="engine2", display_name="Thinking Engine 2", model="deepseek-chat"),
        "engine3": FakeChatClient(engine_id="engine3", display_name="Thinking Engine 3", model="grok-3-mini"),
    }


@pytest.fixture
def test_client(monkeypatch, fakes):
    monkeypatch.setattr(settings, "dev_mode", True)
    with TestClient(create_app()) as client:
        adapter = StreamAdapter(StreamSettings(replay_delay_ms=0))
        agents = AgentSettings()
        app_state.chat_service = ChatService(
            fakes["primary"],
            app_state.tool_registry,
            app_state.access_service,
            app_state.conversation_service,
            adapter,
            agents,
        )
        app_state.engine_coordinator = EngineCoordinator(
            {
                "engine2": ToolLoopEngine(fakes["engine2"], adapter, app_state.tool_registry, agents),
                "engine3": AnalysisEngine(fakes["engine3"], adapter),
            },
            app_state.conversation_service,
            adapter,
            agents,
        )
        yield client


class TestAuthentication:
    def test_demo_caller_in_dev_mode(self, test_client, fakes):
        fakes["primary"].responses = [text_response("Hi Vikram.")]

        response = test_client.post("/api/agent/chat", json={"message": "hello"})

        assert response.status_code == 200
        assert response.json()["reply"] == "Hi Vikram."

    def test_missing_credentials_outside_dev_mode(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "dev_mode", False)

        response = test_client.post("/api/agent/chat", json={"message": "hello"})

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "authorization_error"

    def test_malformed_token(self, test_client):
        response = test_client.post(
            "/api/agent/chat", json={"message": "hello"}, headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    def test_unknown_employee(self, test_client):
        response = test_client.post("/api/agent/chat", json={"message": "hello"}, headers=bearer("9999"))

        assert response.status_code == 401

    def test_inactive_grant_is_forbidden(self, test_client):
        response = test_client.post("/api/agent/chat", json={"message": "hello"}, headers=bearer("1202"))

        assert response.status_code == 403
        assert "not enabled" in response.json()["error"]["message"]


class TestChatRoute:
    """POST and GET /api/agent/chat."""

    def test_json_reply(self, test_client, fakes):
        fakes["primary"].responses = [text_response("You are at 5.20 Cr MTD.")]

        response = test_client.post("/api/agent/chat", json={"message": "How am I doing?"}, headers=bearer("1101"))

        body = response.json()
        assert response.status_code == 200
        assert body["reply"] == "You are at 5.20 Cr MTD."
        assert body["conversationId"]
        assert body["tokensUsed"] == 12

    def test_message_is_required(self, test_client):
        response = test_client.post("/api/agent/chat", json={"message": "   "}, headers=bearer("1101"))

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "message is required"

    def test_proactive_request_without_message(self, test_client, fakes):
        fakes["primary"].responses = [text_response("Heads up: you are at 50% of target.")]

        response = test_client.post("/api/agent/chat", json={"isProactive": True}, headers=bearer("1100"))

        assert response.status_code == 200
        assert response.json()["reply"].startswith("Heads up")

    def test_degraded_reply_when_backend_is_unavailable(self, test_client, fakes):
        fakes["primary"].configured = False

        response = test_client.post("/api/agent/chat", json={"message": "hi"}, headers=bearer("1101"))

        assert response.status_code == 200
        assert response.json()["degraded"] is True

    def test_streamed_reply(self, test_client, fakes):
        fakes["primary"].responses = [text_response("Neha leads the team.")]

        response = test_client.post(
            "/api/agent/chat", json={"message": "Who leads?", "stream": True}, headers=bearer("1100")
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response.text)
        assert [e["type"] for e in events[:-1]] == ["token"] * (len(events) - 1)
        done = events[-1]
        assert done["type"] == "done"
        assert done["reply"] == "".join(e["token"] for e in events[:-1]) == "Neha leads the team."
        assert "systemPrompt" in done
        assert done["toolResultsForEngines"] == []

    def test_accept_header_selects_streaming(self, test_client, fakes):
        fakes["primary"].responses = [text_response("ok")]

        response = test_client.post(
            "/api/agent/chat",
            json={"message": "hi"},
            headers={**bearer("1101"), "Accept": "text/event-stream"},
        )

        assert sse_events(response.text)[-1]["type"] == "done"

    def test_history(self, test_client, fakes):
        fakes["primary"].responses = [text_response("First answer.")]
        conversation_id = test_client.post(
            "/api/agent/chat", json={"message": "First question"}, headers=bearer("1101")
        ).json()["conversationId"]

        listing = test_client.get("/api/agent/chat", headers=bearer("1101")).json()
        detail = test_client.get(
            "/api/agent/chat", params={"conversationId": conversation_id}, headers=bearer("1101")
        ).json()

        assert conversation_id in [c["id"] for c in listing["conversations"]]
        assert [m["content"] for m in detail["messages"]] == ["First question", "First answer."]

    def test_history_of_someone_elses_conversation(self, test_client, fakes):
        fakes["primary"].responses = [text_response("First answer.")]
        conversation_id = test_client.post(
            "/api/agent/chat", json={"message": "First question"}, headers=bearer("1101")
        ).json()["conversationId"]

        response = test_client.get(
            "/api/agent/chat", params={"conversationId": conversation_id}, headers=bearer("1102")
        )

        assert response.status_code == 404

    def test_archive(self, test_client, fakes):
        fakes["primary"].responses = [text_response("ok")]
        conversation_id = test_client.post(
            "/api/agent/chat", json={"message": "hi"}, headers=bearer("1101")
        ).json()["conversationId"]

        response = test_client.post(f"/api/agent/conversations/{conversation_id}/archive", headers=bearer("1101"))

        assert response.json()["conversation"]["isArchived"] is True


class TestEngineRoute:
    """POST /api/agent/chat/{engine_id}."""

    def test_unknown_engine(self, test_client):
        response = test_client.post("/api/agent/chat/engine9", json={"userMessage": "hi"}, headers=bearer("1100"))

        assert response.status_code == 404

    def test_question_is_required(self, test_client):
        response = test_client.post("/api/agent/chat/engine3", json={}, headers=bearer("1100"))

        assert response.status_code == 400

    def test_engine3_streams_analysis(self, test_client, fakes):
        fakes["engine3"].streams = [[text_chunk("Strategic "), text_chunk("view.")]]

        response = test_client.post(
            "/api/agent/chat/engine3",
            json={
                "userMessage": "What should I focus on?",
                "systemPrompt": "BASE",
                "messages": [{"tool": "get_my_performance", "arguments": {}, "result": {"mtd": None}}],
            },
            headers=bearer("1100"),
        )

        events = sse_events(response.text)
        assert events[-1]["type"] == "done"
        assert events[-1]["engine"] == "engine3"
        assert events[-1]["reply"] == "Strategic view."
        assert events[-1]["dataSources"] == ["get_my_performance"]

    def test_primary_handoff_is_accepted_as_is(self, test_client, fakes):
        fakes["primary"].responses = [
            tool_call_response(("get_team_performance", {})),
            text_response("Neha leads the team."),
        ]
        fakes["engine2"].responses = [text_response("Independent view.")]
        done = sse_events(test_client.post(
            "/api/agent/chat", json={"message": "Who leads?", "stream": True}, headers=bearer("1100")
        ).text)[-1]

        response = test_client.post(
            "/api/agent/chat/engine2",
            json={
                "messages": done["toolResultsForEngines"],
                "systemPrompt": done["systemPrompt"],
                "userMessage": "Who leads?",
                "conversationId": done["conversationId"],
            },
            headers=bearer("1100"),
        )

        assert response.status_code == 200
        assert sse_events(response.text)[-1]["reply"] == "Independent view."
        system = fakes["engine2"].calls[0]["messages"][0]["content"]
        assert system.startswith(done["systemPrompt"])
        assert "## Data retrieved for this question" in system
        assert '"tool": "get_team_performance"' in system

    def test_engine2_degrades_without_credentials(self, test_client, fakes):
        fakes["engine2"].configured = False

        response = test_client.post("/api/agent/chat/engine2", json={"userMessage": "hi"}, headers=bearer("1100"))

        events = sse_events(response.text)
        assert [e["type"] for e in events] == ["token", "done"]
        assert events[-1]["degraded"] is True


class TestHealthRoute:
    def test_liveness(self, test_client):
        response = test_client.get("/health/")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_readiness_reports_store(self, test_client):
        body = test_client.get("/health/ready").json()

        store = next(d for d in body["dependencies"] if d["name"] == "store")
        assert store["detail"] == "in_memory"
