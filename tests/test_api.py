"""HTTP layer: request validation, session flow, error mapping, auth."""

import json
import os
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from autoflow_agent.agent.compiler import GraphCompiler
from autoflow_agent.agent.pipeline import FlowPipeline
from autoflow_agent.api import SessionStore, app
from autoflow_agent.errors import AuthError, EngineError
from autoflow_agent.knowledge.catalog import PiecesRegistry, fallback_catalog

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedProducer:
    def __init__(self, *responses: str) -> None:
        self.responses = list(responses)
        self.calls: list[tuple] = []

    async def generate(self, system_prompt, context, user_message, temperature=None):
        self.calls.append((system_prompt, context, user_message, temperature))
        return self.responses.pop(0)


def _flow(cron="0 8 * * *", **extra):
    d = {
        "displayName": "Daily mail",
        "trigger": {"type": "SCHEDULE", "input": {"cronExpression": cron}},
        "actions": [{
            "type": "PIECE", "pieceName": "@activepieces/piece-gmail",
            "actionName": "send-email", "input": {"to": "a@b.c"},
        }],
        "explanation": "Emails you every morning",
        "connections_needed": ["gmail"],
    }
    d.update(extra)
    return d


@pytest.fixture
def wired(recording_client):
    """Install fakes on app.state; the lifespan is not run by a bare TestClient."""
    producer = ScriptedProducer()
    engine = recording_client()
    api_client = AsyncMock()
    api_client.ping.return_value = True
    registry = PiecesRegistry(AsyncMock(), catalog=fallback_catalog())

    app.state.pipeline = FlowPipeline(producer, registry, GraphCompiler(engine), api_client)
    app.state.client = api_client
    app.state.registry = registry
    app.state.sessions = SessionStore()

    return TestClient(app), producer, engine, api_client


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class TestChat:
    def test_short_message_is_rejected_without_producer_call(self, wired):
        http, producer, _, _ = wired
        r = http.post("/api/chat/generate", json={"message": " hi "})

        assert r.status_code == 400
        assert producer.calls == []

    def test_generate_returns_preview(self, wired):
        http, producer, engine, _ = wired
        producer.responses.append(json.dumps(_flow()))

        r = http.post("/api/chat/generate", json={"message": "email me at 8"})

        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "PREVIEW"
        assert body["sessionId"]
        assert body["flow"]["displayName"] == "Daily mail"
        assert body["connectionsNeeded"] == ["gmail"]
        assert body["retried"] is False
        assert engine.calls == []

    def test_session_history_and_deploy_from_session(self, wired):
        http, producer, engine, _ = wired
        producer.responses.extend([json.dumps(_flow()), json.dumps(_flow(cron="0 9 * * *"))])

        first = http.post("/api/chat/generate", json={"message": "email me at 8"}).json()
        sid = first["sessionId"]
        http.post("/api/chat/generate", json={"message": "actually at 9", "sessionId": sid})

        # second call sees the first exchange as context
        assert [m["role"] for m in producer.calls[1][1]] == ["user", "assistant"]

        r = http.post("/api/chat/deploy", json={"sessionId": sid, "autoPublish": True})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["flowId"] == "flow-1"
        assert body["status"] == "PUBLISHED"
        assert body["stepsCreated"] == 1
        trigger = engine.calls[1][1]
        assert trigger["settings"]["input"]["cronExpression"] == "0 9 * * *"

    def test_deploy_without_flow_is_400(self, wired):
        http, _, engine, _ = wired
        r = http.post("/api/chat/deploy", json={"sessionId": "nope"})

        assert r.status_code == 400
        assert engine.calls == []

    def test_modify_requires_previous_flow(self, wired):
        http, _, _, _ = wired
        r = http.post("/api/chat/modify", json={"sessionId": "nope", "modification": "at 9"})
        assert r.status_code == 400

    def test_explain_inline_flow(self, wired):
        http, producer, _, _ = wired
        producer.responses.append("Sends an email every morning.")

        r = http.post("/api/chat/explain", json={"flowJson": _flow()})
        assert r.json() == {"explanation": "Sends an email every morning."}


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    def test_schema_error_is_422_with_findings(self, wired):
        http, _, engine, _ = wired
        bad = _flow()
        bad["actions"] = [{"type": "BRANCH", "conditions": []}]

        r = http.post("/api/chat/deploy", json={"flowJson": bad})

        assert r.status_code == 422
        assert any("actions[0]" in e for e in r.json()["errors"])
        assert engine.calls == []

    def test_safety_block_is_422(self, wired):
        http, _, _, _ = wired
        r = http.post("/api/chat/deploy", json={"flowJson": _flow(cron="*/2 * * * *")})

        assert r.status_code == 422
        assert r.json()["blocks"]

    def test_provider_error_is_422(self, wired):
        http, producer, _, _ = wired
        producer.responses.append("no json here")

        r = http.post("/api/chat/generate", json={"message": "do something"})
        assert r.status_code == 422
        assert r.json()["code"] == "INVALID_RESPONSE"

    def test_engine_error_keeps_remote_status(self, wired):
        http, _, _, api_client = wired
        api_client.get_flow.side_effect = EngineError(
            "Activepieces API Error: 404", status_code=404, response_body="{}", path="/flows/x",
        )

        r = http.get("/api/flows/x")
        assert r.status_code == 404
        assert r.json()["path"] == "/flows/x"

    def test_transport_engine_error_is_502(self, wired):
        http, _, _, api_client = wired
        api_client.list_flows.side_effect = EngineError("connection refused", path="/flows")

        assert http.get("/api/flows").status_code == 502

    def test_auth_error_is_503(self, wired):
        http, _, _, api_client = wired
        api_client.list_connections.side_effect = AuthError("bad credentials", status_code=401)

        assert http.get("/api/connections").status_code == 503


# ---------------------------------------------------------------------------
# Flows, connections, pieces, health
# ---------------------------------------------------------------------------


class TestPassThrough:
    def test_flow_status_route(self, wired):
        http, _, _, api_client = wired
        r = http.post("/api/flows/f1/status", json={"enabled": False})

        assert r.json() == {"success": True, "status": "DISABLED"}
        api_client.set_flow_status.assert_awaited_once_with("f1", False)

    def test_connections_check(self, wired):
        http, _, _, api_client = wired
        api_client.list_connections.return_value = [{"pieceName": "@activepieces/piece-gmail"}]

        body = http.post("/api/connections/check", json={"needed": ["gmail", "slack"]}).json()

        assert body["allConnected"] is False
        assert body["missing"] == ["slack"]
        assert "slack" in body["message"]

    def test_piece_lookup_by_scoped_name(self, wired):
        http, _, _, _ = wired
        r = http.get("/api/pieces/@activepieces/piece-gmail")

        assert r.status_code == 200
        assert "send-email" in r.json()["actions"]
        assert http.get("/api/pieces/@acme/piece-none").status_code == 404

    def test_piece_stats_and_list(self, wired):
        http, _, _, _ = wired
        stats = http.get("/api/pieces/stats").json()
        listing = http.get("/api/pieces").json()

        assert stats["mode"] == "fallback"
        assert listing["total"] == stats["totalPieces"]

    def test_health(self, wired):
        http, _, _, api_client = wired
        api_client.ping.return_value = False

        body = http.get("/api/health").json()
        assert body["api"] == "ok"
        assert body["activepieces"] == "unreachable"
        assert body["catalog"]["mode"] == "fallback"


# ---------------------------------------------------------------------------
# API key
# ---------------------------------------------------------------------------


class TestApiKey:
    def test_missing_key_is_401_when_configured(self, wired):
        http, _, _, _ = wired
        with patch.dict(os.environ, {"AGENT_API_KEY": "k-123"}):
            assert http.get("/api/pieces/stats").status_code == 401
            ok = http.get("/api/pieces/stats", headers={"Authorization": "Bearer k-123"})
            assert ok.status_code == 200

    def test_health_is_open(self, wired):
        http, _, _, _ = wired
        with patch.dict(os.environ, {"AGENT_API_KEY": "k-123"}):
            assert http.get("/api/health").status_code == 200
