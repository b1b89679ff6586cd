"""
HTTP surface - request validation, rejection status codes and read endpoints.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from agentsafe.api.main import create_app
from agentsafe.core.errors import ExecutorError, StoreUnavailableError

from conftest import revoke_payload, vote_payload


@pytest.fixture
def client(runtime):
    app = create_app(runtime)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


def queue(client, payload=None, kind="VOTE"):
    response = client.post("/queue", json={"actionKind": kind, "payload": payload or vote_payload()})
    assert response.status_code == 200, response.text
    return response.json()


class TestGovernorEndpoints:

    def test_recommend(self, client):
        response = client.post("/recommend", json={"actionKind": "VOTE", "payload": vote_payload()})
        assert response.status_code == 200
        data = response.json()
        assert data["verdict"] == "PASS"
        assert [s["name"] for s in data["stages"]] == ["capability", "policy", "budget", "simulation"]

    def test_unknown_kind_is_validation_error(self, client):
        response = client.post("/recommend", json={"actionKind": "TRANSFER", "payload": {}})
        assert response.status_code == 422

    def test_queue_blocked_is_422_rejection(self, client):
        response = client.post("/queue", json={"actionKind": "VOTE", "payload": vote_payload(support=5)})
        assert response.status_code == 422
        body = response.json()
        assert body["ok"] is False
        assert body["code"] == "SAFETY_BLOCKED"
        assert body["reason"]

    def test_queue_and_get(self, client):
        action = queue(client)
        assert action["status"] == "QUEUED"

        response = client.get(f"/queued/{action['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == action["id"]

        assert client.get("/queued/missing").status_code == 404

    def test_list_filters(self, client, clock):
        vote = queue(client)
        clock.advance(1)
        revoke = queue(client, revoke_payload(), kind="APPROVAL_REVOKE")

        ids = [a["id"] for a in client.get("/queued").json()["actions"]]
        assert ids == [revoke["id"], vote["id"]]

        ids = [a["id"] for a in client.get("/queued", params={"kind": "VOTE"}).json()["actions"]]
        assert ids == [vote["id"]]

        assert client.get("/queued", params={"status": "BOGUS"}).status_code == 422

    def test_execute_too_early_is_409(self, client):
        action = queue(client)
        response = client.post("/execute", json={"actionId": action["id"]})
        assert response.status_code == 409
        assert response.json()["code"] == "TOO_EARLY"

    def test_veto_then_execute(self, client, clock):
        action = queue(client)

        response = client.post("/veto", json={"actionId": action["id"], "reason": "not now"})
        assert response.status_code == 200
        assert response.json()["status"] == "VETOED"
        assert response.json()["veto_reason"] == "not now"

        clock.advance(700)
        response = client.post("/execute", json={"actionId": action["id"]})
        assert response.status_code == 409
        assert response.json() == {"ok": False, "code": "VETOED", "reason": "Action is VETOED"}

    def test_execute_success(self, client, clock, recording_executor):
        action = queue(client)
        clock.advance(600)

        response = client.post("/execute", json={"actionId": action["id"]})
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["txHash"].startswith("0x")
        assert body["receipt"] == f"receipt-{action['id']}"
        assert body["action"]["status"] == "EXECUTED"

        response = client.post("/veto", json={"actionId": action["id"]})
        assert response.status_code == 409
        assert response.json()["code"] == "ALREADY_EXECUTED"

    def test_execute_unknown_is_404(self, client):
        response = client.post("/execute", json={"actionId": "nope"})
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_executor_failure_is_502(self, client, clock, recording_executor):
        action = queue(client)
        clock.advance(600)
        recording_executor.fail_with = ExecutorError("relay down")

        response = client.post("/execute", json={"actionId": action["id"]})
        assert response.status_code == 502
        assert response.json()["code"] == "EXECUTOR_FAILED"

    def test_empty_action_id_rejected(self, client):
        assert client.post("/veto", json={"actionId": "  "}).status_code == 422

    def test_rejection_body_documented(self, client):
        paths = client.get("/openapi.json").json()["paths"]
        for path in ("/queue", "/veto", "/execute"):
            responses = paths[path]["post"]["responses"]
            for status_code in ("404", "409", "502"):
                assert responses[status_code]["content"]["application/json"]["schema"] == {
                    "$ref": "#/components/schemas/RejectionResponse"
                }


class TestStreamEndpoints:

    def test_webhook_and_reads(self, client):
        response = client.post("/stream/webhook", json={
            "healthFactor": 0.95,
            "protocol": "aave-v3",
            "debtPosition": "0xpos",
            "shortfallAmount": "1000",
        })
        assert response.status_code == 202
        body = response.json()
        assert body["alert"]["intent"] == "LIQUIDATION_REPAY"
        assert body["alert"]["event_id"] == body["event"]["id"]

        response = client.post("/stream/webhook", json={
            "healthFactor": 1.3, "protocol": "aave-v3", "debtPosition": "0xpos"})
        assert response.json()["alert"] is None

        events = client.get("/stream/events", params={"limit": 10}).json()["events"]
        assert [e["health_factor"] for e in events] == [1.3, 0.95]
        assert len(client.get("/stream/alerts").json()["alerts"]) == 1

        status = client.get("/stream/status").json()
        assert status["total_received"] == 2
        assert status["max_events"] == 5

    def test_events_capacity(self, client):
        for i in range(8):
            client.post("/stream/webhook", json={
                "healthFactor": 2.0, "protocol": "p", "debtPosition": f"d{i}"})
        events = client.get("/stream/events", params={"limit": 100}).json()["events"]
        assert len(events) == 5
        assert events[0]["debt_position"] == "d7"

    def test_webhook_validation(self, client):
        response = client.post("/stream/webhook", json={"healthFactor": -1, "protocol": "p", "debtPosition": "d"})
        assert response.status_code == 422


class TestLedgerAuditHealth:

    def test_budget(self, client, clock):
        action = queue(client)
        clock.advance(600)
        client.post("/execute", json={"actionId": action["id"]})

        data = client.get("/budget").json()
        assert data["spent_today_usd"] == 5
        assert data["treasury_usd"] == 500
        assert data["per_action_cap_usd"] == 50

    def test_audit(self, client):
        queue(client)
        events = client.get("/audit", params={"limit": 10}).json()["events"]
        assert events[0]["action"] == "action.queued"

    def test_health(self, client):
        queue(client)
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["queued_count"] == 1

    def test_store_failure_is_500(self, client, action_store):
        with patch.object(action_store, "get", side_effect=StoreUnavailableError("database is locked")):
            with patch("agentsafe.api.main.debug_enabled", return_value=False):
                response = client.get("/queued/abc")
        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}

    def test_store_failure_debug_detail(self, client, action_store):
        with patch.object(action_store, "get", side_effect=StoreUnavailableError("database is locked")):
            with patch("agentsafe.api.main.debug_enabled", return_value=True):
                response = client.get("/queued/abc")
        assert response.status_code == 500
        assert "database is locked" in response.json()["debug"]
