import pytest
from fastapi.testclient import TestClient

from decision_engine.api.server import create_app


@pytest.fixture
def client(engine, scheduler):
    return TestClient(create_app(engine, scheduler, start_scheduler=False))


def payload(**overrides):
    data = {
        "user_id": "u1",
        "event_type": "message",
        "channel": "push",
        "title": "New message",
        "message": "Alice sent you a photo",
        "source": "chat",
        "priority_hint": "high",
    }
    data.update(overrides)
    return data


def test_evaluate_returns_decision(client):
    resp = client.post("/v1/notifications/evaluate", json=payload(event_id="evt-1"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["event_id"] == "evt-1"
    assert body["disposition"] == "NOW"
    assert body["reasons"][-1] == "threshold-now"
    assert body["scheduled_for"] is None


def test_evaluate_rejects_missing_fields(client):
    data = payload()
    del data["user_id"]
    assert client.post("/v1/notifications/evaluate", json=data).status_code == 422


def test_unknown_channel_is_a_never_decision(client):
    body = client.post("/v1/notifications/evaluate", json=payload(channel="fax")).json()
    assert body["disposition"] == "NEVER"
    assert body["reasons"] == ["invalid-schema"]


def test_audit_trail(client):
    client.post("/v1/notifications/evaluate", json=payload(event_id="evt-2", priority_hint="medium"))
    resp = client.get("/v1/notifications/evt-2/audit")
    assert resp.status_code == 200
    [evaluation] = resp.json()["evaluations"]
    assert evaluation["decision"]["disposition"] == "LATER"
    assert evaluation["checks"]["score"]["base"] == 0.52


def test_audit_trail_unknown_event(client):
    assert client.get("/v1/notifications/nope/audit").status_code == 404


def test_confirm_dispatch(client):
    client.post("/v1/notifications/evaluate", json=payload(event_id="evt-3"))
    assert client.post("/v1/notifications/evt-3/confirm", json={}).json()["status"] == "confirmed"
    assert client.post("/v1/notifications/nope/confirm", json={}).status_code == 404


def test_history_filters_by_disposition(client):
    client.post("/v1/notifications/evaluate", json=payload())
    other = payload(title="Invoice ready", message="April statement", source="billing", priority_hint="low")
    client.post("/v1/notifications/evaluate", json=other)
    body = client.get("/v1/notifications/history/u1", params={"action": "never"}).json()
    assert body["total"] == 1
    assert body["results"][0]["disposition"] == "NEVER"


def test_rules_listing_and_creation(client):
    listing = client.get("/v1/rules").json()
    assert listing["version"] == 1
    assert listing["rules"][0]["name"] == "always_send_security_alerts"

    resp = client.post("/v1/rules", json={
        "name": "mute_chat", "priority": 80, "action": "NEVER",
        "conditions": [{"field": "source", "op": "eq", "value": "chat"}],
    })
    assert resp.json()["version"] == 2
    body = client.post("/v1/notifications/evaluate", json=payload()).json()
    assert body["disposition"] == "NEVER"
    assert "rule-match:mute_chat" in body["reasons"]


def test_invalid_rule_is_rejected(client):
    resp = client.post("/v1/rules", json={"name": "x", "action": "MAYBE", "conditions": []})
    assert resp.status_code == 422


def test_publish_disables_channel(client):
    resp = client.post("/v1/rules/publish", json={"disabled_channels": ["push"]})
    assert resp.json() == {"status": "published", "version": 2}
    body = client.post("/v1/notifications/evaluate", json=payload()).json()
    assert body["reasons"] == ["channel-disabled"]


def test_defer_queue_listing_and_run(client, clock):
    client.post("/v1/notifications/evaluate", json=payload(event_id="evt-4", priority_hint="medium"))
    entries = client.get("/v1/defer-queue", params={"status": "pending"}).json()["entries"]
    assert [e["event_id"] for e in entries] == ["evt-4"]

    assert client.post("/v1/defer-queue/run").json()["processed"] == 0
    clock.advance(minutes=15)
    body = client.post("/v1/defer-queue/run").json()
    assert body["processed"] == 1
    assert body["decisions"][0]["attempt"] == 1


def test_defer_queue_unknown_status(client):
    assert client.get("/v1/defer-queue", params={"status": "lost"}).status_code == 422


def test_health_and_stats(client):
    health = client.get("/v1/health").json()
    assert health["status"] == "ok"
    assert health["components"]["ai_scorer"] == "absent"
    assert health["components"]["fallback_mode"] is True

    client.post("/v1/notifications/evaluate", json=payload())
    assert client.get("/v1/stats").json()["total_evaluated"] == 1
