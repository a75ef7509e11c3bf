import pytest
from fastapi.testclient import TestClient

from conftest import wait_for
from main import create_app
from engine.scan_manager import ScanManager
from engine.streaming import scan_topic

FREE = {"X-User-Id": "alice", "X-User-Role": "free"}
PRO = {"X-User-Id": "bob", "X-User-Role": "pro"}


@pytest.fixture
def client(store, executor, hub, gate):
    manager = ScanManager(store, executor, hub, gate=gate)
    app = create_app(manager=manager, heartbeat_seconds=0.2, background=False)
    with TestClient(app) as client:
        client.manager = manager
        yield client


def test_health_check(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["docker_available"] is True
    assert data["image_available"] is True
    assert data["active_containers"] == 0
    assert "X-Trace-Id" in resp.headers


def test_preflight(client, runtime):
    runtime.image_available = False
    resp = client.get("/containers/preflight")
    assert resp.status_code == 200
    assert resp.json()["image_available"] is False


def test_list_tools(client):
    resp = client.get("/tools")
    assert resp.status_code == 200
    assert "nmap" in {t["id"] for t in resp.json()}
    assert client.get("/tools/nikto").json()["target_kind"] == "url"
    assert client.get("/tools/hydra").status_code == 400


def test_create_scan_and_read_back(client):
    resp = client.post("/scans", json={"target": "example.com", "prompt": "ports", "tool": "nmap", "flags": ["-p", "443"]}, headers=FREE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["status"] == "queued"
    scan_id = body["scan_id"]
    assert client.manager.join(scan_id, 5)

    scan = client.get(f"/scans/{scan_id}", headers=FREE).json()
    assert scan["status"] == "completed"
    assert scan["command_executed"] == ["nmap", "-p", "443", "-sT", "-Pn", "example.com"]

    logs = client.get(f"/scans/{scan_id}/logs?limit=2", headers=FREE).json()
    assert logs["total"] >= 2
    assert len(logs["entries"]) == 2
    assert logs["has_more"] is True

    history = client.get("/scans", headers=FREE).json()
    assert [s["id"] for s in history] == [scan_id]

    usage = client.get("/usage", headers=FREE).json()
    assert usage["scans"]["used"] == 1

    deleted = client.delete(f"/scans/{scan_id}/logs", headers=FREE).json()
    assert deleted["success"] is True
    assert deleted["deleted"] >= 1


def test_rejected_target_uses_error_envelope(client, store):
    resp = client.post("/scans", json={"target": "example.com; rm -rf /", "tool": "nmap"}, headers=FREE)
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "invalid_target"
    assert body["trace_id"] == resp.headers["X-Trace-Id"]
    assert store.list_scans() == []


def test_rejected_flag(client):
    resp = client.post("/scans", json={"target": "example.com", "tool": "nmap", "flags": ["-oN", "/tmp/x"]}, headers=FREE)
    assert resp.status_code == 400
    assert resp.json()["code"] == "rejected_flag"


def test_missing_identity(client):
    resp = client.post("/scans", json={"target": "example.com", "tool": "nmap"})
    assert resp.status_code == 403
    assert resp.json()["code"] == "authorization_error"


def test_advanced_tool_denied_for_free_plan(client):
    resp = client.post("/scans", json={"target": "http://example.com/?id=1", "tool": "sqlmap"}, headers=FREE)
    assert resp.status_code == 403
    assert "Professional" in resp.json()["error"]


def test_environment_unavailable(client, runtime):
    runtime.docker_available = False
    resp = client.post("/scans", json={"target": "example.com", "tool": "nmap"}, headers=FREE)
    assert resp.status_code == 503
    assert resp.json()["code"] == "environment_unavailable"


def test_unknown_scan_is_404(client):
    resp = client.get("/scans/does-not-exist", headers=FREE)
    assert resp.status_code == 404
    assert resp.json()["code"] == "scan_not_found"


def test_other_users_scan_is_hidden(client):
    scan_id = client.post("/scans", json={"target": "example.com", "tool": "nmap"}, headers=FREE).json()["scan_id"]
    assert client.manager.join(scan_id, 5)
    assert client.get(f"/scans/{scan_id}", headers=PRO).status_code == 404
    assert client.get(f"/containers/status/{scan_id}", headers=PRO).status_code == 404


def test_cancel_finished_scan_conflicts(client):
    scan_id = client.post("/scans", json={"target": "example.com", "tool": "nmap"}, headers=FREE).json()["scan_id"]
    assert client.manager.join(scan_id, 5)
    resp = client.post(f"/scans/{scan_id}/cancel", headers=FREE)
    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_transition"


def test_reconcile_is_admin_only(client):
    assert client.post("/containers/reconcile", headers=FREE).status_code == 403
    resp = client.post("/containers/reconcile", headers={"X-User-Id": "root", "X-User-Role": "admin"})
    assert resp.status_code == 200
    assert resp.json() == {"removed": []}


def _receive(ws):
    while True:
        message = ws.receive_json()
        if message["type"] != "ping":
            return message


def test_websocket_subscribe_and_receive(client, hub):
    hub.register_owner(scan_topic("s1"), "alice")
    with client.websocket_connect("/ws", headers=FREE) as ws:
        hello = _receive(ws)
        assert hello["type"] == "connected"
        assert hello["topics"] == ["notifications:alice"]

        ws.send_json({"action": "subscribe", "topic": "scan:s1"})
        assert _receive(ws) == {"type": "subscribed", "topic": "scan:s1"}

        hub.publish(scan_topic("s1"), "scan_progress", {"output": "hello"})
        event = _receive(ws)
        assert event["type"] == "scan_progress"
        assert event["topic"] == "scan:s1"
        assert event["data"] == {"output": "hello"}

        ws.send_json({"action": "subscribe", "topic": "scan:someone-else"})
        assert _receive(ws)["type"] == "error"

        ws.send_json({"action": "dance"})
        assert _receive(ws)["type"] == "error"


def test_websocket_heartbeat(client):
    with client.websocket_connect("/ws?user_id=alice") as ws:
        assert ws.receive_json()["type"] == "connected"
        assert ws.receive_json()["type"] == "ping"


def test_closed_websocket_leaves_other_connections(client, hub):
    with client.websocket_connect("/ws", headers=FREE) as keep:
        assert _receive(keep)["type"] == "connected"
        with client.websocket_connect("/ws", headers=FREE) as dropped:
            assert _receive(dropped)["type"] == "connected"
            assert wait_for(lambda: len(hub.connections_for_user("alice")) == 2)
        assert wait_for(lambda: len(hub.connections_for_user("alice")) == 1)

        assert hub.notify_user("alice", {"kind": "scan_completed"}) == 1
        event = _receive(keep)
        assert event["type"] == "notification"
        assert event["data"] == {"kind": "scan_completed"}
