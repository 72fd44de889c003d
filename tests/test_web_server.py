"""Tests for the FastAPI REST and WebSocket adapter."""

import pytest
from fastapi.testclient import TestClient

from web_server import create_app


@pytest.fixture
def client(gateway):
    with TestClient(create_app(gateway)) as client:
        yield client


def _receive_until(ws, message_type, limit=20):
    for _ in range(limit):
        msg = ws.receive_json()
        if msg["type"] == message_type:
            return msg
    raise AssertionError(f"no {message_type} message received")


def test_index(client):
    assert client.get("/").json()["message"] == "Pod Telemetry Gateway API"


def test_state(client, gateway):
    gateway.aggregator.apply_line('{"gap_height": 8.5, "temp_sensors": [20, 21]}')
    state = client.get("/api/state").json()
    assert state["connection"]["is_connected"] is False
    assert state["sensors"]["gap_height"] == 8.5
    assert state["sensors"]["temperatures"] == [20.0, 21.0, 0.0, 0.0]
    assert state["relays"]["relay1"] is False


def test_history(client, gateway):
    gateway.aggregator.apply_line('{"pressure": 1.2}')
    gateway.aggregator.apply_line('{"pressure": 1.3}')
    data = client.get("/api/history", params={"channel": "pressure"}).json()
    assert [p["value"] for p in data["pressure"]] == [1.2, 1.3]
    assert set(client.get("/api/history").json()) == {"pressure"}


def test_history_unknown_channel(client):
    assert client.get("/api/history", params={"channel": "humidity"}).status_code == 404


def test_clear_history(client, gateway):
    gateway.aggregator.apply_line('{"pressure": 1.2}')
    assert client.delete("/api/history").json() == {"status": "cleared"}
    assert client.get("/api/history").json() == {}


def test_errors_and_clear(client, gateway):
    gateway.aggregator.apply_line("{not json")
    errors = client.get("/api/errors").json()
    assert len(errors) == 1
    assert errors[0]["kind"] == "ParseError"
    assert errors[0]["severity"] == "error"
    client.delete("/api/errors")
    assert client.get("/api/errors").json() == []


def test_command_while_disconnected_reports_failure(client, gateway):
    resp = client.post("/api/command", json={"command": "toggle_relay", "relay": 2})
    assert resp.status_code == 200
    assert resp.json()["ok"] is False
    kinds = [e["kind"] for e in client.get("/api/errors").json()]
    assert "CommandFailed" in kinds


@pytest.mark.parametrize("body", [
    {"command": "launch"},
    {"command": "toggle_relay"},
    {"command": "toggle_relay", "relay": 7},
    {"command": "raw", "value": "REBOOT"},
])
def test_bad_commands_rejected(client, body):
    assert client.post("/api/command", json=body).status_code == 400


def test_connect_command_disconnect(client, gateway, fake_transport):
    resp = client.post("/api/connect").json()
    assert resp["ok"] is True
    assert resp["connection"]["state"] == "connected"

    resp = client.post("/api/command", json={"command": "all_on"}).json()
    assert resp == {"status": "sent", "command": "all_on", "ok": True}
    assert client.get("/api/state").json()["relays"]["relay3"] is True

    client.post("/api/command", json={"command": "raw", "value": "relay1_off"})
    client.post("/api/command", json={"command": "estop"})
    assert fake_transport.written == ["STATUS", "ALL_ON", "RELAY1_OFF", "ALL_OFF"]

    resp = client.post("/api/disconnect").json()
    assert resp["connection"]["state"] == "disconnected"


def test_websocket_initial_state_and_broadcast(client, gateway):
    with client.websocket_connect("/ws") as ws:
        first = ws.receive_json()
        assert first["type"] == "state"
        assert "sensors" in first["data"]

        gateway.aggregator.apply_line('{"pressure": 2.5}')
        msg = _receive_until(ws, "sensor_data")
        assert msg["data"]["pressure"] == 2.5


def test_websocket_command(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "command", "command": "status"})
        result = _receive_until(ws, "command_result")
        assert result["command"] == "status"
        assert result["ok"] is False


def test_websocket_rejects_bad_input(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("not json")
        assert _receive_until(ws, "error")["error"] == "Invalid JSON"
        ws.send_json({"type": "command", "command": "launch"})
        assert "Unknown command" in _receive_until(ws, "error")["error"]
