"""FastAPI web server with WebSocket push of live pod telemetry.

Embedded in the gateway process. The gateway's change notifications are
broadcast to every WebSocket client as they happen; REST endpoints expose
the same state and commands for scripts and dashboards.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from constants import HISTORY_CHANNELS
from pod_state import ErrorLogEntry, RelayState, SensorSnapshot

logger = logging.getLogger(__name__)


# --- WebSocket Manager ---

class ConnectionManager:
    """Manages WebSocket connections and broadcasts."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        """Send a JSON message to every client, dropping the ones that fail."""
        if not self.active_connections:
            return
        data = json.dumps(message)
        disconnected = []
        for conn in list(self.active_connections):
            try:
                await conn.send_text(data)
            except Exception:
                disconnected.append(conn)
        for conn in disconnected:
            self.disconnect(conn)


# --- Request models ---

class CommandRequest(BaseModel):
    command: str                 # toggle_relay | all_on | all_off | estop | status | raw
    relay: Optional[int] = None  # toggle_relay
    value: Optional[str] = None  # raw


COMMANDS = ("toggle_relay", "all_on", "all_off", "estop", "status", "raw")


async def run_command(gateway, req: CommandRequest) -> bool:
    """Dispatch one operator command. Raises ValueError for bad input."""
    if req.command == "toggle_relay":
        if req.relay is None:
            raise ValueError("toggle_relay needs 'relay' (1-4)")
        return await gateway.toggle_relay(req.relay)
    if req.command == "all_on":
        return await gateway.turn_all_on()
    if req.command == "all_off":
        return await gateway.turn_all_off()
    if req.command == "estop":
        return await gateway.emergency_stop()
    if req.command == "status":
        return await gateway.request_status()
    if req.command == "raw":
        if not req.value:
            raise ValueError("raw needs 'value'")
        return await gateway.send_raw(req.value)
    raise ValueError(f"Unknown command '{req.command}' (use one of {', '.join(COMMANDS)})")


def event_message(event: str, payload) -> Optional[dict]:
    """Translate a gateway notification into a WebSocket message."""
    now = time.time()
    if event == "sensor_data" and isinstance(payload, SensorSnapshot):
        return {"type": "sensor_data", "data": payload.to_dict(), "timestamp": now}
    if event == "relays" and isinstance(payload, RelayState):
        return {"type": "relays", "data": payload.to_dict(), "timestamp": now}
    if event == "connection":
        return {"type": "event", "event": "connection", "data": payload, "timestamp": now}
    if event == "log" and isinstance(payload, ErrorLogEntry):
        return {"type": "log", "entry": payload.to_dict(), "timestamp": now}
    return None


def _history_json(series: dict) -> dict:
    return {
        name: [{"timestamp": p.timestamp, "value": p.value} for p in points]
        for name, points in series.items()
    }


# --- FastAPI App ---

def create_app(gateway) -> FastAPI:
    """Build the web app around one PodGateway."""
    manager = ConnectionManager()

    def on_gateway_event(event: str, payload):
        loop = app.state.loop
        message = event_message(event, payload)
        if message is None or loop is None or loop.is_closed():
            return
        # Notifications may come from any thread; hop onto the server loop
        asyncio.run_coroutine_threadsafe(manager.broadcast(message), loop)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.loop = asyncio.get_running_loop()
        gateway.add_listener(on_gateway_event)
        try:
            yield
        finally:
            gateway.remove_listener(on_gateway_event)
            app.state.loop = None

    app = FastAPI(title="Pod Telemetry Gateway", lifespan=lifespan)
    app.state.loop = None
    app.state.gateway = gateway
    app.state.manager = manager

    @app.get("/")
    async def index():
        return {
            "message": "Pod Telemetry Gateway API",
            "docs": "/docs",
            "endpoints": {
                "state": "GET /api/state",
                "history": "GET /api/history?channel=temp1",
                "errors": "GET /api/errors",
                "command": "POST /api/command",
                "websocket": "ws://<host>/ws",
            },
        }

    # --- WebSocket Endpoint ---

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            await websocket.send_text(json.dumps({
                "type": "state",
                "data": gateway.build_state(),
                "timestamp": time.time(),
            }))
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                except ValueError:
                    await websocket.send_text(json.dumps(
                        {"type": "error", "error": "Invalid JSON"}))
                    continue
                if not isinstance(msg, dict) or msg.get("type") != "command":
                    continue
                try:
                    req = CommandRequest(**{k: v for k, v in msg.items() if k != "type"})
                    ok = await run_command(gateway, req)
                except (ValidationError, ValueError) as e:
                    await websocket.send_text(json.dumps(
                        {"type": "error", "error": str(e)}))
                    continue
                await websocket.send_text(json.dumps({
                    "type": "command_result",
                    "command": req.command,
                    "ok": ok,
                }))
        except WebSocketDisconnect:
            manager.disconnect(websocket)
        except Exception:
            logger.exception("WebSocket handler failed")
            manager.disconnect(websocket)

    # --- REST API ---

    @app.get("/api/state")
    async def get_state():
        return gateway.build_state()

    @app.get("/api/history")
    async def get_history(channel: Optional[str] = None):
        if channel is not None and channel not in HISTORY_CHANNELS:
            raise HTTPException(status_code=404, detail=f"Unknown channel '{channel}'")
        return _history_json(gateway.history_series(channel))

    @app.delete("/api/history")
    async def delete_history():
        gateway.clear_history()
        return {"status": "cleared"}

    @app.get("/api/errors")
    async def get_errors():
        return [entry.to_dict() for entry in gateway.error_entries()]

    @app.delete("/api/errors")
    async def delete_errors():
        gateway.clear_error_log()
        return {"status": "cleared"}

    @app.post("/api/connect")
    async def post_connect():
        ok = await gateway.connect()
        return {"ok": ok, "connection": gateway.connection_info()}

    @app.post("/api/disconnect")
    async def post_disconnect():
        await gateway.disconnect()
        return {"ok": True, "connection": gateway.connection_info()}

    @app.post("/api/command")
    async def post_command(req: CommandRequest):
        try:
            ok = await run_command(gateway, req)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"status": "sent" if ok else "failed", "command": req.command, "ok": ok}

    return app
