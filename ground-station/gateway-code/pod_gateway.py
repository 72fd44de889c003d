"""Pod telemetry gateway session.

Owns the transport, the state aggregator and the error log, runs the
connection state machine and exposes the operator commands. Link and command
failures end up in the error log; nothing here raises a PodLinkError to the
TUI or web layer.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from aggregator import StateAggregator
from config import Settings
from constants import COMMAND_RE, HEALTH_WEIGHTS, RELAY_NAMES
from errors import CommandFailed, PodLinkError
from event_log import ErrorLog
from health import health_code_label, overall_status_label, safety_critical
from history import HistoryManager
from parser import MessageParser
from pod_state import ConnectionState, ErrorLogEntry
from relay_controller import RelayController
from transport import LineTransport, create_transport

logger = logging.getLogger(__name__)

Listener = Callable[[str, object], None]


class PodGateway:
    """One operator session against one pod.

    Listeners get ``(event, payload)``:
      - ``"sensor_data"``: SensorSnapshot after each merged update
      - ``"relays"``: RelayState after each relay change
      - ``"connection"``: dict from connection_info()
      - ``"log"``: each new ErrorLogEntry
    """

    def __init__(self, settings: Optional[Settings] = None,
                 transport: Optional[LineTransport] = None,
                 error_log: Optional[ErrorLog] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings or Settings()
        self.error_log = error_log if error_log is not None else ErrorLog(
            self.settings.error_log_size, clock)
        self.history = HistoryManager(self.settings.history_points,
                                      self.settings.history_window, clock)
        self.parser = MessageParser(self.error_log)
        self.aggregator = StateAggregator(self.error_log, self.history, self.parser)
        self.transport = transport if transport is not None else create_transport(
            self.settings, self.error_log)
        self.relay_controller = RelayController(self.transport)

        self.connection_state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self._attempt = 0  # bumped by every connect and disconnect
        self._listeners: list[Listener] = []

        self.transport.on_data(self.aggregator.apply_line)
        self.transport.on_closed(self._on_transport_closed)
        self.aggregator.add_listener(self._publish)
        self.error_log.subscribe(self._on_log_entry)

    # ---- Public state ----

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTING

    @property
    def sensor_snapshot(self):
        return self.aggregator.snapshot()

    @property
    def relay_states(self):
        return self.aggregator.relay_states()

    def history_series(self, channel: Optional[str] = None):
        return self.aggregator.history_series(channel)

    def error_entries(self) -> list[ErrorLogEntry]:
        return self.error_log.entries()

    def connection_info(self) -> dict:
        return {
            "state": self.connection_state.value,
            "is_connected": self.is_connected,
            "is_connecting": self.is_connecting,
            "last_error": self.last_error,
            "transport": self.transport.describe(),
        }

    def health_info(self) -> dict:
        snapshot = self.aggregator.snapshot()
        reported = self.aggregator.reported_fields()
        score = self.aggregator.health_score()
        return {
            "score": round(score, 1),
            "label": overall_status_label(score),
            "safety_critical": safety_critical(snapshot),
            "channels": {
                name: health_code_label(getattr(snapshot, name))
                for name in HEALTH_WEIGHTS if name in reported
            },
        }

    def build_state(self) -> dict:
        """Everything a dashboard needs in one JSON-ready dict."""
        return {
            "connection": self.connection_info(),
            "sensors": self.aggregator.snapshot().to_dict(),
            "relays": self.aggregator.relay_states().to_dict(),
            "relay_names": {f"relay{i}": name for i, name in RELAY_NAMES.items()},
            "health": self.health_info(),
            "emergencies": self.aggregator.active_emergencies(),
        }

    # ---- Connection lifecycle ----

    async def connect(self) -> bool:
        """Open the link, then ask the pod for its relay state.

        Returns True once connected; failures are logged and return False.
        """
        if self.connection_state is not ConnectionState.DISCONNECTED:
            return self.is_connected

        self._attempt += 1
        attempt = self._attempt
        self.last_error = None
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self.transport.connect(self.settings.baud_rate, self.settings.connect_timeout)
        except PodLinkError as e:
            if attempt != self._attempt:
                return False
            self.last_error = str(e)
            self.error_log.error(f"Connection failed: {e}", kind=type(e).__name__)
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        if attempt != self._attempt:
            # disconnect() was called while the device was opening
            await self.transport.disconnect()
            return False

        self._set_state(ConnectionState.CONNECTED)
        self.log(f"Connected to {self.transport.describe()}")

        try:
            await self.relay_controller.get_status()
        except PodLinkError as e:
            self.error_log.warning(f"Failed to get relay status: {e}", kind=CommandFailed.__name__)
        return True

    async def disconnect(self):
        """Close the link. Safe to call in any state."""
        self._attempt += 1
        was_open = self.connection_state is not ConnectionState.DISCONNECTED
        await self.transport.disconnect()
        if was_open:
            self._set_state(ConnectionState.DISCONNECTED)
            self.log("Disconnected")

    def _on_transport_closed(self, reason: Optional[str]):
        # Reader errors were already logged by the transport
        self.last_error = reason or "Connection closed by the pod"
        if reason is None:
            self.error_log.warning(self.last_error, kind="ConnectionLost")
        self._set_state(ConnectionState.DISCONNECTED)

    # ---- Commands ----

    async def toggle_relay(self, relay_id: int) -> bool:
        current = self.aggregator.relay_states().get(relay_id)  # ValueError for bad id
        try:
            new_state = await self.relay_controller.toggle(relay_id, current)
        except PodLinkError as e:
            self.error_log.error(f"Failed to toggle relay {relay_id}: {e}",
                                 kind=CommandFailed.__name__)
            return False
        self.aggregator.set_relay_optimistic(relay_id, new_state)
        return True

    async def turn_all_on(self) -> bool:
        try:
            await self.relay_controller.turn_all_on()
        except PodLinkError as e:
            self.error_log.error(f"Failed to turn all relays on: {e}", kind=CommandFailed.__name__)
            return False
        self.aggregator.set_all_relays(True)
        return True

    async def turn_all_off(self) -> bool:
        try:
            await self.relay_controller.turn_all_off()
        except PodLinkError as e:
            self.error_log.error(f"Failed to turn all relays off: {e}", kind=CommandFailed.__name__)
            return False
        self.aggregator.set_all_relays(False)
        return True

    async def emergency_stop(self) -> bool:
        """Cut every relay. Same wire command as all-off, logged as a warning."""
        try:
            await self.relay_controller.turn_all_off()
        except PodLinkError as e:
            self.error_log.error(f"Emergency stop failed: {e}", kind=CommandFailed.__name__)
            return False
        self.aggregator.set_all_relays(False)
        self.error_log.warning("Emergency stop issued", kind="EmergencyStop")
        return True

    async def request_status(self) -> bool:
        try:
            await self.relay_controller.get_status()
        except PodLinkError as e:
            self.error_log.warning(f"Failed to get relay status: {e}", kind=CommandFailed.__name__)
            return False
        return True

    async def send_raw(self, command: str) -> bool:
        """Send one literal command. Only the relay/status grammar is accepted."""
        command = command.strip().upper()
        if not COMMAND_RE.match(command):
            raise ValueError(f"Unknown pod command: {command!r}")
        try:
            await self.transport.send(command)
        except PodLinkError as e:
            self.error_log.error(f"Failed to send {command}: {e}", kind=CommandFailed.__name__)
            return False
        return True

    def clear_history(self):
        self.aggregator.clear_history()

    def clear_error_log(self):
        self.error_log.clear()

    # ---- Notifications ----

    def log(self, text: str):
        """Operator-facing informational message."""
        self.error_log.info(text)

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: ConnectionState):
        if state is self.connection_state:
            return
        self.connection_state = state
        logger.debug("Connection state -> %s", state.value)
        self._publish("connection", self.connection_info())

    def _on_log_entry(self, entry: ErrorLogEntry):
        self._publish("log", entry)

    def _publish(self, event: str, payload: object):
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Gateway listener failed on %s", event)
