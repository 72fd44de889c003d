"""Canonical pod state: snapshot, relays, history and derived signals.

Lines arrive from the transport's dispatch task; readers (TUI thread, web
handlers) take copies through the accessors. Every mutation happens under a
single RLock so a reader never sees a half-merged snapshot.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from constants import HEALTH_WEIGHTS, TEMPERATURE_HISTORY_CHANNELS
from emergency import EmergencyMonitor
from event_log import ErrorLog
from health import compute_health_score
from history import HistoryManager
from parser import MessageParser
from pod_state import HistoryPoint, RelayState, SensorSnapshot, SensorUpdate, merge_update

logger = logging.getLogger(__name__)

# Scalar snapshot fields recorded in history under the same name
SCALAR_HISTORY_FIELDS = ("gap_height", "gap_height2", "voltage1", "voltage2", "voltage3", "pressure")

Listener = Callable[[str, object], None]


def history_values(update: SensorUpdate) -> list[tuple[str, float]]:
    """(channel, value) pairs to append for the fields present in ``update``."""
    values = []
    if update.temperatures is not None:
        values.extend(zip(TEMPERATURE_HISTORY_CHANNELS, update.temperatures))
    for name in SCALAR_HISTORY_FIELDS:
        value = getattr(update, name)
        if value is not None:
            values.append((name, value))
    if update.acceleration is not None:
        values.append(("accel_magnitude", update.acceleration.magnitude))
    return values


class StateAggregator:
    """Merges parsed updates into the current snapshot and fans out changes.

    Listeners receive ``(event, payload)`` with event ``"sensor_data"``
    (payload: SensorSnapshot) or ``"relays"`` (payload: RelayState).
    """

    def __init__(self, error_log: ErrorLog, history: Optional[HistoryManager] = None,
                 parser: Optional[MessageParser] = None):
        self.error_log = error_log
        self.history = history if history is not None else HistoryManager()
        self.parser = parser if parser is not None else MessageParser(error_log)
        self.emergency = EmergencyMonitor(error_log)
        self._snapshot = SensorSnapshot()
        self._relays = RelayState()
        self._reported: set[str] = set()  # snapshot fields seen this session
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []

    # ---- Ingest ----

    def apply_line(self, line: str) -> bool:
        """Run one raw line through the pipeline. Returns True if state changed."""
        raw = self.parser.parse_json(line)
        if raw is not None:
            # A JSON object is never also read as a relay line
            changed = self.apply_update(self.parser.extract_sensor_update(raw))
            relays = self.parser.parse_relay_object(raw)
            if relays:
                self.merge_relays(relays)
                changed = True
            return changed

        relay_state = self.parser.parse_relay_line(line)
        if relay_state is None:
            return False
        self.apply_relay_state(relay_state)
        return True

    def apply_update(self, update: SensorUpdate) -> bool:
        changes = update.present()
        if not changes:
            return False
        raised = []
        with self._lock:
            self._snapshot = merge_update(self._snapshot, update)
            self._reported.update(changes)
            for channel, value in history_values(update):
                self.history.append(channel, value)
            if "emergency_reason_mask" in changes:
                raised = self.emergency.observe(changes["emergency_reason_mask"])
            snapshot = self._snapshot
        # Error log subscribers may wait on threads that read state: never record under the lock
        self.emergency.record(raised)
        self._notify("sensor_data", snapshot)
        return True

    # ---- Relays ----

    def apply_relay_state(self, state: RelayState):
        """Device-reported relay state; overrides any optimistic value."""
        with self._lock:
            self._relays = state
        self._notify("relays", state)

    def merge_relays(self, relays: dict):
        """Apply a partial {relay_id: bool} report."""
        with self._lock:
            state = self._relays
            for relay_id, on in relays.items():
                state = state.with_relay(relay_id, on)
            self._relays = state
        self._notify("relays", state)

    def set_relay_optimistic(self, relay_id: int, on: bool):
        with self._lock:
            self._relays = self._relays.with_relay(relay_id, on)
            state = self._relays
        self._notify("relays", state)

    def set_all_relays(self, on: bool):
        self.apply_relay_state(RelayState.all(on))

    # ---- Read side ----

    def snapshot(self) -> SensorSnapshot:
        with self._lock:
            return self._snapshot

    def relay_states(self) -> RelayState:
        with self._lock:
            return self._relays

    def reported_fields(self) -> set[str]:
        with self._lock:
            return set(self._reported)

    def health_score(self) -> float:
        with self._lock:
            snapshot = self._snapshot
            present = self._reported & set(HEALTH_WEIGHTS)
        return compute_health_score(snapshot, present)

    def active_emergencies(self) -> list[str]:
        with self._lock:
            return self.emergency.active_messages()

    def history_series(self, channel: Optional[str] = None) -> dict[str, list[HistoryPoint]]:
        if channel is None:
            return self.history.all_series()
        return {channel: self.history.series(channel)}

    def clear_history(self):
        self.history.clear()

    # ---- Listeners ----

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: str, payload: object):
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("State listener failed on %s", event)
