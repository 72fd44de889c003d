"""Turns raw lines from the pod into structured updates.

Two wire shapes arrive on the same stream:
  - JSON objects carrying any subset of the sensor fields
  - plain-text relay reports: ``...STATE:1,0,1,0``

Nothing here raises to the caller. Malformed input is logged and yields
``None`` (or an empty update), so a noisy serial line never stops the stream.
"""

from __future__ import annotations

import json
import math
from typing import Any, Optional

from constants import (
    PARSE_EXCERPT_LENGTH,
    RELAY_IDS,
    RELAY_STATE_MARKER,
    TEMPERATURE_CHANNELS,
)
from errors import ExtractionError, ParseError
from event_log import ErrorLog
from pod_state import Acceleration, Calibration, RelayState, SensorUpdate, Vector3

# wire name -> snapshot field, copied through when present
FLOAT_FIELDS = {
    "gap_height": "gap_height",
    "gap_height2": "gap_height2",
    "voltage1": "voltage1",
    "voltage2": "voltage2",
    "voltage3": "voltage3",
    "pressure": "pressure",
}

INT_FIELDS = {
    name: name for name in (
        "bno_health",
        "icg_health",
        "lidar_health",
        "lidar2_health",
        "temp1_health",
        "temp2_health",
        "temp3_health",
        "voltage1_health",
        "voltage2_health",
        "voltage3_health",
        "pressure_health",
        "wiring_health",
        "safety_heartbeat_health",
        "emergency_reason_mask",
        "heartbeat_count",
        "last_heartbeat_ms",
        "safety_heartbeat_count",
    )
}

# Older firmware: single-rail names, only used when the specific field is absent
LEGACY_FIELDS = {
    "voltage": "voltage1",
    "voltage_health": "voltage1_health",
    "temp_health": "temp1_health",
}


def _excerpt(line: str) -> str:
    return line[:PARSE_EXCERPT_LENGTH]


def _triple(raw: dict, key: str) -> Optional[list]:
    """Return the first three elements of an array field, or None if absent."""
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, (list, tuple)) or len(value) < 3:
        raise ExtractionError(f"'{key}' must be an array of 3 numbers, got {value!r}")
    return list(value[:3])


class MessageParser:
    """Stateless line parser; errors go to the shared ErrorLog."""

    def __init__(self, error_log: ErrorLog):
        self.error_log = error_log

    def parse_json(self, line: str) -> Optional[dict]:
        """Decode a JSON object line. Non-object lines are skipped silently."""
        line = line.strip()
        if not line.startswith("{"):
            return None  # debug prints, ACKs, relay reports
        try:
            obj = json.loads(line)
        except ValueError as e:
            self.error_log.error(
                f"JSON parse error: {e} - Line: {_excerpt(line)}", kind=ParseError.__name__)
            return None
        if not isinstance(obj, dict):
            return None
        return obj

    def parse_relay_line(self, line: str) -> Optional[RelayState]:
        """Parse ``STATE:a,b,c,d``; each token is on iff it equals "1"."""
        if RELAY_STATE_MARKER not in line:
            return None
        tokens = line.split(RELAY_STATE_MARKER, 1)[1].strip().split(",")
        if len(tokens) != len(RELAY_IDS):
            # JSON payloads may mention STATE: in free text; only flag plain reports
            if not line.lstrip().startswith("{"):
                self.error_log.warning(
                    f"Malformed relay state line: {_excerpt(line)}", kind=ParseError.__name__)
            return None
        return RelayState(*(token.strip() == "1" for token in tokens))

    def parse_relay_object(self, raw: dict) -> Optional[dict]:
        """Relay states embedded in a JSON payload as ``relayStates``.

        Returns {relay_id: bool} for the relays present, or None.
        """
        relays = raw.get("relayStates")
        if not isinstance(relays, dict):
            return None
        found = {}
        for relay_id in RELAY_IDS:
            value = relays.get(f"relay{relay_id}")
            if value is not None:
                found[relay_id] = value in (True, 1, "1", "on", "ON", "true")
        return found or None

    def extract_sensor_update(self, raw: Any) -> SensorUpdate:
        """Pull the known sensor fields out of a decoded JSON object."""
        try:
            return self._extract(raw)
        except Exception as e:
            self.error_log.error(f"Sensor data extraction error: {e}",
                                 kind=ExtractionError.__name__)
            return SensorUpdate()

    # ---- Internals ----

    def _extract(self, raw: Any) -> SensorUpdate:
        if not isinstance(raw, dict):
            raise ExtractionError(f"expected a JSON object, got {type(raw).__name__}")

        values: dict = {}

        for wire, name in FLOAT_FIELDS.items():
            if raw.get(wire) is not None:
                values[name] = float(raw[wire])
        for wire, name in INT_FIELDS.items():
            if raw.get(wire) is not None:
                values[name] = int(raw[wire])
        for wire, name in LEGACY_FIELDS.items():
            if name not in values and raw.get(wire) is not None:
                values[name] = int(raw[wire]) if name.endswith("_health") else float(raw[wire])

        temperatures = self._temperatures(raw)
        if temperatures is not None:
            values["temperatures"] = temperatures

        orientation = _triple(raw, "orientation")
        if orientation is not None:
            x, y, z = (float(v) for v in orientation)
            values["orientation"] = Vector3(x, y, z)

        acceleration = _triple(raw, "acceleration")
        if acceleration is not None:
            x, y, z = (float(v) for v in acceleration)
            values["acceleration"] = Acceleration(x, y, z, math.sqrt(x * x + y * y + z * z))

        calibration = _triple(raw, "calibration")
        if calibration is not None:
            gyro, sys_level, magneto = (int(v) for v in calibration)
            values["calibration"] = Calibration(gyro, sys_level, magneto)

        if raw.get("current_state") is not None:
            values["current_state"] = str(raw["current_state"])

        return SensorUpdate(**values)

    def _temperatures(self, raw: dict) -> Optional[tuple]:
        """Pick exactly one temperature shape, first match wins:

        1. ``temp_sensors`` array with at least two readings
        2. individual ``temp1``..``temp4`` fields (missing ones read 0)
        3. legacy scalar ``object_temp`` into channel 0
        """
        sensors = raw.get("temp_sensors")
        named = [raw.get(f"temp{i + 1}") for i in range(TEMPERATURE_CHANNELS)]

        if isinstance(sensors, (list, tuple)) and len(sensors) >= 2:
            readings = [0.0 if v is None else float(v) for v in sensors[:TEMPERATURE_CHANNELS]]
        elif any(v is not None for v in named):
            readings = [0.0 if v is None else float(v) for v in named]
        elif raw.get("object_temp") is not None:
            readings = [float(raw["object_temp"])]
        else:
            return None

        readings += [0.0] * (TEMPERATURE_CHANNELS - len(readings))
        return tuple(readings)
