"""Data classes describing the pod's sensor state, relays, history and log."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Optional

from constants import RELAY_IDS, TEMPERATURE_CHANNELS


class Severity(str, Enum):
    """Severity of an error/event log entry."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ConnectionState(str, Enum):
    """Link lifecycle: DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class Vector3:
    """Orientation in degrees (heading, pitch, roll)."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


@dataclass(frozen=True)
class Acceleration:
    """Linear acceleration in m/s^2. magnitude is derived, never transmitted."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    magnitude: float = 0.0


@dataclass(frozen=True)
class Calibration:
    """IMU self-calibration levels, 0 (none) to 3 (fully calibrated)."""
    gyro: int = 0
    sys: int = 0
    magneto: int = 0


def _zero_temperatures() -> tuple:
    return (0.0,) * TEMPERATURE_CHANNELS


@dataclass(frozen=True)
class SensorSnapshot:
    """Canonical current state of the pod. Always fully populated."""
    orientation: Vector3 = field(default_factory=Vector3)
    acceleration: Acceleration = field(default_factory=Acceleration)
    calibration: Calibration = field(default_factory=Calibration)

    gap_height: float = 0.0           # mm
    gap_height2: float = 0.0          # mm
    temperatures: tuple = field(default_factory=_zero_temperatures)  # degC per sensor

    voltage1: float = 0.0             # V
    voltage2: float = 0.0
    voltage3: float = 0.0
    pressure: float = 0.0             # bar

    # Subsystem health codes: 0 failed, 1 degraded, 2/3 nominal
    bno_health: int = 0
    icg_health: int = 0
    lidar_health: int = 0
    lidar2_health: int = 0
    temp1_health: int = 0
    temp2_health: int = 0
    temp3_health: int = 0
    voltage1_health: int = 0
    voltage2_health: int = 0
    voltage3_health: int = 0
    pressure_health: int = 0
    wiring_health: int = 0
    safety_heartbeat_health: int = 0

    emergency_reason_mask: int = 0
    heartbeat_count: int = 0
    last_heartbeat_ms: int = 0
    safety_heartbeat_count: int = 0
    current_state: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SensorUpdate:
    """A partial snapshot: None means "not present in this message".

    Mirrors SensorSnapshot field for field so the merge below can stay a
    plain field-by-field overwrite.
    """
    orientation: Optional[Vector3] = None
    acceleration: Optional[Acceleration] = None
    calibration: Optional[Calibration] = None
    gap_height: Optional[float] = None
    gap_height2: Optional[float] = None
    temperatures: Optional[tuple] = None
    voltage1: Optional[float] = None
    voltage2: Optional[float] = None
    voltage3: Optional[float] = None
    pressure: Optional[float] = None
    bno_health: Optional[int] = None
    icg_health: Optional[int] = None
    lidar_health: Optional[int] = None
    lidar2_health: Optional[int] = None
    temp1_health: Optional[int] = None
    temp2_health: Optional[int] = None
    temp3_health: Optional[int] = None
    voltage1_health: Optional[int] = None
    voltage2_health: Optional[int] = None
    voltage3_health: Optional[int] = None
    pressure_health: Optional[int] = None
    wiring_health: Optional[int] = None
    safety_heartbeat_health: Optional[int] = None
    emergency_reason_mask: Optional[int] = None
    heartbeat_count: Optional[int] = None
    last_heartbeat_ms: Optional[int] = None
    safety_heartbeat_count: Optional[int] = None
    current_state: Optional[str] = None

    def present(self) -> dict:
        """Return {field_name: value} for every field carried by this update."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.present()


def merge_update(snapshot: SensorSnapshot, update: SensorUpdate) -> SensorSnapshot:
    """Shallow merge: present fields replace old values, nested objects wholesale."""
    changes = update.present()
    if not changes:
        return snapshot
    return replace(snapshot, **changes)


@dataclass(frozen=True)
class RelayState:
    """Commanded/observed state of the four pod relays."""
    relay1: bool = False
    relay2: bool = False
    relay3: bool = False
    relay4: bool = False

    @classmethod
    def all(cls, on: bool) -> "RelayState":
        return cls(on, on, on, on)

    def get(self, relay_id: int) -> bool:
        if relay_id not in RELAY_IDS:
            raise ValueError(f"Invalid relay id {relay_id} (expected 1-4)")
        return getattr(self, f"relay{relay_id}")

    def with_relay(self, relay_id: int, on: bool) -> "RelayState":
        if relay_id not in RELAY_IDS:
            raise ValueError(f"Invalid relay id {relay_id} (expected 1-4)")
        return replace(self, **{f"relay{relay_id}": bool(on)})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class HistoryPoint:
    timestamp: float  # epoch seconds
    value: float


@dataclass(frozen=True)
class ErrorLogEntry:
    """One entry of the bounded error/event log."""
    id: str
    timestamp: float  # epoch seconds
    message: str
    severity: Severity
    kind: Optional[str] = None  # taxonomy name, e.g. "ParseError"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "message": self.message,
            "severity": self.severity.value,
            "kind": self.kind,
        }
