"""Shared constants for the Pod Telemetry Gateway."""

import re

# Nordic UART Service UUIDs (BLE link to the pod controller)
NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_RX_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # gateway -> pod (write)
NUS_TX_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # pod -> gateway (notify)

# Device name prefixes the BLE scan accepts
DEVICE_NAME_PREFIXES = ["Pod-Controller", "HYPERPOD", "ESP32"]

DEFAULT_BAUD_RATE = 115200
DEFAULT_CONNECT_TIMEOUT = 10.0

# Transport buffering
LINE_QUEUE_SIZE = 1000
MAX_LINE_LENGTH = 64 * 1024
READ_CHUNK_SIZE = 1024

# Parser
RELAY_STATE_MARKER = "STATE:"
PARSE_EXCERPT_LENGTH = 100
TEMPERATURE_CHANNELS = 4

# History windows
HISTORY_MAX_POINTS = 120
HISTORY_WINDOW_S = 120.0

# Error/event log
ERROR_LOG_SIZE = 1000

# Relays
RELAY_IDS = (1, 2, 3, 4)
RELAY_NAMES = {
    1: "Main Power",
    2: "Propulsion",
    3: "Levitation",
    4: "Auxiliary",
}

# Outbound command literals
CMD_ALL_ON = "ALL_ON"
CMD_ALL_OFF = "ALL_OFF"
CMD_STATUS = "STATUS"
COMMAND_RE = re.compile(r'^(RELAY[1-4]_(ON|OFF)|ALL_ON|ALL_OFF|STATUS)$')

# History channels: temperature sensors first, then the scalar rails
TEMPERATURE_HISTORY_CHANNELS = tuple(f"temp{i + 1}" for i in range(TEMPERATURE_CHANNELS))
HISTORY_CHANNELS = TEMPERATURE_HISTORY_CHANNELS + (
    "gap_height",
    "gap_height2",
    "voltage1",
    "voltage2",
    "voltage3",
    "pressure",
    "accel_magnitude",
)

# Health scoring (weights per subsystem health code)
HEALTH_WEIGHTS = {
    "bno_health": 6,
    "icg_health": 6,
    "lidar_health": 7,
    "lidar2_health": 7,
    "temp1_health": 8,
    "temp2_health": 8,
    "temp3_health": 8,
    "voltage1_health": 10,
    "voltage2_health": 8,
    "voltage3_health": 8,
    "pressure_health": 10,
    "wiring_health": 9,
    "safety_heartbeat_health": 10,
}

# Any of these at 0 forces the overall score to 0
CRITICAL_HEALTH_CHANNELS = (
    "voltage1_health",
    "pressure_health",
    "safety_heartbeat_health",
)

NOMINAL_HEALTH_CODE = 2

# Emergency reason mask: bit value -> (message, severity)
EMERGENCY_REASONS = {
    1 << 0: ("BNO055 IMU failure", "error"),
    1 << 1: ("ICG IMU failure", "error"),
    1 << 2: ("Primary LiDAR failure", "error"),
    1 << 3: ("Secondary LiDAR failure", "error"),
    1 << 4: ("Temperature over limit", "warning"),
    1 << 5: ("Voltage out of range", "warning"),
    1 << 6: ("Pressure out of range", "warning"),
    1 << 7: ("Safety heartbeat lost", "error"),
    1 << 8: ("Wiring fault detected", "error"),
    1 << 9: ("Gap height out of range", "warning"),
}
