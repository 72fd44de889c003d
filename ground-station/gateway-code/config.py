from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from constants import (
    DEFAULT_BAUD_RATE,
    DEFAULT_CONNECT_TIMEOUT,
    ERROR_LOG_SIZE,
    HISTORY_MAX_POINTS,
    HISTORY_WINDOW_S,
    LINE_QUEUE_SIZE,
)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

TRANSPORTS = ("serial", "websocket", "ws", "ble")


@dataclass(frozen=True)
class Settings:
    transport: str = "serial"
    serial_port: Optional[str] = None
    baud_rate: int = DEFAULT_BAUD_RATE
    ws_url: Optional[str] = None
    ble_address: Optional[str] = None
    connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT  # None disables

    history_points: int = HISTORY_MAX_POINTS
    history_window: float = HISTORY_WINDOW_S
    error_log_size: int = ERROR_LOG_SIZE
    line_queue_size: int = LINE_QUEUE_SIZE

    web_host: str = "0.0.0.0"
    web_port: int = 8000

    log_file: Optional[str] = None
    log_level: str = "INFO"


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def get_settings(env_file: Optional[str] = None) -> Settings:
    # Load .env (if present) but let the real environment win.
    env_file = env_file or os.getenv("POD_ENV_FILE", ".env")
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    transport = _str("POD_TRANSPORT", "serial").lower()
    if transport not in TRANSPORTS:
        raise ValueError(f"POD_TRANSPORT must be one of serial, websocket, ble; got {transport!r}")

    timeout = _float("POD_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT)

    return Settings(
        transport=transport,
        serial_port=_str("POD_SERIAL_PORT"),
        baud_rate=_int("POD_BAUD_RATE", DEFAULT_BAUD_RATE),
        ws_url=_str("POD_WS_URL"),
        ble_address=_str("POD_BLE_ADDRESS"),
        connect_timeout=timeout if timeout > 0 else None,
        history_points=_int("POD_HISTORY_POINTS", HISTORY_MAX_POINTS),
        history_window=_float("POD_HISTORY_WINDOW", HISTORY_WINDOW_S),
        error_log_size=_int("POD_ERROR_LOG_SIZE", ERROR_LOG_SIZE),
        line_queue_size=_int("POD_LINE_QUEUE_SIZE", LINE_QUEUE_SIZE),
        web_host=_str("POD_WEB_HOST", "0.0.0.0"),
        web_port=_int("POD_WEB_PORT", 8000),
        log_file=_str("POD_LOG_FILE"),
        log_level=_str("POD_LOG_LEVEL", "INFO").upper(),
    )


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, console: bool = True):
    """Configure the root logger once.

    With ``console=False`` (Textual owns the terminal) records only go to
    ``log_file``, or are dropped when no file is set.
    """
    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
