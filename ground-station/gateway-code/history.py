"""Bounded, time-windowed history of selected telemetry channels."""

from __future__ import annotations

import threading
import time
from typing import Callable, Iterable, Optional

from constants import HISTORY_CHANNELS, HISTORY_MAX_POINTS, HISTORY_WINDOW_S
from pod_state import HistoryPoint


def add_point(series: list[HistoryPoint], value: float, now: float,
              max_points: int = HISTORY_MAX_POINTS,
              window_s: float = HISTORY_WINDOW_S) -> list[HistoryPoint]:
    """Return a new series with (now, value) appended and pruned.

    Points at least ``window_s`` old are dropped first, then only the newest
    ``max_points`` survive. The input list is not modified.
    """
    points = list(series)
    points.append(HistoryPoint(now, float(value)))
    points = [p for p in points if now - p.timestamp < window_s]
    return points[-max_points:] if max_points > 0 else []


class HistoryManager:
    """One pruned series per channel, created lazily on first append."""

    def __init__(self, max_points: int = HISTORY_MAX_POINTS,
                 window_s: float = HISTORY_WINDOW_S,
                 clock: Callable[[], float] = time.time,
                 channels: Iterable[str] = HISTORY_CHANNELS):
        self.max_points = max_points
        self.window_s = window_s
        self.channels = tuple(channels)
        self._clock = clock
        self._series: dict[str, list[HistoryPoint]] = {}
        self._lock = threading.Lock()

    def append(self, channel: str, value: float, now: Optional[float] = None):
        if channel not in self.channels:
            raise KeyError(f"Unknown history channel: {channel}")
        if now is None:
            now = self._clock()
        with self._lock:
            self._series[channel] = add_point(
                self._series.get(channel, []), value, now,
                self.max_points, self.window_s)

    def series(self, channel: str) -> list[HistoryPoint]:
        with self._lock:
            return list(self._series.get(channel, []))

    def all_series(self) -> dict[str, list[HistoryPoint]]:
        with self._lock:
            return {name: list(points) for name, points in self._series.items()}

    def clear(self):
        with self._lock:
            self._series.clear()
