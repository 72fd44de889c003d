"""Health score and status labels derived from the subsystem health codes."""

from __future__ import annotations

from typing import Iterable, Optional

from constants import CRITICAL_HEALTH_CHANNELS, HEALTH_WEIGHTS, NOMINAL_HEALTH_CODE
from pod_state import SensorSnapshot


def compute_health_score(snapshot: SensorSnapshot,
                         present: Optional[Iterable[str]] = None,
                         weights: Optional[dict] = None,
                         critical: Iterable[str] = CRITICAL_HEALTH_CHANNELS) -> float:
    """Weighted health percentage, 0-100.

    ``present`` limits the average to channels the pod actually reported;
    None means every weighted channel counts. A critical channel reporting 0
    forces the score to 0.
    """
    weights = HEALTH_WEIGHTS if weights is None else weights
    channels = list(weights) if present is None else [c for c in weights if c in set(present)]

    for name in critical:
        if name in channels and getattr(snapshot, name) == 0:
            return 0.0

    total_weight = sum(weights[c] for c in channels)
    if total_weight == 0:
        return 0.0

    weighted = sum(getattr(snapshot, c) * weights[c] for c in channels)
    score = (weighted / NOMINAL_HEALTH_CODE) / total_weight * 100
    return max(0.0, min(100.0, score))


def health_code_label(code: int) -> str:
    if code == 0:
        return "Failed"
    if code == 1:
        return "Degraded"
    return "OK"


def overall_status_label(score: float) -> str:
    if score >= 75:
        return "Excellent"
    if score >= 50:
        return "Good"
    if score >= 25:
        return "Degraded"
    return "Critical"


def safety_critical(snapshot: SensorSnapshot) -> bool:
    """Safety loop broken: heartbeat lost or wiring fault."""
    return snapshot.safety_heartbeat_health == 0 or snapshot.wiring_health == 0
