"""Emergency reason mask decoding with edge-triggered logging.

A persistent fault keeps its bit set in every telemetry frame; only the
unset -> set transition is logged, so the error log sees one entry per
occurrence instead of one per frame.
"""

from __future__ import annotations

import logging
from typing import Optional

from constants import EMERGENCY_REASONS
from event_log import ErrorLog
from pod_state import Severity

logger = logging.getLogger(__name__)


def decode_mask(mask: int) -> list[int]:
    """Return the set bit values of ``mask``, lowest first."""
    bits = []
    bit = 1
    while bit <= mask:
        if mask & bit:
            bits.append(bit)
        bit <<= 1
    return bits


def describe_bit(bit: int) -> tuple[str, Severity]:
    if bit in EMERGENCY_REASONS:
        message, severity = EMERGENCY_REASONS[bit]
        return message, Severity(severity)
    return f"Unknown emergency condition (bit {bit.bit_length() - 1})", Severity.WARNING


class EmergencyMonitor:
    """Tracks which emergency bits are active and logs new ones."""

    def __init__(self, error_log: ErrorLog):
        self.error_log = error_log
        self.active: set[int] = set()
        self._last_mask: Optional[int] = None

    def observe(self, mask: int) -> list[int]:
        """Track a new mask without logging; return the bits that just became active."""
        mask = max(0, int(mask))
        if mask == self._last_mask:
            return []
        self._last_mask = mask

        current = set(decode_mask(mask))
        raised = sorted(current - self.active)
        cleared = self.active - current
        self.active = current
        if cleared:
            logger.info("Emergency conditions cleared: %s",
                        ", ".join(describe_bit(b)[0] for b in sorted(cleared)))
        return raised

    def record(self, bits: list[int]):
        for bit in bits:
            message, severity = describe_bit(bit)
            self.error_log.record(message, severity, kind="Emergency")

    def active_messages(self) -> list[str]:
        return [describe_bit(b)[0] for b in sorted(self.active)]
