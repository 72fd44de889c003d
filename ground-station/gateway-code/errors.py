"""Exceptions raised across the pod link.

None of these are meant to reach the operator surfaces: the gateway catches
them at the boundary where they happen and turns them into log entries. A class name doubles as the ``kind`` of the
log entries recorded for that failure.
"""


class PodLinkError(Exception):
    """Base exception for the pod telemetry gateway."""

    pass


class TransportUnavailable(PodLinkError):
    """The host has no usable transport (no serial port, no adapter, no URL)."""

    pass


class ConnectionFailed(PodLinkError):
    """Opening the device failed (permission denied, busy, unplugged)."""

    pass


class ConnectionTimedOut(ConnectionFailed):
    """Opening the device did not complete within the connect timeout."""

    pass


class NotConnected(PodLinkError):
    """A write was attempted without an open channel."""

    pass


class SendFailed(PodLinkError):
    """Writing a command to the device failed."""

    pass


class ParseError(PodLinkError):
    """A line looked like JSON but could not be decoded."""

    pass


class ExtractionError(PodLinkError):
    """Valid JSON with an unexpected shape inside."""

    pass


class CommandFailed(PodLinkError):
    """A relay/status command could not be dispatched."""

    pass
