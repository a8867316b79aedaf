"""Exception hierarchy for the room layer.

Nothing here is fatal to the process: every error is caught at the component
boundary that owns the resource, logged, and turned into an idle state, a
dropped message, or a ``False`` return value.
"""

from __future__ import annotations


class RoomError(Exception):
    """Base class for all roomlink errors."""


class BindFailed(RoomError):
    """A transport endpoint could not be opened or bound."""

    def __init__(self, role: str, port: int, reason: object = "") -> None:
        self.role = role
        self.port = port
        self.reason = reason
        super().__init__(f"cannot open {role} endpoint on port {port}: {reason}")


class ProtocolError(RoomError):
    """A message on the wire could not be decoded."""


class MalformedEnvelope(ProtocolError):
    """A discovery datagram is not a valid envelope."""


class MalformedHandshake(ProtocolError):
    """The first structural frame on a channel is not a device identity."""
