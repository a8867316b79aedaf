"""Wire-level formats for discovery datagrams and channel handshakes.

Discovery envelope
------------------
Every discovery datagram is one compact JSON object, UTF-8 encoded::

    {"timestamp":"2024-05-01T12:00:00+00:00","payload":"ws:\\/\\/192.168.1.10:8765"}

Forward slashes in the serialized text are escaped as ``\\/``.  The payload is
opaque to this layer; the decoder hands it back with the escaping removed.

Handshake
---------
The first text frame a participant sends on a channel connection is its
device identity::

    {"id": "<stable id>", "device": "<label>"}

Anything after that is an application message and carries no envelope.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from roomlink.room.errors import MalformedEnvelope, MalformedHandshake

DEFAULT_SCHEMES = ("ws", "wss")


# ---------------------------------------------------------------------------
# Discovery envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Envelope:
    """One decoded discovery datagram."""

    timestamp: str
    payload: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _escape_slashes(text: str) -> str:
    return text.replace("/", "\\/")


def _unescape_slashes(text: str) -> str:
    return text.replace("\\/", "/")


def encode(payload: str, timestamp: str | None = None) -> bytes:
    """Wrap *payload* in a timestamped envelope and serialise it."""
    body = json.dumps(
        {"timestamp": timestamp or _now_iso(), "payload": payload},
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return _escape_slashes(body).encode("utf-8")


def decode_envelope(data: bytes | str) -> Envelope:
    """Parse one datagram.

    Raises :class:`MalformedEnvelope` if the data is not a JSON object or
    lacks a string ``payload``.
    """
    try:
        text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
        obj: Any = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEnvelope(f"not a JSON envelope: {exc}") from exc

    if not isinstance(obj, dict):
        raise MalformedEnvelope("envelope is not an object")
    payload = obj.get("payload")
    if not isinstance(payload, str):
        raise MalformedEnvelope("envelope has no payload field")
    timestamp = obj.get("timestamp", "")
    return Envelope(
        timestamp=timestamp if isinstance(timestamp, str) else str(timestamp),
        payload=_unescape_slashes(payload),
    )


def decode(data: bytes | str) -> str:
    """Return the payload carried by one datagram."""
    return decode_envelope(data).payload


def is_connection_uri(text: str, schemes: Iterable[str] = DEFAULT_SCHEMES) -> bool:
    """True if *text* starts with one of ``<scheme>://`` and has a host part."""
    for scheme in schemes:
        prefix = f"{scheme}://"
        if text.startswith(prefix) and len(text) > len(prefix):
            return True
    return False


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeviceIdentity:
    """Stable identity a participant declares when it joins a room."""

    id: str
    device: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    def __str__(self) -> str:
        return f"{self.device} ({self.id})" if self.device else self.id


def is_structural(text: str) -> bool:
    """True if *text* looks like a JSON object (brace-prefixed)."""
    return text.lstrip().startswith("{")


def parse_handshake(text: str) -> DeviceIdentity:
    """Parse a handshake frame into a :class:`DeviceIdentity`.

    Raises :class:`MalformedHandshake` on invalid JSON or a missing ``id``.
    """
    try:
        obj: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedHandshake(f"handshake is not JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise MalformedHandshake("handshake is not an object")

    device_id = obj.get("id")
    if not isinstance(device_id, str) or not device_id:
        raise MalformedHandshake("handshake has no id")
    label = obj.get("device", "")
    return DeviceIdentity(id=device_id, device=label if isinstance(label, str) else str(label))
