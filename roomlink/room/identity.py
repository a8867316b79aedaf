"""Default device identity derived from stable machine properties."""

from __future__ import annotations

import hashlib
import platform
import socket
import uuid

from roomlink.room.protocol import DeviceIdentity


def default_device_id() -> str:
    """Stable ID from the hostname and hardware address.

    The same machine produces the same ID across restarts, so the host can
    recognise a participant that reconnects.
    """
    seed = f"{socket.gethostname()}:{uuid.getnode():012x}"
    digest = hashlib.sha1(seed.encode("utf-8")).hexdigest()[:12]
    return f"{socket.gethostname()}-{digest}"


def default_device_label() -> str:
    return platform.system() or "unknown"


def default_identity(device_id: str = "", label: str = "") -> DeviceIdentity:
    """Build the local identity, filling blanks with machine defaults."""
    return DeviceIdentity(
        id=device_id or default_device_id(),
        device=label or default_device_label(),
    )
