"""Raw datagram transport used by discovery.

Discovery only needs five primitives: open an endpoint for sending or
receiving, send a datagram, poll for one, close, and find the local IPv4
address.  :class:`RawTransport` is that contract; :class:`UdpTransport` is
the default implementation over plain UDP sockets.  Tests and other
platforms can plug in their own implementation.
"""

from __future__ import annotations

import ipaddress
import select
import socket
from dataclasses import dataclass, field
from typing import Literal, Protocol

import psutil
from loguru import logger

from roomlink.room.errors import BindFailed

Role = Literal["send", "receive"]

BROADCAST_ALL = "255.255.255.255"
DEFAULT_SUBNET_MASK = "255.255.255.0"
MAX_DATAGRAM = 1024

# Interface name prefixes that usually carry the LAN (Wi-Fi / Ethernet).
_LAN_IFACE_PREFIXES = ("en", "eth", "wl", "wlan")


@dataclass
class Endpoint:
    """An open datagram socket and the role it was opened for."""

    role: Role
    port: int
    sock: socket.socket = field(repr=False)
    closed: bool = False


class RawTransport(Protocol):
    """Datagram primitives used by the broadcaster and listener."""

    def open(self, role: Role, port: int) -> Endpoint:
        """Open an endpoint; raise :class:`BindFailed` on failure."""
        ...

    def send(self, endpoint: Endpoint, data: bytes, dest: tuple[str, int]) -> int:
        """Send one datagram and return the number of bytes sent."""
        ...

    def receive(self, endpoint: Endpoint, timeout: float = 0.0) -> bytes | None:
        """Return one datagram, or ``None`` if nothing arrived within *timeout*."""
        ...

    def local_ipv4_address(self) -> str | None: ...

    def close(self, endpoint: Endpoint) -> None: ...


class UdpTransport:
    """:class:`RawTransport` over UDP sockets."""

    def open(self, role: Role, port: int) -> Endpoint:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            raise BindFailed(role, port, exc) from exc
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            if role == "receive":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                if hasattr(socket, "SO_REUSEPORT"):
                    try:
                        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                    except OSError:
                        pass
                sock.bind(("", port))
            sock.setblocking(False)
        except OSError as exc:
            sock.close()
            raise BindFailed(role, port, exc) from exc
        return Endpoint(role=role, port=port, sock=sock)

    def send(self, endpoint: Endpoint, data: bytes, dest: tuple[str, int]) -> int:
        return endpoint.sock.sendto(data, dest)

    def receive(self, endpoint: Endpoint, timeout: float = 0.0) -> bytes | None:
        if endpoint.closed:
            return None
        readable, _, _ = select.select([endpoint.sock], [], [], timeout)
        if not readable:
            return None
        try:
            data, _addr = endpoint.sock.recvfrom(MAX_DATAGRAM)
        except BlockingIOError:
            return None
        return data

    def local_ipv4_address(self) -> str | None:
        return local_ipv4_address()

    def close(self, endpoint: Endpoint) -> None:
        if endpoint.closed:
            return
        endpoint.closed = True
        endpoint.sock.close()


# ---------------------------------------------------------------------------
# Address helpers
# ---------------------------------------------------------------------------

def list_ipv4_interfaces() -> list[tuple[str, str]]:
    """Return ``(interface_name, ipv4_address)`` for every configured address."""
    interfaces = []
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family == socket.AF_INET:
                interfaces.append((name, addr.address))
    return interfaces


def local_ipv4_address() -> str | None:
    """Pick the address other devices on the LAN can most likely reach.

    Private 192.168.x.x addresses on Wi-Fi/Ethernet interfaces win, then any
    192.x address, then any other non-loopback, non-link-local address.
    """
    try:
        interfaces = list_ipv4_interfaces()
    except (OSError, RuntimeError) as exc:
        logger.warning("[Room/Transport] interface lookup failed: {}", exc)
        return None

    def rank(item: tuple[str, str]) -> int:
        name, ip = item
        if ip.startswith("192.") and name.startswith(_LAN_IFACE_PREFIXES):
            return 0
        if ip.startswith("192."):
            return 1
        return 2

    candidates = []
    for name, ip in interfaces:
        try:
            addr = ipaddress.IPv4Address(ip)
        except ValueError:
            continue
        if addr.is_loopback or addr.is_link_local or addr.is_unspecified:
            continue
        candidates.append((name, ip))
    if not candidates:
        return None
    return min(candidates, key=rank)[1]


def broadcast_address(ip: str | None, subnet_mask: str = DEFAULT_SUBNET_MASK) -> str:
    """Directed broadcast address for *ip*; the limited broadcast if unknown.

    >>> broadcast_address("192.168.0.12")
    '192.168.0.255'
    """
    if not ip:
        return BROADCAST_ALL
    try:
        net = ipaddress.IPv4Network(f"{ip}/{subnet_mask}", strict=False)
    except ValueError:
        return BROADCAST_ALL
    return str(net.broadcast_address)
