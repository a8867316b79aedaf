"""UDP broadcast discovery of a room host.

How it works
------------
1. The host runs a :class:`DiscoveryBroadcaster`.  Every ``tick`` adds the
   elapsed time to an accumulator; once a full interval (default 1 s) has
   accumulated, one envelope carrying the host's ``ws://host:port`` address
   is sent to the subnet broadcast address on the discovery port (default
   5000).
2. Participants run a :class:`DiscoveryListener`.  A background thread
   receives datagrams, checks they decode, and pushes them into an
   :class:`InboundBuffer`.  ``poll`` on the consumer thread drains the
   buffer, keeps payloads that are connection URIs and reports each address
   once until it goes stale.
3. An address not seen for ``stale_after`` seconds (default 3) is dropped
   unless the participant is connected to it, and is reported again if the
   host reappears.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterable

from loguru import logger

from roomlink.room.buffer import DEFAULT_CAPACITY, InboundBuffer
from roomlink.room.errors import BindFailed, MalformedEnvelope
from roomlink.room.events import Signal
from roomlink.room.protocol import DEFAULT_SCHEMES, decode, encode, is_connection_uri
from roomlink.room.transport import (
    DEFAULT_SUBNET_MASK,
    Endpoint,
    RawTransport,
    UdpTransport,
    broadcast_address,
)

DEFAULT_UDP_PORT = 5000


# ---------------------------------------------------------------------------
# Broadcaster
# ---------------------------------------------------------------------------

class DiscoveryBroadcaster:
    """Periodically advertises a rendezvous address over UDP broadcast.

    Parameters
    ----------
    transport:
        Datagram transport (default :class:`UdpTransport`).
    interval:
        Seconds of accumulated tick time between two broadcasts.
    subnet_mask:
        Mask applied to the local address to compute the broadcast target.
    """

    def __init__(
        self,
        transport: RawTransport | None = None,
        interval: float = 1.0,
        subnet_mask: str = DEFAULT_SUBNET_MASK,
    ) -> None:
        self.transport = transport or UdpTransport()
        self.interval = interval
        self.subnet_mask = subnet_mask
        self.port = DEFAULT_UDP_PORT
        self.target = ""
        self.sent_count = 0
        self._elapsed = 0.0
        self._endpoint: Endpoint | None = None

    @property
    def broadcasting(self) -> bool:
        return self._endpoint is not None

    def start(self, port: int = DEFAULT_UDP_PORT) -> bool:
        """Open the send endpoint.  Returns ``False`` if it could not be opened."""
        if self._endpoint is not None:
            return True
        try:
            self._endpoint = self.transport.open("send", port)
        except BindFailed as exc:
            logger.error("[Room/Discovery] broadcaster start failed: {}", exc)
            return False

        self.port = port
        self._elapsed = 0.0
        local_ip = self.transport.local_ipv4_address()
        self.target = broadcast_address(local_ip, self.subnet_mask)
        if local_ip:
            logger.info(
                "[Room/Discovery] broadcasting on udp={} local={} target={}",
                port, local_ip, self.target,
            )
        else:
            logger.warning(
                "[Room/Discovery] local address lookup failed, broadcasting to {}",
                self.target,
            )
        return True

    def tick(self, elapsed: float, address: str) -> bool:
        """Advance the interval timer; returns ``True`` if a datagram was sent."""
        if self._endpoint is None or not address:
            return False
        self._elapsed += elapsed
        if self._elapsed < self.interval:
            return False
        self._elapsed = 0.0
        return self.send(address)

    def send(self, address: str) -> bool:
        """Send one envelope immediately.  Failures are logged, not raised."""
        if self._endpoint is None:
            return False
        data = encode(address)
        try:
            sent = self.transport.send(self._endpoint, data, (self.target, self.port))
        except OSError as exc:
            logger.warning("[Room/Discovery] broadcast to {} failed: {}", self.target, exc)
            return False
        self.sent_count += 1
        logger.debug("[Room/Discovery] sent {} bytes: {}", sent, address)
        return True

    def stop(self) -> None:
        if self._endpoint is None:
            return
        endpoint, self._endpoint = self._endpoint, None
        try:
            self.transport.close(endpoint)
        except OSError as exc:
            logger.debug("[Room/Discovery] close error: {}", exc)
        logger.info("[Room/Discovery] broadcaster stopped")


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------

@dataclass
class DiscoveredAddress:
    """A rendezvous address seen on the network."""

    address: str
    first_seen: float
    last_seen: float
    connected: bool = False

    def age(self, now: float) -> float:
        return now - self.last_seen


@dataclass
class _ListenerContext:
    """Per-activation state shared with the receive thread."""

    endpoint: Endpoint
    cancel: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None


class DiscoveryListener:
    """Receives discovery envelopes and reports new rendezvous addresses.

    Parameters
    ----------
    on_discovered:
        Optional callback ``(address)`` fired once per new address.
    transport:
        Datagram transport (default :class:`UdpTransport`).
    stale_after:
        Seconds without a broadcast after which an address is forgotten.
    poll_interval:
        Receive-thread wait per iteration; bounds how long ``stop`` takes.
    capacity:
        Size of the inbound datagram buffer.
    schemes:
        URI schemes accepted as rendezvous addresses.
    clock:
        Monotonic time source for last-seen bookkeeping.
    """

    def __init__(
        self,
        on_discovered: Callable[[str], None] | None = None,
        transport: RawTransport | None = None,
        stale_after: float = 3.0,
        poll_interval: float = 0.01,
        capacity: int = DEFAULT_CAPACITY,
        schemes: Iterable[str] = DEFAULT_SCHEMES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport or UdpTransport()
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.schemes = tuple(schemes)
        self.buffer: InboundBuffer[str] = InboundBuffer(capacity)
        self._clock = clock
        self._ctx: _ListenerContext | None = None
        self._ready: deque[str] = deque()
        # address → DiscoveredAddress
        self._table: dict[str, DiscoveredAddress] = {}
        self.discovered = Signal("discovered")
        self.lost = Signal("lost")
        if on_discovered is not None:
            self.discovered.connect(on_discovered)

    # -- handler registration ------------------------------------------------

    def on_discovered(self, handler: Callable[[str], None]) -> None:
        """Register a callback fired once per newly discovered address."""
        self.discovered.connect(handler)

    def on_lost(self, handler: Callable[[str], None]) -> None:
        """Register a callback fired when an address goes stale."""
        self.lost.connect(handler)

    # -- lifecycle -----------------------------------------------------------

    @property
    def listening(self) -> bool:
        return self._ctx is not None

    def start(self, port: int = DEFAULT_UDP_PORT) -> bool:
        """Bind the receive endpoint and start the receive thread."""
        if self._ctx is not None:
            return True
        try:
            endpoint = self.transport.open("receive", port)
        except BindFailed as exc:
            logger.error("[Room/Listener] start failed: {}", exc)
            return False

        ctx = _ListenerContext(endpoint=endpoint)
        ctx.thread = threading.Thread(
            target=self._receive_loop, args=(ctx,), daemon=True, name="room-discovery-rx",
        )
        self._ctx = ctx
        ctx.thread.start()
        logger.info("[Room/Listener] listening on udp={}", port)
        return True

    def stop(self) -> None:
        """Cancel the receive thread and release the endpoint; idempotent."""
        ctx, self._ctx = self._ctx, None
        if ctx is None:
            return
        ctx.cancel.set()
        if ctx.thread is not None:
            ctx.thread.join(timeout=max(1.0, self.poll_interval * 10))
        try:
            self.transport.close(ctx.endpoint)
        except OSError as exc:
            logger.debug("[Room/Listener] close error: {}", exc)
        self.buffer.clear()
        self._ready.clear()
        self._table.clear()
        logger.info("[Room/Listener] stopped")

    # -- background thread ---------------------------------------------------

    def _receive_loop(self, ctx: _ListenerContext) -> None:
        while not ctx.cancel.is_set():
            try:
                data = self.transport.receive(ctx.endpoint, self.poll_interval)
            except (OSError, ValueError) as exc:
                if ctx.cancel.is_set():
                    break
                logger.warning("[Room/Listener] receive error: {}", exc)
                ctx.cancel.wait(self.poll_interval)
                continue
            if data is None:
                continue
            try:
                decode(data)
            except MalformedEnvelope as exc:
                logger.warning("[Room/Listener] dropped datagram: {}", exc)
                continue
            text = data.decode("utf-8")
            logger.debug("[Room/Listener] received {}", text)
            if self.buffer.push(text):
                logger.debug("[Room/Listener] buffer full, oldest datagram dropped")

    # -- consumer side -------------------------------------------------------

    def poll(self, now: float | None = None) -> list[str]:
        """Dispatch buffered broadcasts; call once per tick.

        Returns the addresses reported as new during this call.
        """
        now = self._clock() if now is None else now

        for raw in self.buffer.drain():
            try:
                payload = decode(raw)
            except MalformedEnvelope as exc:
                logger.warning("[Room/Listener] parse failed: {}", exc)
                continue
            if is_connection_uri(payload, self.schemes):
                self._ready.append(payload)
            else:
                logger.debug("[Room/Listener] ignoring non-address payload {!r}", payload)

        new: list[str] = []
        while self._ready:
            address = self._ready.popleft()
            entry = self._table.get(address)
            if entry is not None:
                entry.last_seen = now
                continue
            self._table[address] = DiscoveredAddress(address, first_seen=now, last_seen=now)
            logger.info("[Room/Listener] found {}", address)
            new.append(address)
            self.discovered.emit(address)

        self.prune(now)
        return new

    def prune(self, now: float | None = None) -> list[str]:
        """Forget addresses not seen within ``stale_after`` seconds."""
        now = self._clock() if now is None else now
        stale = [
            a for a, entry in self._table.items()
            if not entry.connected and entry.age(now) > self.stale_after
        ]
        for address in stale:
            del self._table[address]
            logger.info("[Room/Listener] timed out: {}", address)
            self.lost.emit(address)
        return stale

    # -- queries -------------------------------------------------------------

    def mark_connected(self, address: str, connected: bool = True) -> None:
        """Pin (or unpin) *address* so it is not pruned while in use."""
        entry = self._table.get(address)
        if entry is not None:
            entry.connected = connected

    def forget(self, address: str) -> bool:
        """Drop *address* without firing ``on_lost``.

        The next broadcast carrying it is reported as a new discovery.
        """
        if self._table.pop(address, None) is None:
            return False
        logger.debug("[Room/Listener] forgot {}", address)
        return True

    def addresses(self) -> list[DiscoveredAddress]:
        """Currently known addresses, in discovery order."""
        return list(self._table.values())

    def get(self, address: str) -> DiscoveredAddress | None:
        return self._table.get(address)
