"""Room hub: composes discovery and the channel into host / participant roles.

Host
    ChannelServer + DiscoveryBroadcaster.  Every tick re-advertises
    ``ws://<local ip>:<port>`` (the local address can change while running).
Participant
    ChannelClient + DiscoveryListener.  Newly discovered hosts are reported
    through ``on_discovered``; with auto-join enabled the first one found is
    joined automatically.

The hub does no I/O on its own thread: :meth:`RoomHub.tick` must be called
once per scheduling period and every callback fires from inside it.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Callable

from loguru import logger

from roomlink.config.schema import RoomConfig
from roomlink.room.client import ChannelClient, ClientState
from roomlink.room.discovery import DiscoveredAddress, DiscoveryBroadcaster, DiscoveryListener
from roomlink.room.events import EventQueue, EventSink, Signal
from roomlink.room.identity import default_identity
from roomlink.room.protocol import DeviceIdentity
from roomlink.room.server import ChannelServer
from roomlink.room.transport import RawTransport, UdpTransport


class Role(str, Enum):
    IDLE = "idle"
    HOST = "host"
    PARTICIPANT = "participant"


class RoomHub:
    """Runs one device as either the room host or a participant.

    Parameters
    ----------
    config:
        Ports, timings and identity settings (defaults if omitted).
    identity:
        Local device identity; derived from the machine if omitted.
    transport:
        Datagram transport for discovery (default :class:`UdpTransport`).
    """

    def __init__(
        self,
        config: RoomConfig | None = None,
        identity: DeviceIdentity | None = None,
        transport: RawTransport | None = None,
    ) -> None:
        self.config = config or RoomConfig()
        self.identity = identity or default_identity(
            self.config.hub.device_id, self.config.hub.device_label,
        )
        self.transport = transport or UdpTransport()
        self.auto_join = self.config.hub.auto_join

        self.joined = Signal("join")
        self.left = Signal("leave")
        self.message = Signal("message")
        self.discovered = Signal("discovered")
        self.lost = Signal("lost")
        self.connected = Signal("connected")
        self.disconnected = Signal("disconnected")

        self._role = Role.IDLE
        self._server: ChannelServer | None = None
        self._broadcaster: DiscoveryBroadcaster | None = None
        self._client: ChannelClient | None = None
        self._listener: DiscoveryListener | None = None
        # Calls posted from other threads, run at the start of the next tick.
        self._calls: EventQueue[Callable[[], Any]] = EventQueue()

    # -- handler registration ------------------------------------------------

    def attach(self, sink: EventSink) -> None:
        self.joined.connect(sink.on_join)
        self.left.connect(sink.on_leave)
        self.message.connect(sink.on_message)

    def on_join(self, handler: Callable[[DeviceIdentity], None]) -> None:
        self.joined.connect(handler)

    def on_leave(self, handler: Callable[[DeviceIdentity], None]) -> None:
        self.left.connect(handler)

    def on_message(self, handler: Callable[[DeviceIdentity | None, str], None]) -> None:
        """``handler(sender, text)``; *sender* is ``None`` for messages from the host."""
        self.message.connect(handler)

    def on_discovered(self, handler: Callable[[str], None]) -> None:
        self.discovered.connect(handler)

    def on_lost(self, handler: Callable[[str], None]) -> None:
        self.lost.connect(handler)

    def on_connected(self, handler: Callable[[str], None]) -> None:
        self.connected.connect(handler)

    def on_disconnected(self, handler: Callable[[str], None]) -> None:
        self.disconnected.connect(handler)

    # -- state ---------------------------------------------------------------

    @property
    def role(self) -> Role:
        return self._role

    @property
    def server(self) -> ChannelServer | None:
        return self._server

    @property
    def client(self) -> ChannelClient | None:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    # -- roles ---------------------------------------------------------------

    def start_host(self) -> bool:
        """Become the room host.  Returns ``False`` if the server cannot bind."""
        self.stop()
        channel = self.config.channel
        server = ChannelServer(host=channel.host, port=channel.ws_port, path=channel.path)
        server.on_join(lambda identity: self._host_event(server, self.joined, identity))
        server.on_leave(lambda identity: self._host_event(server, self.left, identity))
        server.on_message(
            lambda identity, text: self._host_event(server, self.message, identity, text)
        )
        if not server.start():
            return False

        discovery = self.config.discovery
        broadcaster = DiscoveryBroadcaster(
            transport=self.transport,
            interval=discovery.broadcast_interval,
            subnet_mask=discovery.subnet_mask,
        )
        if not broadcaster.start(discovery.udp_port):
            logger.warning("[Room/Hub] discovery unavailable; participants must connect manually")

        self._server = server
        self._broadcaster = broadcaster
        self._role = Role.HOST
        logger.info("[Room/Hub] host started @ {}", self.advertised_address())
        return True

    def start_participant(self, auto_join: bool | None = None) -> bool:
        """Become a participant and start looking for a host.

        Returns ``False`` if the discovery port could not be bound; the hub
        is still a participant and :meth:`connect_to` works.
        """
        self.stop()
        if auto_join is not None:
            self.auto_join = auto_join

        client = ChannelClient(self.identity, open_timeout=self.config.channel.open_timeout)
        client.on_open(lambda: self._client_opened(client))
        client.on_close(lambda reason: self._client_closed(client, reason))
        client.on_message(lambda text: self._client_message(client, text))

        discovery = self.config.discovery
        listener = DiscoveryListener(
            transport=self.transport,
            stale_after=discovery.stale_after,
            poll_interval=discovery.poll_interval,
            capacity=discovery.buffer_capacity,
            schemes=discovery.schemes,
        )
        listener.on_discovered(lambda address: self._address_found(listener, address))
        listener.on_lost(lambda address: self._address_lost(listener, address))

        self._client = client
        self._listener = listener
        self._role = Role.PARTICIPANT
        ok = listener.start(discovery.udp_port)
        logger.info("[Room/Hub] participant started as {} (auto_join={})", self.identity, self.auto_join)
        return ok

    def stop(self) -> None:
        """Tear down whichever role is active; idempotent."""
        if self._role is Role.IDLE:
            return
        role, self._role = self._role, Role.IDLE
        if self._broadcaster is not None:
            self._broadcaster.stop()
        if self._listener is not None:
            self._listener.stop()
        if self._server is not None:
            self._server.stop()
        if self._client is not None:
            self._client.close()
        self._broadcaster = self._listener = None
        self._server = None
        self._client = None
        logger.info("[Room/Hub] {} stopped", role.value)

    # -- tick ----------------------------------------------------------------

    def tick(self, elapsed: float) -> None:
        """Advance timers and dispatch queued events; never blocks."""
        for call in self._calls.drain():
            try:
                call()
            except Exception as exc:
                logger.error("[Room/Hub] posted call failed: {!r}", exc)

        if self._role is Role.HOST and self._server is not None:
            self._server.poll()
            if self._broadcaster is not None:
                self._broadcaster.tick(elapsed, self.advertised_address())
        elif self._role is Role.PARTICIPANT and self._listener is not None:
            self._listener.poll()
            if self._client is not None:
                self._client.poll()

    def post(self, call: Callable[[], Any]) -> None:
        """Run *call* on the tick thread at the start of the next tick.

        Safe to use from any thread.
        """
        self._calls.post(call)

    def run(self, period: float | None = None) -> None:
        """Tick at a fixed period until the hub is stopped."""
        period = self.config.hub.tick_period if period is None else period
        last = time.monotonic()
        while self._role is not Role.IDLE:
            now = time.monotonic()
            self.tick(now - last)
            last = now
            delay = period - (time.monotonic() - now)
            if delay > 0:
                time.sleep(delay)

    # -- host API ------------------------------------------------------------

    def advertised_address(self) -> str:
        port = self._server.port if self._server else self.config.channel.ws_port
        ip = self.transport.local_ipv4_address() or "127.0.0.1"
        return f"ws://{ip}:{port}"

    def send_to_one(self, device_id: str, text: str) -> bool:
        if self._role is not Role.HOST or self._server is None:
            return False
        return self._server.send_to(device_id, text)

    def broadcast_all(self, text: str) -> int:
        if self._role is not Role.HOST or self._server is None:
            return 0
        return self._server.broadcast(text)

    def clients(self) -> list[DeviceIdentity]:
        if self._server is None:
            return []
        return self._server.clients()

    # -- participant API -----------------------------------------------------

    def connect_to(self, address: str) -> bool:
        """Join the host at *address* (manual join)."""
        if self._role is not Role.PARTICIPANT or self._client is None:
            logger.warning("[Room/Hub] connect_to requires the participant role")
            return False
        if self._client.state is not ClientState.DISCONNECTED:
            logger.warning("[Room/Hub] already connected to {}", self._client.address)
            return False
        return self._connect(address)

    def send(self, text: str) -> bool:
        if self._role is not Role.PARTICIPANT or self._client is None:
            return False
        return self._client.send(text)

    def discovered_addresses(self) -> list[DiscoveredAddress]:
        if self._listener is None:
            return []
        return self._listener.addresses()

    def _connect(self, address: str) -> bool:
        assert self._client is not None
        if not self._client.connect(address):
            return False
        if self._listener is not None:
            self._listener.mark_connected(address)
        return True

    # -- component callbacks (tick thread) -----------------------------------

    def _host_event(self, server: ChannelServer, signal: Signal, *args: Any) -> None:
        if self._role is Role.HOST and self._server is server:
            signal.emit(*args)

    def _address_found(self, listener: DiscoveryListener, address: str) -> None:
        if self._role is not Role.PARTICIPANT or self._listener is not listener:
            return
        self.discovered.emit(address)
        if (
            self.auto_join
            and self._client is not None
            and self._client.state is ClientState.DISCONNECTED
        ):
            self._connect(address)

    def _address_lost(self, listener: DiscoveryListener, address: str) -> None:
        if self._role is Role.PARTICIPANT and self._listener is listener:
            self.lost.emit(address)

    def _client_opened(self, client: ChannelClient) -> None:
        if self._role is Role.PARTICIPANT and self._client is client:
            logger.info("[Room/Hub] connected to {}", client.address)
            self.connected.emit(client.address)

    def _client_closed(self, client: ChannelClient, reason: str) -> None:
        if self._role is not Role.PARTICIPANT or self._client is not client:
            return
        if self._listener is not None:
            # Rediscover on the next broadcast so auto-join can rejoin.
            self._listener.forget(client.address)
        logger.info("[Room/Hub] disconnected from {}", client.address)
        self.disconnected.emit(reason)

    def _client_message(self, client: ChannelClient, text: str) -> None:
        if self._role is Role.PARTICIPANT and self._client is client:
            self.message.emit(None, text)
