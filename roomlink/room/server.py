"""WebSocket room server: session registry and message routing.

Each accepted connection gets a transient handle (the WebSocket connection
id).  The first brace-prefixed text frame on a connection is the device
handshake; it binds the handle to a stable :class:`DeviceIdentity` in the
:class:`SessionRegistry`.  Later frames are application messages from that
identity.

Socket I/O runs on a :class:`BackgroundLoop`.  Connection coroutines only
post events into an :class:`EventQueue`; :meth:`ChannelServer.poll` applies
them on the consumer thread, so the registry and every callback live on one
thread.
"""

from __future__ import annotations

import threading
from http import HTTPStatus
from typing import Callable

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from roomlink.room.errors import MalformedHandshake
from roomlink.room.events import (
    ConnectionClosed as ConnectionClosedEvent,
    ConnectionOpened,
    EventQueue,
    EventSink,
    ServerEvent,
    Signal,
    TextReceived,
)
from roomlink.room.loop import BackgroundLoop
from roomlink.room.protocol import DeviceIdentity, is_structural, parse_handshake

DEFAULT_WS_PORT = 8765


class SessionRegistry:
    """Maps live connection handles to the identity they declared.

    Entries keep registration order.  An identity holds at most one handle:
    registering an id that is already present evicts the older handle.
    """

    def __init__(self) -> None:
        # handle → DeviceIdentity
        self._entries: dict[str, DeviceIdentity] = {}

    def identify(self, handle: str, identity: DeviceIdentity) -> str | None:
        """Bind *handle* to *identity*; return the evicted stale handle, if any."""
        stale = self.handle_for(identity.id)
        if stale == handle:
            stale = None
        if stale is not None:
            del self._entries[stale]
        self._entries[handle] = identity
        return stale

    def remove(self, handle: str) -> DeviceIdentity | None:
        return self._entries.pop(handle, None)

    def identity_of(self, handle: str) -> DeviceIdentity | None:
        return self._entries.get(handle)

    def handle_for(self, device_id: str) -> str | None:
        """First registered handle whose identity has *device_id*."""
        for handle, identity in self._entries.items():
            if identity.id == device_id:
                return handle
        return None

    def handles(self) -> list[str]:
        return list(self._entries)

    def identities(self) -> list[DeviceIdentity]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, handle: object) -> bool:
        return handle in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ChannelServer:
    """Accepts participant connections and routes messages by identity.

    Parameters
    ----------
    host:
        Interface to bind (default ``"0.0.0.0"``).
    port:
        TCP port (default 8765; 0 picks a free port, see :attr:`port`).
    path:
        The only request path accepted.
    sink:
        Optional :class:`EventSink` to receive join/leave/message events.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = DEFAULT_WS_PORT,
        path: str = "/",
        sink: EventSink | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.path = path
        self.registry = SessionRegistry()
        self.joined = Signal("join")
        self.left = Signal("leave")
        self.message = Signal("message")
        if sink is not None:
            self.attach(sink)

        self._events: EventQueue[ServerEvent] = EventQueue()
        self._loop: BackgroundLoop | None = None
        self._server: Server | None = None
        # handle → connection; written by the loop thread, read by the consumer
        self._connections: dict[str, ServerConnection] = {}
        self._conn_lock = threading.Lock()
        # Handles replaced by a newer connection with the same identity; their
        # frames are ignored until the close event arrives.
        self._evicted: set[str] = set()

    # -- handler registration ------------------------------------------------

    def attach(self, sink: EventSink) -> None:
        self.joined.connect(sink.on_join)
        self.left.connect(sink.on_leave)
        self.message.connect(sink.on_message)

    def on_join(self, handler: Callable[[DeviceIdentity], None]) -> None:
        self.joined.connect(handler)

    def on_leave(self, handler: Callable[[DeviceIdentity], None]) -> None:
        self.left.connect(handler)

    def on_message(self, handler: Callable[[DeviceIdentity, str], None]) -> None:
        self.message.connect(handler)

    # -- lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._server is not None

    def start(self, timeout: float = 10.0) -> bool:
        """Bind and start serving.  Returns ``False`` if the port is unavailable."""
        if self._server is not None:
            return True
        loop = BackgroundLoop(name="room-ws-server")
        loop.start()
        try:
            self._server = loop.run(self._open_server(), timeout)
        except OSError as exc:
            logger.error("[Room/Server] cannot listen on {}:{}: {}", self.host, self.port, exc)
            loop.stop()
            return False
        self._loop = loop
        sockets = list(self._server.sockets)
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info("[Room/Server] listening on ws://{}:{}{}", self.host, self.port, self.path)
        return True

    async def _open_server(self) -> Server:
        return await serve(
            self._handle_connection,
            self.host,
            self.port,
            process_request=self._check_path,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Close the listener and every live connection; idempotent."""
        server, self._server = self._server, None
        loop, self._loop = self._loop, None
        if server is None or loop is None:
            return
        try:
            loop.run(self._close_server(server), timeout)
        except Exception as exc:
            logger.warning("[Room/Server] shutdown error: {!r}", exc)
        loop.stop()
        with self._conn_lock:
            self._connections.clear()
        self._events.clear()
        self.registry.clear()
        self._evicted.clear()
        logger.info("[Room/Server] stopped")

    @staticmethod
    async def _close_server(server: Server) -> None:
        server.close()
        await server.wait_closed()

    # -- loop thread ---------------------------------------------------------

    def _check_path(self, connection: ServerConnection, request: Request) -> Response | None:
        path = request.path.split("?", 1)[0]
        if path != self.path:
            logger.debug("[Room/Server] rejected request for {}", request.path)
            return connection.respond(HTTPStatus.NOT_FOUND, "not found\n")
        return None

    async def _handle_connection(self, connection: ServerConnection) -> None:
        handle = str(connection.id)
        remote = connection.remote_address
        with self._conn_lock:
            self._connections[handle] = connection
        self._events.post(ConnectionOpened(handle, f"{remote[0]}:{remote[1]}" if remote else ""))
        reason = ""
        try:
            async for message in connection:
                if isinstance(message, str):
                    self._events.post(TextReceived(handle, message))
                else:
                    logger.debug("[Room/Server] ignoring binary frame from {}", handle)
        except ConnectionClosed as exc:
            reason = str(exc)
        finally:
            with self._conn_lock:
                self._connections.pop(handle, None)
            self._events.post(ConnectionClosedEvent(handle, reason))

    @staticmethod
    async def _send(connection: ServerConnection, payload: str, label: str) -> None:
        try:
            await connection.send(payload)
        except ConnectionClosed as exc:
            logger.warning("[Room/Server] delivery to {} failed: {}", label, exc)

    # -- consumer thread -----------------------------------------------------

    def poll(self) -> int:
        """Apply queued connection events; call once per tick.

        Returns the number of events applied.
        """
        if self._server is None:
            return 0
        events = self._events.drain()
        for event in events:
            self.apply(event)
        return len(events)

    def apply(self, event: ServerEvent) -> None:
        """Apply one connection event to the registry and fire callbacks."""
        if isinstance(event, ConnectionOpened):
            logger.debug("[Room/Server] connection {} from {}", event.handle, event.remote)
        elif isinstance(event, TextReceived):
            self._on_text(event.handle, event.text)
        elif isinstance(event, ConnectionClosedEvent):
            self._on_closed(event.handle)

    def _on_text(self, handle: str, text: str) -> None:
        if handle in self._evicted:
            logger.debug("[Room/Server] ignoring frame from evicted connection {}", handle)
            return
        identity = self.registry.identity_of(handle)
        if identity is not None:
            self.message.emit(identity, text)
            return

        if not is_structural(text):
            logger.warning(
                "[Room/Server] dropping message from unidentified connection {}", handle,
            )
            return
        try:
            identity = parse_handshake(text)
        except MalformedHandshake as exc:
            logger.warning("[Room/Server] bad handshake from {}: {}", handle, exc)
            return

        stale = self.registry.identify(handle, identity)
        if stale is not None:
            logger.info("[Room/Server] {} reconnected, evicting stale connection", identity)
            self._evicted.add(stale)
            self._close_connection(stale)
            self.left.emit(identity)
        logger.info("[Room/Server] joined: {}", identity)
        self.joined.emit(identity)

    def _on_closed(self, handle: str) -> None:
        self._evicted.discard(handle)
        identity = self.registry.remove(handle)
        if identity is None:
            logger.debug("[Room/Server] unidentified connection {} closed", handle)
            return
        logger.info("[Room/Server] left: {}", identity)
        self.left.emit(identity)

    def _close_connection(self, handle: str) -> None:
        with self._conn_lock:
            connection = self._connections.get(handle)
        if connection is None or self._loop is None:
            return
        self._loop.spawn(connection.close(), name=f"room-evict-{handle}")

    # -- routing -------------------------------------------------------------

    def send_to(self, device_id: str, payload: str) -> bool:
        """Send *payload* to the connection registered as *device_id*."""
        handle = self.registry.handle_for(device_id)
        if handle is None:
            logger.warning("[Room/Server] no connected device {!r}", device_id)
            return False
        return self._deliver(handle, payload, device_id)

    def broadcast(self, payload: str) -> int:
        """Send *payload* to every identified connection.

        Returns the number of deliveries scheduled.
        """
        sent = 0
        for handle in self.registry.handles():
            identity = self.registry.identity_of(handle)
            if self._deliver(handle, payload, identity.id if identity else handle):
                sent += 1
        return sent

    def _deliver(self, handle: str, payload: str, label: str) -> bool:
        with self._conn_lock:
            connection = self._connections.get(handle)
        if connection is None or self._loop is None:
            logger.warning("[Room/Server] connection for {} is gone", label)
            return False
        try:
            self._loop.spawn(self._send(connection, payload, label), name=f"room-send-{label}")
        except RuntimeError as exc:
            logger.warning("[Room/Server] cannot deliver to {}: {}", label, exc)
            return False
        return True

    # -- queries -------------------------------------------------------------

    def clients(self) -> list[DeviceIdentity]:
        return self.registry.identities()

    @property
    def connection_count(self) -> int:
        with self._conn_lock:
            return len(self._connections)
