"""WebSocket participant connection to a room host."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable

from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from roomlink.room.events import ClientEvent, Closed, EventQueue, MessageReceived, Opened, Signal
from roomlink.room.loop import BackgroundLoop
from roomlink.room.protocol import DeviceIdentity


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ChannelClient:
    """One reliable, ordered connection to a :class:`ChannelServer`.

    The connection runs on its own :class:`BackgroundLoop`; a fresh loop is
    created per ``connect`` and torn down when the connection ends, so a
    dropped connection leaves nothing behind and a later ``connect`` starts
    clean.  Reconnection is up to the caller.

    Parameters
    ----------
    identity:
        Sent as the handshake frame as soon as the connection opens.
    open_timeout:
        Seconds allowed for the TCP + WebSocket opening handshake.
    """

    def __init__(self, identity: DeviceIdentity, open_timeout: float = 10.0) -> None:
        self.identity = identity
        self.open_timeout = open_timeout
        self.address = ""
        self.opened = Signal("open")
        self.closed = Signal("close")
        self.message = Signal("message")

        self._state = ClientState.DISCONNECTED
        self._events: EventQueue[ClientEvent] = EventQueue()
        self._loop: BackgroundLoop | None = None
        self._ws: ClientConnection | None = None
        # Bumped on every connect/close; events from older sessions are ignored.
        self._session = 0

    # -- handler registration ------------------------------------------------

    def on_open(self, handler: Callable[[], None]) -> None:
        self.opened.connect(handler)

    def on_close(self, handler: Callable[[str], None]) -> None:
        self.closed.connect(handler)

    def on_message(self, handler: Callable[[str], None]) -> None:
        self.message.connect(handler)

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ClientState.CONNECTED

    # -- lifecycle -----------------------------------------------------------

    def connect(self, address: str) -> bool:
        """Start connecting to *address*.

        Returns ``False`` without doing anything if a connection is already
        open or in progress.  The outcome arrives through ``poll``.
        """
        if self._state is not ClientState.DISCONNECTED:
            logger.debug("[Room/Client] already {} to {}", self._state.value, self.address)
            return False
        self._session += 1
        self._state = ClientState.CONNECTING
        self.address = address
        self._loop = BackgroundLoop(name="room-ws-client")
        self._loop.start()
        self._loop.spawn(self._run(self._session, address), name="room-client-session")
        logger.info("[Room/Client] connecting to {}", address)
        return True

    def close(self) -> None:
        """Close the connection (or abandon a pending attempt)."""
        if self._state is ClientState.DISCONNECTED:
            return
        self._session += 1
        self._state = ClientState.DISCONNECTED
        self._teardown()
        logger.info("[Room/Client] closed {}", self.address)
        self.closed.emit("closed by client")

    def _teardown(self) -> None:
        loop, self._loop = self._loop, None
        if loop is not None:
            loop.stop()
        self._ws = None
        self._events.clear()

    # -- loop thread ---------------------------------------------------------

    async def _run(self, session: int, address: str) -> None:
        reason = "closed"
        try:
            async with connect(address, open_timeout=self.open_timeout) as ws:
                self._ws = ws
                await ws.send(self.identity.to_json())
                self._events.post(Opened(session, address))
                async for message in ws:
                    if isinstance(message, str):
                        self._events.post(MessageReceived(session, message))
        except ConnectionClosed as exc:
            reason = str(exc)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            reason = f"{type(exc).__name__}: {exc}"
        finally:
            self._ws = None
            self._events.post(Closed(session, address, reason))

    async def _send(self, payload: str) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(payload)
        except ConnectionClosed as exc:
            logger.warning("[Room/Client] send failed: {}", exc)

    # -- consumer thread -----------------------------------------------------

    def send(self, payload: str) -> bool:
        """Queue *payload* for the host; no effect unless connected."""
        if self._state is not ClientState.CONNECTED or self._loop is None:
            return False
        try:
            self._loop.spawn(self._send(payload), name="room-client-send")
        except RuntimeError as exc:
            logger.warning("[Room/Client] cannot send: {}", exc)
            return False
        return True

    def poll(self) -> int:
        """Apply queued connection events; call once per tick."""
        events = self._events.drain()
        for event in events:
            if event.session != self._session:
                continue
            if isinstance(event, Opened):
                self._state = ClientState.CONNECTED
                logger.info("[Room/Client] connected to {}", event.address)
                self.opened.emit()
            elif isinstance(event, MessageReceived):
                if self._state is ClientState.CONNECTED:
                    self.message.emit(event.text)
            elif isinstance(event, Closed):
                self._state = ClientState.DISCONNECTED
                self._teardown()
                logger.info("[Room/Client] disconnected from {}: {}", event.address, event.reason)
                self.closed.emit(event.reason)
                break
        return len(events)
