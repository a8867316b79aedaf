"""Events crossing from I/O threads to the tick consumer.

Background threads never touch registry or user-visible state.  They post
immutable events into an :class:`EventQueue`; the owning component drains the
queue from ``poll()`` on the consumer thread and applies the events there.
"""

from __future__ import annotations

import queue
from dataclasses import dataclass
from typing import Any, Callable, Generic, Protocol, TypeVar, runtime_checkable

from loguru import logger

from roomlink.room.protocol import DeviceIdentity

E = TypeVar("E")


# ---------------------------------------------------------------------------
# Server-side connection events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConnectionOpened:
    handle: str
    remote: str = ""


@dataclass(frozen=True)
class TextReceived:
    handle: str
    text: str


@dataclass(frozen=True)
class ConnectionClosed:
    handle: str
    reason: str = ""


ServerEvent = ConnectionOpened | TextReceived | ConnectionClosed


# ---------------------------------------------------------------------------
# Client-side connection events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Opened:
    session: int
    address: str


@dataclass(frozen=True)
class MessageReceived:
    session: int
    text: str


@dataclass(frozen=True)
class Closed:
    session: int
    address: str
    reason: str = ""


ClientEvent = Opened | MessageReceived | Closed


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class EventQueue(Generic[E]):
    """Unbounded thread-safe FIFO of events (many producers, one consumer)."""

    def __init__(self) -> None:
        self._q: queue.SimpleQueue[E] = queue.SimpleQueue()

    def post(self, event: E) -> None:
        self._q.put(event)

    def drain(self) -> list[E]:
        """Pop everything posted so far, oldest first, without blocking."""
        events: list[E] = []
        while True:
            try:
                events.append(self._q.get_nowait())
            except queue.Empty:
                return events

    def clear(self) -> None:
        self.drain()

    def empty(self) -> bool:
        return self._q.empty()


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

@runtime_checkable
class EventSink(Protocol):
    """Receives room membership and message events on the consumer thread."""

    def on_join(self, identity: DeviceIdentity) -> None: ...

    def on_leave(self, identity: DeviceIdentity) -> None: ...

    def on_message(self, identity: DeviceIdentity | None, payload: str) -> None: ...


class Signal:
    """A list of callbacks fired in registration order.

    A callback that raises is logged and skipped; the remaining callbacks
    still run.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Callable[..., Any]] = []

    def connect(self, handler: Callable[..., Any]) -> Callable[..., Any]:
        self._handlers.append(handler)
        return handler

    def disconnect(self, handler: Callable[..., Any]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def emit(self, *args: Any) -> None:
        for handler in list(self._handlers):
            try:
                handler(*args)
            except Exception as exc:
                logger.error("[Room/Events] {} handler error: {!r}", self.name, exc)

    def __len__(self) -> int:
        return len(self._handlers)
