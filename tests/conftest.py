"""Shared fixtures: an in-memory datagram network and tick helpers."""

from __future__ import annotations

import queue
import time
from typing import Callable

import pytest

from roomlink.room.errors import BindFailed
from roomlink.room.transport import Endpoint


class FakeTransport:
    """In-memory :class:`RawTransport`; every send reaches every receiver."""

    def __init__(self, local_ip: str | None = "192.168.1.20", fail_open: set[str] | None = None):
        self.local_ip = local_ip
        self.fail_open = fail_open or set()
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.fail_send = False
        self.closed: list[Endpoint] = []
        self._inboxes: dict[int, queue.Queue] = {}

    def open(self, role, port):
        if role in self.fail_open:
            raise BindFailed(role, port, "address in use")
        endpoint = Endpoint(role=role, port=port, sock=None)
        if role == "receive":
            endpoint.inbox = queue.Queue()
            self._inboxes[len(self._inboxes)] = endpoint.inbox
        return endpoint

    def send(self, endpoint, data, dest):
        if self.fail_send:
            raise OSError("network unreachable")
        self.sent.append((data, dest))
        for inbox in self._inboxes.values():
            inbox.put(data)
        return len(data)

    def inject(self, data: bytes) -> None:
        """Deliver *data* as if it came from another host."""
        for inbox in self._inboxes.values():
            inbox.put(data)

    def receive(self, endpoint, timeout=0.0):
        try:
            return endpoint.inbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def local_ipv4_address(self):
        return self.local_ip

    def close(self, endpoint):
        endpoint.closed = True
        self.closed.append(endpoint)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


def wait_until(
    condition: Callable[[], bool],
    step: Callable[[], object] | None = None,
    timeout: float = 5.0,
    interval: float = 0.02,
) -> bool:
    """Call *step* repeatedly until *condition* holds or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if step is not None:
            step()
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def until():
    return wait_until
