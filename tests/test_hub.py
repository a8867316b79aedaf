"""Tests for the room hub: host and participant roles end to end."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from roomlink.config import ChannelConfig, DiscoveryConfig, HubConfig, RoomConfig
from roomlink.room.hub import Role, RoomHub
from roomlink.room.protocol import DeviceIdentity, decode

from conftest import FakeTransport

HOST_ID = DeviceIdentity("host-1", "desk")
GUEST_ID = DeviceIdentity("guest-1", "phone")


def _config(auto_join: bool = True) -> RoomConfig:
    return RoomConfig(
        discovery=DiscoveryConfig(broadcast_interval=0.05),
        channel=ChannelConfig(host="127.0.0.1", ws_port=0, open_timeout=5.0),
        hub=HubConfig(auto_join=auto_join),
    )


@pytest.fixture
def lan():
    """A shared fake LAN where this machine answers on loopback."""
    return FakeTransport(local_ip="127.0.0.1")


@pytest.fixture
def hubs(lan):
    created: list[RoomHub] = []

    def make(identity: DeviceIdentity, auto_join: bool = True) -> RoomHub:
        hub = RoomHub(_config(auto_join), identity=identity, transport=lan)
        created.append(hub)
        return hub

    yield make
    for hub in created:
        hub.stop()


def _tick_all(*hubs: RoomHub):
    def step():
        for hub in hubs:
            hub.tick(0.1)
    return step


# ---------------------------------------------------------------------------
# Host
# ---------------------------------------------------------------------------

class TestHostRole:
    def test_start_host(self, transport):
        hub = RoomHub(_config(), identity=HOST_ID, transport=transport)
        try:
            assert hub.start_host() is True
            assert hub.role is Role.HOST
            assert hub.server.port != 0
            assert hub.advertised_address() == f"ws://192.168.1.20:{hub.server.port}"
        finally:
            hub.stop()
        assert hub.role is Role.IDLE
        assert hub.server is None

    def test_tick_broadcasts_address(self, transport):
        hub = RoomHub(_config(), identity=HOST_ID, transport=transport)
        hub.start_host()
        try:
            hub.tick(0.02)
            assert transport.sent == []
            hub.tick(0.04)
            assert len(transport.sent) == 1
            data, dest = transport.sent[0]
            assert decode(data) == hub.advertised_address()
            assert dest == ("192.168.1.255", 5000)
        finally:
            hub.stop()

    def test_host_without_discovery(self):
        transport = FakeTransport(fail_open={"send"})
        hub = RoomHub(_config(), identity=HOST_ID, transport=transport)
        try:
            assert hub.start_host() is True
            hub.tick(1.0)
            assert transport.sent == []
        finally:
            hub.stop()

    def test_host_routing_without_clients(self, transport):
        hub = RoomHub(_config(), identity=HOST_ID, transport=transport)
        hub.start_host()
        try:
            assert hub.send_to_one("nobody", "x") is False
            assert hub.broadcast_all("x") == 0
            assert hub.clients() == []
            assert hub.connect_to("ws://127.0.0.1:1") is False
            assert hub.send("x") is False
        finally:
            hub.stop()


# ---------------------------------------------------------------------------
# Participant
# ---------------------------------------------------------------------------

class TestParticipantRole:
    def test_start_participant(self, transport):
        hub = RoomHub(_config(), identity=GUEST_ID, transport=transport)
        try:
            assert hub.start_participant() is True
            assert hub.role is Role.PARTICIPANT
            assert not hub.is_connected
            assert hub.send("x") is False
            assert hub.broadcast_all("x") == 0
        finally:
            hub.stop()

    def test_listener_bind_failure(self):
        hub = RoomHub(
            _config(), identity=GUEST_ID, transport=FakeTransport(fail_open={"receive"}),
        )
        try:
            assert hub.start_participant() is False
            assert hub.role is Role.PARTICIPANT
        finally:
            hub.stop()

    def test_non_address_broadcasts_are_ignored(self, transport):
        found = []
        hub = RoomHub(_config(), identity=GUEST_ID, transport=transport)
        hub.on_discovered(found.append)
        hub.start_participant()
        try:
            hub._listener.buffer.push('{"timestamp":"t","payload":"hello"}')
            hub.tick(0.1)
            assert found == []
            assert hub.discovered_addresses() == []
        finally:
            hub.stop()


# ---------------------------------------------------------------------------
# Host and participant together
# ---------------------------------------------------------------------------

class TestRoom:
    def test_auto_join_and_exchange(self, hubs, until):
        host = hubs(HOST_ID)
        guest = hubs(GUEST_ID)
        joined, host_inbox, guest_inbox, connected = [], [], [], []
        host.on_join(joined.append)
        host.on_message(lambda sender, text: host_inbox.append((sender.id, text)))
        guest.on_message(lambda sender, text: guest_inbox.append((sender, text)))
        guest.on_connected(connected.append)

        assert host.start_host()
        assert guest.start_participant()
        step = _tick_all(host, guest)

        assert until(lambda: joined == [GUEST_ID] and guest.is_connected, step=step)
        assert connected == [host.advertised_address()]
        assert guest.discovered_addresses()[0].connected

        assert host.broadcast_all("welcome") == 1
        assert until(lambda: guest_inbox == [(None, "welcome")], step=step)

        assert guest.send("thanks") is True
        assert until(lambda: host_inbox == [("guest-1", "thanks")], step=step)

        assert host.send_to_one("guest-1", "direct") is True
        assert until(lambda: guest_inbox[-1] == (None, "direct"), step=step)

    def test_leave_when_participant_stops(self, hubs, until):
        host = hubs(HOST_ID)
        guest = hubs(GUEST_ID)
        left = []
        host.on_leave(left.append)
        host.start_host()
        guest.start_participant()
        step = _tick_all(host, guest)
        assert until(lambda: host.clients() == [GUEST_ID], step=step)

        guest.stop()
        assert until(lambda: left == [GUEST_ID], step=step)
        assert host.clients() == []

    def test_participant_sees_host_go_away(self, hubs, until):
        host = hubs(HOST_ID)
        guest = hubs(GUEST_ID)
        disconnected, lost = [], []
        guest.on_disconnected(disconnected.append)
        guest.on_lost(lost.append)
        host.start_host()
        guest.start_participant()
        step = _tick_all(host, guest)
        assert until(lambda: guest.is_connected, step=step)

        host.stop()
        assert until(lambda: disconnected, step=step)
        assert not guest.is_connected
        # Forgotten quietly rather than reported lost.
        step()
        assert lost == []
        assert not guest.is_connected

    def test_auto_join_rejoins_after_drop(self, hubs, until):
        host = hubs(HOST_ID)
        guest = hubs(GUEST_ID)
        connected, joined, left = [], [], []
        guest.on_connected(connected.append)
        host.on_join(joined.append)
        host.on_leave(left.append)
        host.start_host()
        guest.start_participant()
        step = _tick_all(host, guest)
        assert until(lambda: joined == [GUEST_ID] and guest.is_connected, step=step)

        # The host drops the connection but keeps advertising.
        host.server._close_connection(host.server.registry.handle_for("guest-1"))
        assert until(lambda: left == [GUEST_ID], step=step)
        assert until(lambda: len(connected) == 2 and len(joined) == 2, step=step)
        assert connected[0] == connected[1] == host.advertised_address()
        assert host.clients() == [GUEST_ID]

    def test_manual_join(self, hubs, until):
        host = hubs(HOST_ID)
        guest = hubs(GUEST_ID, auto_join=False)
        found = []
        guest.on_discovered(found.append)
        host.start_host()
        guest.start_participant()
        step = _tick_all(host, guest)

        assert until(lambda: found, step=step)
        step()
        assert not guest.is_connected
        assert host.clients() == []

        assert guest.connect_to(found[0]) is True
        assert guest.connect_to(found[0]) is False
        assert until(lambda: host.clients() == [GUEST_ID], step=step)

    def test_switching_roles_stops_previous(self, hubs):
        hub = hubs(HOST_ID)
        hub.start_host()
        server = hub.server
        hub.start_participant()
        assert not server.running
        assert hub.role is Role.PARTICIPANT
        assert hub.server is None


# ---------------------------------------------------------------------------
# Tick scheduling
# ---------------------------------------------------------------------------

class TestTickLoop:
    def test_post_runs_on_tick(self, transport):
        hub = RoomHub(_config(), identity=GUEST_ID, transport=transport)
        calls = []
        hub.post(lambda: calls.append(threading.current_thread().name))
        assert calls == []
        hub.tick(0.0)
        assert calls == [threading.current_thread().name]

    def test_failing_post_does_not_break_tick(self, transport):
        hub = RoomHub(_config(), identity=GUEST_ID, transport=transport)
        calls = []

        def broken():
            raise RuntimeError("boom")

        hub.post(broken)
        hub.post(lambda: calls.append(1))
        hub.tick(0.0)
        assert calls == [1]

    def test_run_until_stopped(self, transport):
        hub = RoomHub(_config(), identity=GUEST_ID, transport=transport)
        hub.start_participant()
        ticks = []

        def count():
            ticks.append(1)
            if len(ticks) < 3:
                hub.post(count)
            else:
                hub.stop()

        hub.post(count)
        done = threading.Event()
        runner = threading.Thread(target=lambda: (hub.run(period=0.01), done.set()))
        runner.start()
        assert done.wait(5)
        runner.join()
        assert len(ticks) == 3
        assert hub.role is Role.IDLE

    def test_run_returns_when_idle(self, transport):
        RoomHub(_config(), identity=GUEST_ID, transport=transport).run(period=0.01)

    def test_attach_sink(self, transport):
        sink = MagicMock()
        hub = RoomHub(_config(), identity=GUEST_ID, transport=transport)
        hub.attach(sink)
        hub.message.emit(None, "x")
        hub.joined.emit(GUEST_ID)
        sink.on_message.assert_called_once_with(None, "x")
        sink.on_join.assert_called_once_with(GUEST_ID)
        sink.on_leave.assert_not_called()
