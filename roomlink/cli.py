"""Command-line demo: host a room or join one from a terminal.

    python -m roomlink host
    python -m roomlink join [--no-auto-join] [--connect ws://192.168.1.10:8765]

Lines typed on stdin are sent into the room.  As host, ``@<device-id> text``
sends to one participant and anything else goes to everyone.  ``/quit``
leaves.
"""

from __future__ import annotations

import argparse
import sys
import threading
from typing import Sequence

from loguru import logger

from roomlink.config.schema import load_config
from roomlink.room.hub import Role, RoomHub
from roomlink.room.protocol import DeviceIdentity


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="roomlink", description=__doc__.splitlines()[0])
    parser.add_argument("--config", help="JSON config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="role", required=True)
    sub.add_parser("host", help="host a room and advertise it on the LAN")
    join = sub.add_parser("join", help="discover a host and join its room")
    join.add_argument("--no-auto-join", action="store_true", help="only list discovered hosts")
    join.add_argument("--connect", metavar="URL", help="join this address directly")
    return parser


def _print(line: str) -> None:
    print(line, flush=True)


def _handle_line(hub: RoomHub, line: str) -> None:
    line = line.strip()
    if not line:
        return
    if line == "/quit":
        hub.stop()
        return
    if line == "/hosts":
        for entry in hub.discovered_addresses():
            _print(f"  {entry.address}{' (connected)' if entry.connected else ''}")
        return
    if line.startswith("/connect "):
        hub.connect_to(line.split(maxsplit=1)[1])
        return

    if hub.role is Role.HOST:
        if line.startswith("@") and " " in line:
            target, text = line[1:].split(" ", 1)
            if not hub.send_to_one(target, text):
                _print(f"[system] no device {target!r}")
        else:
            hub.broadcast_all(line)
    elif not hub.send(line):
        _print("[system] not connected")


def _read_stdin(hub: RoomHub) -> None:
    for line in sys.stdin:
        hub.post(lambda line=line: _handle_line(hub, line))
    hub.post(hub.stop)


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.verbose else "INFO")

    config = load_config(args.config)
    hub = RoomHub(config)

    def on_message(sender: DeviceIdentity | None, text: str) -> None:
        _print(f"[{sender.device if sender else 'host'}] {text}")

    hub.on_join(lambda identity: _print(f"[join] {identity}"))
    hub.on_leave(lambda identity: _print(f"[leave] {identity}"))
    hub.on_message(on_message)
    hub.on_discovered(lambda address: _print(f"[found] {address}"))
    hub.on_lost(lambda address: _print(f"[timeout] {address}"))
    hub.on_connected(lambda address: _print(f"[connected] {address}"))
    hub.on_disconnected(lambda reason: _print(f"[disconnected] {reason}"))

    if args.role == "host":
        if not hub.start_host():
            return 1
    else:
        auto_join = not args.no_auto_join and not args.connect
        hub.start_participant(auto_join=auto_join)
        if args.connect:
            hub.connect_to(args.connect)

    threading.Thread(target=_read_stdin, args=(hub,), daemon=True, name="roomlink-stdin").start()
    try:
        hub.run()
    except KeyboardInterrupt:
        pass
    finally:
        hub.stop()
    return 0
