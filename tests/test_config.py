"""Tests for configuration loading and default identity."""

from __future__ import annotations

import json

from roomlink.config import RoomConfig, load_config
from roomlink.room.identity import default_device_id, default_identity


class TestRoomConfig:
    def test_defaults(self):
        config = RoomConfig()
        assert config.discovery.udp_port == 5000
        assert config.discovery.broadcast_interval == 1.0
        assert config.discovery.stale_after == 3.0
        assert config.discovery.buffer_capacity == 100
        assert config.discovery.schemes == ["ws", "wss"]
        assert config.channel.ws_port == 8765
        assert config.hub.auto_join is True

    def test_camel_and_snake_case(self):
        camel = RoomConfig.model_validate({"discovery": {"udpPort": 6000, "staleAfter": 5}})
        snake = RoomConfig.model_validate({"discovery": {"udp_port": 6000, "stale_after": 5}})
        assert camel.discovery.udp_port == snake.discovery.udp_port == 6000
        assert camel.discovery.stale_after == 5.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("ROOMLINK_CHANNEL__WS_PORT", "9100")
        monkeypatch.setenv("ROOMLINK_HUB__AUTO_JOIN", "false")
        config = RoomConfig()
        assert config.channel.ws_port == 9100
        assert config.hub.auto_join is False

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "room.json"
        path.write_text(json.dumps({
            "channel": {"wsPort": 9200, "path": "/room"},
            "hub": {"deviceId": "kiosk-1", "deviceLabel": "Kiosk"},
        }))
        config = load_config(path)
        assert config.channel.ws_port == 9200
        assert config.channel.path == "/room"
        assert config.hub.device_id == "kiosk-1"
        assert config.discovery.udp_port == 5000

    def test_file_layers_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ROOMLINK_DISCOVERY__UDP_PORT", "7000")
        path = tmp_path / "room.json"
        path.write_text(json.dumps({"channel": {"wsPort": 9300}}))
        config = load_config(path)
        assert config.channel.ws_port == 9300
        assert config.discovery.udp_port == 7000

    def test_load_without_path(self):
        assert load_config().channel.ws_port == 8765


class TestIdentity:
    def test_stable(self):
        assert default_device_id() == default_device_id()

    def test_overrides(self):
        identity = default_identity("fixed", "Kiosk")
        assert identity.id == "fixed"
        assert identity.device == "Kiosk"

    def test_fills_blanks(self):
        identity = default_identity()
        assert identity.id
        assert identity.device
