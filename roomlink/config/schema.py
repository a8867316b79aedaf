"""Configuration schema using Pydantic."""

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DiscoveryConfig(Base):
    """UDP broadcast discovery configuration."""

    udp_port: int = 5000                # Port for discovery datagrams
    broadcast_interval: float = 1.0     # Seconds between host broadcasts
    stale_after: float = 3.0            # Seconds before a silent host is forgotten
    poll_interval: float = 0.01         # Receive-thread poll period (bounds stop latency)
    buffer_capacity: int = 100          # Inbound datagrams kept before dropping the oldest
    subnet_mask: str = "255.255.255.0"  # Mask used to derive the broadcast address
    schemes: list[str] = Field(default_factory=lambda: ["ws", "wss"])  # Accepted address schemes


class ChannelConfig(Base):
    """WebSocket room channel configuration."""

    host: str = "0.0.0.0"       # Interface the host binds
    ws_port: int = 8765         # Port the host listens on and advertises
    path: str = "/"             # Only accepted request path
    open_timeout: float = 10.0  # Seconds a participant waits for the connection to open


class HubConfig(Base):
    """Role orchestration and local identity."""

    auto_join: bool = True          # Participant connects to the first discovered host
    tick_period: float = 1.0 / 30   # Seconds between ticks in RoomHub.run()
    device_id: str = ""             # Stable device ID (derived from the machine if empty)
    device_label: str = ""          # Human-readable label (platform name if empty)


class RoomConfig(BaseSettings):
    """Root configuration for roomlink."""

    model_config = SettingsConfigDict(env_prefix="ROOMLINK_", env_nested_delimiter="__")

    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    hub: HubConfig = Field(default_factory=HubConfig)


def load_config(path: str | Path | None = None) -> RoomConfig:
    """Load config from a JSON file (if given) layered over env and defaults."""
    if path is None:
        return RoomConfig()
    data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    return RoomConfig(**data)
