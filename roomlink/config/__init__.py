"""Configuration module for roomlink."""

from roomlink.config.schema import (
    ChannelConfig,
    DiscoveryConfig,
    HubConfig,
    RoomConfig,
    load_config,
)

__all__ = ["ChannelConfig", "DiscoveryConfig", "HubConfig", "RoomConfig", "load_config"]
