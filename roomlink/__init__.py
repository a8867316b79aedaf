"""roomlink - zero-configuration LAN rooms: discover a host, join, talk."""

__version__ = "0.1.0"
