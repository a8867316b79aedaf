"""LAN room communication between devices.

A host advertises its WebSocket address over UDP broadcast; participants on
the same subnet pick it up, connect, declare a stable device identity and
exchange messages through the host.
"""
