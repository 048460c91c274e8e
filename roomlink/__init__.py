"""Peer discovery and connection negotiation for multi-party rooms."""

__version__ = "0.1.0"
