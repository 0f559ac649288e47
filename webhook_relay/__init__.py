"""Relay of remote change notifications to live WebSocket clients."""

__version__ = "0.1.0"
