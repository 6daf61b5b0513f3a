"""Peer-to-peer encrypted text messaging over raw TCP sockets."""

__version__ = "0.1.0"
