"""Shared fixtures: small RSA identities and running peers on loopback."""

from __future__ import annotations

import socket

import pytest

from p2pchat.config import load_config
from p2pchat.crypto.identity import generate_identity
from p2pchat.peer.peer import Peer


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def free_address() -> str:
    return f"127.0.0.1:{free_port()}"


@pytest.fixture
def unused_address():
    return free_address()


@pytest.fixture
def config():
    cfg = load_config()
    cfg["key_size"] = 1024
    cfg["timeout"] = 5
    return cfg


@pytest.fixture
def make_peer(config):
    """Factory for started peers; every peer is shut down after the test."""
    started = []

    def _make(address=None, start=True):
        identity = generate_identity(address or free_address(), config["key_size"])
        peer = Peer(config, identity)
        if start:
            peer.start_service()
        started.append(peer)
        return peer

    yield _make
    for peer in started:
        peer.shutdown()
