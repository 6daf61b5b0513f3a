"""
End-to-end tests with real peers listening on loopback.

Tests cover:
- Handshake and mutual trust
- Broadcast and direct messages
- Self-connect guard and eviction on dial failure
- Hostile inbound traffic
- Operator commands
"""

from __future__ import annotations

import socket
import struct

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from p2pchat.crypto.encrypt import encrypt
from p2pchat.crypto.identity import public_key_bytes
from p2pchat.protocol.errors import NetworkError, NoTrustKeyError, SelfConnectError
from p2pchat.protocol.json_handler import recv_json, send_json
from p2pchat.protocol.message import Handshake, Message, parse_envelope


def same_key(a, b):
    return a.public_numbers() == b.public_numbers()


class TestHandshake:
    def test_connect_establishes_mutual_trust(self, make_peer):
        a = make_peer()
        b = make_peer()

        assert a.connect([b.address]) == [b.address]

        assert a.list_peers() == [b.address]
        assert same_key(a.trust_store.get(b.address), b.identity.public_key)
        assert same_key(b.trust_store.get(a.address), a.identity.public_key)
        assert b.list_peers() == [a.address]

    def test_repeated_connect_does_not_duplicate(self, make_peer):
        a = make_peer()
        b = make_peer()
        a.connect([b.address])
        a.connect([b.address, b.address])
        assert a.list_peers() == [b.address]

    def test_connect_many(self, make_peer):
        a, b, c = make_peer(), make_peer(), make_peer()
        a.connect([b.address, c.address])
        assert a.list_peers() == [b.address, c.address]

    def test_self_connect_never_dials(self, make_peer, monkeypatch, capsys):
        a = make_peer()
        calls = []
        monkeypatch.setattr(socket, "create_connection", lambda *args, **kw: calls.append(args))

        assert a.connect([a.address]) == []
        assert calls == []
        assert a.list_peers() == []
        assert "yourself" in capsys.readouterr().out

    def test_self_link_raises(self, make_peer):
        a = make_peer()
        with pytest.raises(SelfConnectError):
            a.link(a.address)

    def test_unreachable_peer_leaves_registry_unchanged(self, make_peer, unused_address, capsys):
        a = make_peer()
        assert a.connect([unused_address]) == []
        assert a.list_peers() == []
        assert "Could not connect" in capsys.readouterr().out

    def test_closed_port_one(self, make_peer):
        a = make_peer()
        assert a.connect(["127.0.0.1:1"]) == []
        assert a.list_peers() == []

    def test_malformed_target(self, make_peer):
        a = make_peer()
        with pytest.raises(NetworkError):
            a.link("no-port-here")


class TestMessaging:
    def test_broadcast_is_displayed_by_receiver(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()
        a.connect([b.address])

        assert a.broadcast("hello") == [b.address]
        assert f"[{a.address}] hello" in capsys.readouterr().out

    def test_broadcast_long_message_spans_blocks(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()
        a.connect([b.address])
        text = "x" * 500

        a.broadcast(text)
        assert f"[{a.address}] {text}" in capsys.readouterr().out

    def test_broadcast_without_peers(self, make_peer, capsys):
        a = make_peer()
        assert a.broadcast("hello") == []
        assert "not connected" in capsys.readouterr().out

    def test_broadcast_continues_past_dead_peer(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()
        c = make_peer()
        a.connect([b.address, c.address])
        b.shutdown()

        assert a.broadcast("still here") == [c.address]
        assert a.list_peers() == [c.address]
        assert f"[{a.address}] still here" in capsys.readouterr().out

    def test_receiver_learns_sender_address(self, make_peer):
        a = make_peer()
        b = make_peer()
        a.connect([b.address])
        b.registry.remove_peer(b.address, a.address)

        a.broadcast("hi")
        assert a.address in b.list_peers()

    def test_reply_to_broadcast(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()
        a.connect([b.address])

        assert b.broadcast("hi back") == [a.address]
        assert f"[{b.address}] hi back" in capsys.readouterr().out

    def test_direct_message_handshakes_first(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()

        a.direct_message(b.address, "just you")

        out = capsys.readouterr().out
        assert "Handshaking" in out
        assert f"[{a.address}] just you" in out
        assert b.address in a.trust_store

    def test_direct_message_to_dead_peer_evicts(self, make_peer):
        a = make_peer()
        b = make_peer()
        a.connect([b.address])
        b.shutdown()

        with pytest.raises(NetworkError):
            a.direct_message(b.address, "anyone?")
        assert a.list_peers() == []

    def test_eviction_then_fresh_connect(self, make_peer):
        a = make_peer()
        b = make_peer()
        a.connect([b.address])
        b.shutdown()
        with pytest.raises(NetworkError):
            a.send(Message(a.address, b.address, b"gone"))
        assert a.list_peers() == []

        b2 = make_peer(address=b.address)
        assert a.connect([b.address]) == [b.address]
        assert a.list_peers() == [b.address]
        assert same_key(a.trust_store.get(b.address), b2.identity.public_key)

    def test_send_without_key_fails(self, make_peer):
        a = make_peer()
        b = make_peer()
        with pytest.raises(NoTrustKeyError):
            a.send(Message(a.address, b.address, b"no key"))

    def test_reply_without_stored_key_is_not_compared(self, make_peer, monkeypatch, capsys):
        a = make_peer()
        b = make_peer()
        # stand-in codec that finds a usable key even though none is stored
        monkeypatch.setattr(
            "p2pchat.peer.peer.encrypt",
            lambda key, algorithm, data: encrypt(b.identity.public_key, algorithm, data),
        )

        a.send(Message(a.address, b.address, b"keyless"))

        out = capsys.readouterr().out
        assert f"[{a.address}] keyless" in out
        assert "has a new key" not in out
        assert same_key(a.trust_store.get(b.address), b.identity.public_key)

    def test_rotated_key_is_picked_up_from_reply(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()
        a.connect([b.address])
        b.shutdown()
        b2 = make_peer(address=b.address)

        # encrypted for the old key: b2 cannot read it but answers with its new key
        a.send(Message(a.address, b.address, b"stale"))
        out = capsys.readouterr().out
        assert "has a new key" in out
        assert f"[{a.address}] stale" not in out
        assert same_key(a.trust_store.get(b.address), b2.identity.public_key)

        a.send(Message(a.address, b.address, b"fresh"))
        assert f"[{a.address}] fresh" in capsys.readouterr().out


class TestHostileInput:
    def test_garbage_does_not_stop_accept_loop(self, make_peer):
        b = make_peer()
        a = make_peer()
        with socket.create_connection((b.host, b.port), timeout=5) as s:
            s.sendall(struct.pack(">I", 4) + b"junk")
            assert s.recv(16) == b""

        assert a.connect([b.address]) == [b.address]

    def test_oversized_frame_is_dropped(self, make_peer):
        b = make_peer()
        with socket.create_connection((b.host, b.port), timeout=5) as s:
            s.sendall(struct.pack(">I", 10 * 1024 * 1024))
            assert s.recv(16) == b""

    def test_undecryptable_message_is_answered_but_not_trusted(self, make_peer, capsys):
        b = make_peer()
        with socket.create_connection((b.host, b.port), timeout=5) as s:
            send_json(s, Message("127.0.0.1:1234", b.address, b"\x00" * 128).to_dict())
            reply = parse_envelope(recv_json(s))

        assert isinstance(reply, Handshake)
        assert reply.address == b.address
        assert b.list_peers() == []
        assert "127.0.0.1:1234" not in b.trust_store
        assert "[127.0.0.1:1234]" not in capsys.readouterr().out

    def test_undersized_key_handshake_is_dropped(self, make_peer, capsys):
        b = make_peer()
        c = make_peer()
        tiny = rsa.RSAPublicNumbers(65537, (1 << 519) + 1).public_key()
        with socket.create_connection((b.host, b.port), timeout=5) as s:
            send_json(s, Handshake(c.address, public_key_bytes(tiny)).to_dict())
            assert s.recv(16) == b""

        assert c.address not in b.trust_store
        assert b.list_peers() == []
        assert b.handle_command("hello") is True
        assert "not connected" in capsys.readouterr().out

    def test_handshake_claiming_own_address_is_dropped(self, make_peer, capsys):
        b = make_peer()
        c = make_peer()
        with socket.create_connection((b.host, b.port), timeout=5) as s:
            send_json(s, Handshake(b.address, c.identity.get_public_key_bytes()).to_dict())
            assert s.recv(16) == b""

        assert b.address not in b.trust_store
        assert b.list_peers() == []
        assert b.broadcast("anyone?") == []
        out = capsys.readouterr().out
        assert "not connected" in out
        assert "Could not deliver" not in out

    def test_message_claiming_own_address_is_not_registered(self, make_peer, capsys):
        b = make_peer()
        inner = Message(b.address, b.address, b"spoofed").inner_bytes()
        body = encrypt(b.identity.public_key, b.hash_algorithm, inner)
        with socket.create_connection((b.host, b.port), timeout=5) as s:
            send_json(s, Message(b.address, b.address, body).to_dict())
            reply = parse_envelope(recv_json(s))

        assert reply.address == b.address
        assert b.list_peers() == []
        assert b.address not in b.trust_store


class TestCommands:
    def test_empty_line_is_noop(self, make_peer, capsys):
        a = make_peer()
        capsys.readouterr()
        assert a.handle_command("   ") is True
        assert capsys.readouterr().out == ""

    def test_exit(self, make_peer):
        assert make_peer().handle_command("/exit") is False

    def test_all_without_peers(self, make_peer, capsys):
        a = make_peer()
        a.handle_command("/all")
        assert "No peers found." in capsys.readouterr().out

    def test_connect_then_all(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()
        a.handle_command(f"/connect {b.address}")
        a.handle_command("/all")
        out = capsys.readouterr().out
        assert f"| {b.address}" in out
        assert b.identity.fingerprint() in out

    def test_me_sends_rest_of_line(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()
        a.handle_command(f"/me {b.address} hello there  friend")
        assert f"[{a.address}] hello there  friend" in capsys.readouterr().out

    def test_me_to_self(self, make_peer, capsys):
        a = make_peer()
        a.handle_command(f"/me {a.address} hi")
        assert "yourself" in capsys.readouterr().out

    def test_me_to_unreachable(self, make_peer, unused_address, capsys):
        a = make_peer()
        assert a.handle_command(f"/me {unused_address} hi") is True
        assert "Could not deliver" in capsys.readouterr().out

    def test_usage_messages(self, make_peer, capsys):
        a = make_peer()
        a.handle_command("/connect")
        a.handle_command("/me 127.0.0.1:9")
        out = capsys.readouterr().out
        assert "Usage: /connect" in out
        assert "Usage: /me" in out

    def test_plain_line_broadcasts(self, make_peer, capsys):
        a = make_peer()
        b = make_peer()
        a.handle_command(f"/connect {b.address}")
        a.handle_command("good morning")
        assert f"[{a.address}] good morning" in capsys.readouterr().out

    def test_run_cli_stops_on_eof(self, make_peer, monkeypatch):
        a = make_peer()
        lines = iter(["/all"])

        def fake_input(prompt):
            try:
                return next(lines)
            except StopIteration:
                raise EOFError

        monkeypatch.setattr("builtins.input", fake_input)
        a.run_cli()
