from enum import Enum

from p2pchat.crypto.identity import load_public_key
from p2pchat.protocol.errors import DecryptionError, P2PError, ProtocolError
from p2pchat.protocol.json_handler import send_json, recv_json
from p2pchat.protocol.message import Handshake, parse_envelope
from p2pchat.utils.helpers import get_logger

logger = get_logger(__name__)


class HandshakeState(Enum):
    IDLE = "idle"
    DIALED = "dialed"
    ACCEPTED = "accepted"
    KEY_SENT = "key_sent"
    KEY_RECEIVED = "key_received"
    ESTABLISHED = "established"
    ABORTED = "aborted"


class HandshakeHandler:
    """
    One round trip of address + public key exchange over an open socket.

    `peer` must expose `identity`, `max_frame_size` and
    `register(address, public_key)`.
    """

    def __init__(self, peer):
        self.peer = peer
        self.state = HandshakeState.IDLE

    def local_handshake(self):
        identity = self.peer.identity
        return Handshake(identity.listen_address, identity.get_public_key_bytes())

    def initiate(self, sock):
        """Initiator side: send our key, read theirs, register it."""
        self.state = HandshakeState.DIALED
        try:
            send_json(sock, self.local_handshake().to_dict())
            self.state = HandshakeState.KEY_SENT

            reply = parse_envelope(recv_json(sock, self.peer.max_frame_size))
            if not isinstance(reply, Handshake):
                raise ProtocolError("Expected a handshake reply")
            public_key = load_public_key(reply.public_key)
            self.state = HandshakeState.KEY_RECEIVED
            logger.debug(f"Received public key from {reply.address}")

            self.peer.register(reply.address, public_key)
            self.state = HandshakeState.ESTABLISHED
            return reply, public_key
        except P2PError:
            self.state = HandshakeState.ABORTED
            raise

    def respond(self, sock, request):
        """Responder side: register the requester, then send our key back."""
        self.state = HandshakeState.ACCEPTED
        try:
            public_key = load_public_key(request.public_key)
            self.state = HandshakeState.KEY_RECEIVED
            self.peer.register(request.address, public_key)

            send_json(sock, self.local_handshake().to_dict())
            self.state = HandshakeState.ESTABLISHED
        except P2PError:
            self.state = HandshakeState.ABORTED
            raise

    def send_reply(self, sock):
        send_json(sock, self.local_handshake().to_dict())


def handle_incoming_request(sock, addr, peer):
    try:
        envelope = parse_envelope(recv_json(sock, peer.max_frame_size))
        if isinstance(envelope, Handshake):
            logger.debug(f"Handshake request from {envelope.address} ({addr})")
            HandshakeHandler(peer).respond(sock, envelope)
            return {"status": "handshake", "address": envelope.address}

        logger.debug(f"Message from {envelope.from_address} ({addr})")
        try:
            message = peer.open_message(envelope)
        except DecryptionError:
            # the sender may hold a stale key for us; our reply carries the current one
            HandshakeHandler(peer).send_reply(sock)
            raise
        peer.show_message(message)
        HandshakeHandler(peer).send_reply(sock)
        return {"status": "message", "address": message.from_address}
    except P2PError as e:
        logger.error(f"Error handling request from {addr}: {e}")
        return {"status": "error", "reason": str(e)}
