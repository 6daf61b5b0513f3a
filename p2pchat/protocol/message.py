import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime

from p2pchat.protocol.errors import ProtocolError

HANDSHAKE = "HANDSHAKE"
MESSAGE = "MESSAGE"


def _b64decode(value, what):
    if not isinstance(value, str):
        raise ProtocolError(f"{what} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"{what} is not valid base64: {e}") from e


def _require_str(obj, key):
    value = obj.get(key)
    if not isinstance(value, str):
        raise ProtocolError(f"Missing or non-string field '{key}'")
    return value


@dataclass(frozen=True)
class Handshake:
    address: str
    public_key: bytes  # DER SubjectPublicKeyInfo
    timestamp: str = field(default_factory=lambda: datetime.now().astimezone().isoformat())

    def to_dict(self):
        return {
            "type": HANDSHAKE,
            "address": self.address,
            "public_key": base64.b64encode(self.public_key).decode(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, obj):
        address = _require_str(obj, "address").strip()
        if not address:
            raise ProtocolError("Handshake carries an empty address")
        return cls(
            address=address,
            public_key=_b64decode(obj.get("public_key"), "public_key"),
            timestamp=_require_str(obj, "timestamp"),
        )


@dataclass(frozen=True)
class Message:
    """
    One chat message. `body` holds the text before encryption and the
    ciphertext bytes once it is wrapped for the wire.
    """
    from_address: str
    to_address: str
    body: bytes

    def to_dict(self):
        return {
            "type": MESSAGE,
            "from": self.from_address,
            "to": self.to_address,
            "body": base64.b64encode(self.body).decode(),
        }

    @classmethod
    def from_dict(cls, obj):
        return cls(
            from_address=_require_str(obj, "from"),
            to_address=_require_str(obj, "to"),
            body=_b64decode(obj.get("body"), "body"),
        )

    def inner_bytes(self):
        """Serialized plaintext form that gets encrypted for the recipient."""
        return json.dumps({
            "from": self.from_address,
            "to": self.to_address,
            "body": self.body.decode("utf-8"),
        }).encode("utf-8")

    @classmethod
    def from_inner_bytes(cls, data):
        try:
            obj = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError(f"Decrypted payload is not JSON: {e}") from e
        if not isinstance(obj, dict):
            raise ProtocolError("Decrypted payload is not an object")
        return cls(
            from_address=_require_str(obj, "from"),
            to_address=_require_str(obj, "to"),
            body=_require_str(obj, "body").encode("utf-8"),
        )


def parse_envelope(obj):
    """Turn a decoded frame into a Handshake or a Message, by its type tag."""
    if not isinstance(obj, dict):
        raise ProtocolError("Envelope is not a JSON object")
    kind = obj.get("type")
    if kind == HANDSHAKE:
        return Handshake.from_dict(obj)
    if kind == MESSAGE:
        return Message.from_dict(obj)
    raise ProtocolError(f"Unknown envelope type: {kind!r}")
