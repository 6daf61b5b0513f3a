class P2PError(Exception):
    """Base class for every error raised by the node."""


class ConfigError(P2PError):
    """Bad bind address or configuration file. Fatal at startup."""


class KeyGenerationError(P2PError):
    """The local keypair could not be generated or loaded."""


class NetworkError(P2PError):
    """Dial, accept, read or write failure."""


class SelfConnectError(NetworkError):
    """The target address is the node's own listen address."""


class ProtocolError(P2PError):
    """Malformed handshake or message payload."""


class NoTrustKeyError(P2PError):
    """No public key is known for the recipient."""


class UnusableKeyError(NoTrustKeyError):
    """The recipient's key is too small to carry an OAEP block."""


class DecryptionError(P2PError):
    """Ciphertext is malformed or was not encrypted for this key."""
