import os
import hashlib
import threading
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from p2pchat.protocol.errors import KeyGenerationError, ProtocolError
from p2pchat.utils.helpers import get_logger

logger = get_logger(__name__)

PUBLIC_EXPONENT = 65537
MIN_PEER_KEY_SIZE = 1024


class Identity:
    """
    The node's keypair and listen address, fixed for the process lifetime.

    `lock` is the single mutex guarding every piece of shared state owned by
    this node (peer registry and trust store).
    """

    def __init__(self, private_key, listen_address):
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.listen_address = listen_address
        self.lock = threading.Lock()

    def get_public_key_bytes(self):
        return public_key_bytes(self.public_key)

    def fingerprint(self):
        return fingerprint(self.get_public_key_bytes())


def generate_private_key(modulus_bits):
    try:
        return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=modulus_bits)
    except (ValueError, TypeError) as e:
        raise KeyGenerationError(f"Cannot generate {modulus_bits}-bit key: {e}") from e


def generate_identity(listen_address, modulus_bits=2048):
    private_key = generate_private_key(modulus_bits)
    identity = Identity(private_key, listen_address)
    logger.debug(f"Generated {modulus_bits}-bit key for {listen_address} ({identity.fingerprint()})")
    return identity


def load_or_generate_identity(key_path, listen_address, modulus_bits=2048):
    """Load a PEM private key from key_path, or generate one and store it there."""
    if os.path.exists(key_path):
        try:
            with open(key_path, "rb") as f:
                private_key = serialization.load_pem_private_key(f.read(), password=None)
        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyGenerationError(f"Cannot load key from {key_path}: {e}") from e
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise KeyGenerationError(f"Key in {key_path} is not an RSA key")
        logger.debug(f"Loaded private key from {key_path}")
        return Identity(private_key, listen_address)

    identity = generate_identity(listen_address, modulus_bits)
    try:
        with open(key_path, "wb") as f:
            f.write(identity.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption()
            ))
    except OSError as e:
        raise KeyGenerationError(f"Cannot write key to {key_path}: {e}") from e
    logger.debug(f"Stored new private key at {key_path}")
    return identity


def load_public_key(der_bytes):
    """Parse DER SubjectPublicKeyInfo bytes received from a peer."""
    try:
        public_key = serialization.load_der_public_key(der_bytes)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ProtocolError(f"Malformed public key: {e}") from e
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ProtocolError("Peer public key is not an RSA key")
    if public_key.key_size < MIN_PEER_KEY_SIZE:
        raise ProtocolError(
            f"Peer public key is {public_key.key_size} bits, below {MIN_PEER_KEY_SIZE}"
        )
    return public_key


def public_key_bytes(public_key):
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


def fingerprint(der_bytes):
    return hashlib.sha256(der_bytes).hexdigest()[:16]
