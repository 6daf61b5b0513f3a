"""
Chunked RSA-OAEP.

OAEP bounds the plaintext of one RSA operation to
``key_size_bytes - 2 * hash_size - 2`` bytes, so longer payloads are split
into blocks that are encrypted independently and concatenated in order.
Every ciphertext block is exactly ``key_size_bytes`` long, which is what lets
the decrypt side find the block boundaries again.

This is meant for short chat lines, not for files.
"""
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from p2pchat.protocol.errors import DecryptionError, NoTrustKeyError, UnusableKeyError
from p2pchat.utils.helpers import chunked

HASHES = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


def _oaep(algorithm):
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=algorithm),
        algorithm=algorithm,
        label=None
    )


def key_size_bytes(key):
    return (key.key_size + 7) // 8


def block_size(key, algorithm):
    """Largest plaintext one OAEP block can carry for this key and hash."""
    return key_size_bytes(key) - 2 * algorithm.digest_size - 2


def encrypt(public_key, algorithm, plaintext: bytes) -> bytes:
    if public_key is None:
        raise NoTrustKeyError("No public key to encrypt with")
    step = block_size(public_key, algorithm)
    if step <= 0:
        raise UnusableKeyError(f"{public_key.key_size}-bit key is too small for {algorithm.name}")
    oaep = _oaep(algorithm)
    return b"".join(public_key.encrypt(block, oaep) for block in chunked(plaintext, step))


def decrypt(private_key, algorithm, ciphertext: bytes) -> bytes:
    window = key_size_bytes(private_key)
    if len(ciphertext) % window:
        raise DecryptionError(
            f"Ciphertext length {len(ciphertext)} is not a multiple of {window}"
        )
    oaep = _oaep(algorithm)
    plaintext = []
    for index, block in enumerate(chunked(ciphertext, window)):
        try:
            plaintext.append(private_key.decrypt(block, oaep))
        except ValueError as e:
            raise DecryptionError(f"Block {index} failed to decrypt") from e
    return b"".join(plaintext)
