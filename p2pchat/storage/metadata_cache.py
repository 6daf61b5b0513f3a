from p2pchat.crypto.identity import fingerprint, public_key_bytes
from p2pchat.utils.helpers import get_logger

logger = get_logger(__name__)


def remove_duplicates(addrs):
    """Drop repeated entries, keeping the first occurrence of each."""
    seen = set()
    result = []
    for addr in addrs:
        if addr not in seen:
            seen.add(addr)
            result.append(addr)
    return result


class PeerRegistry:
    """
    Known remote addresses per local listen address.

    Every method takes `lock` for its whole body; callers must not hold it.
    """

    def __init__(self, lock):
        self.lock = lock
        self.connections = {}  # {local_addr: [remote_addr, ...]}

    def add_peers(self, local, addrs):
        cleaned = [a.strip() for a in addrs]
        cleaned = [a for a in cleaned if a]
        with self.lock:
            current = self.connections.get(local, [])
            self.connections[local] = remove_duplicates(current + cleaned)
            return list(self.connections[local])

    def remove_peer(self, local, addr):
        with self.lock:
            peers = self.connections.get(local)
            if not peers or addr not in peers:
                return False
            idx = peers.index(addr)
            peers[idx] = peers[-1]
            peers.pop()
            return True

    def list_peers(self, local):
        with self.lock:
            peers = remove_duplicates(self.connections.get(local, []))
            self.connections[local] = peers
            return list(peers)

    def __contains__(self, item):
        local, addr = item
        with self.lock:
            return addr in self.connections.get(local, [])


class TrustStore:
    """Remote address -> RSA public key learned from a completed handshake."""

    def __init__(self, lock):
        self.lock = lock
        self.keys = {}

    def put(self, addr, public_key):
        """Store the key and return the one it replaced, if any."""
        with self.lock:
            previous = self.keys.get(addr)
            self.keys[addr] = public_key
        if previous is not None:
            old_der = public_key_bytes(previous)
            new_der = public_key_bytes(public_key)
            if old_der != new_der:
                logger.warning(
                    f"Public key for {addr} changed: {fingerprint(old_der)} -> {fingerprint(new_der)}"
                )
        return previous

    def get(self, addr):
        with self.lock:
            return self.keys.get(addr)

    def __contains__(self, addr):
        with self.lock:
            return addr in self.keys

    def __len__(self):
        with self.lock:
            return len(self.keys)
