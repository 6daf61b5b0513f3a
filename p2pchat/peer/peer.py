from p2pchat.crypto.encrypt import HASHES, encrypt, decrypt
from p2pchat.crypto.identity import fingerprint, load_public_key, public_key_bytes
from p2pchat.protocol.errors import ConfigError, NetworkError, P2PError, ProtocolError, SelfConnectError
from p2pchat.protocol.handler import HandshakeHandler, handle_incoming_request
from p2pchat.protocol.json_handler import send_json, recv_json
from p2pchat.protocol.message import Handshake, Message, parse_envelope
from p2pchat.storage.metadata_cache import PeerRegistry, TrustStore
from p2pchat.utils.helpers import get_logger, parse_address
import socket
import threading

logger = get_logger(__name__)

HELP = (
    "Commands:\n"
    "  /all                      List known peers\n"
    "  /connect <addr> [addr...] Exchange keys with peers\n"
    "  /me <addr> <text>         Send a message to one peer\n"
    "  /exit                     Quit\n"
    "  <text>                    Send a message to every peer"
)


class Peer:
    """
    A chat node: listens for inbound connections and dials peers on demand.

    Registry and trust store are guarded by `identity.lock`. Socket I/O is
    never done while holding it.
    """

    def __init__(self, config, identity):
        self.identity = identity
        self.address = identity.listen_address
        self.host, self.port = parse_address(self.address)
        self.registry = PeerRegistry(identity.lock)
        self.trust_store = TrustStore(identity.lock)
        self.hash_algorithm = HASHES[config["hash_algorithm"]]()
        self.max_frame_size = config["max_frame_size"]
        self.timeout = config["timeout"]
        self.server_sock = None
        self._stopped = threading.Event()
        logger.debug(f"Peer initialized on {self.address} ({identity.fingerprint()})")

    # -- service ---------------------------------------------------------

    def start_service(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen()
        except OSError as e:
            sock.close()
            raise NetworkError(f"Cannot listen on {self.address}: {e}") from e
        self.server_sock = sock
        threading.Thread(target=self.listen_for_messages, daemon=True).start()
        print(f"[✓] Listening on {self.address}")

    def listen_for_messages(self):
        logger.debug(f"Listening for incoming messages on {self.address}")
        while not self._stopped.is_set():
            try:
                conn, addr = self.server_sock.accept()
            except OSError as e:
                if self._stopped.is_set():
                    break
                logger.error(f"Accept failed on {self.address}: {e}")
                continue
            logger.debug(f"Accepted connection from {addr}")
            threading.Thread(target=self.handle_req, args=(conn, addr), daemon=True).start()
        logger.debug(f"Stopped listening on {self.address}")

    def handle_req(self, conn, addr):
        try:
            conn.settimeout(self.timeout)
            result = handle_incoming_request(conn, addr, self)
            if result["status"] == "handshake":
                print(f"[✓] Exchanged keys with {result['address']}")
            elif result["status"] == "error":
                print(f"[!] Dropped connection from {addr[0]}:{addr[1]}: {result['reason']}")
        finally:
            conn.close()

    def shutdown(self):
        self._stopped.set()
        if self.server_sock is None:
            return
        try:
            # wakes up the thread blocked in accept()
            self.server_sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.server_sock.close()
        logger.debug(f"Peer on {self.address} shut down")

    # -- shared state ----------------------------------------------------

    def register(self, address, public_key):
        if address == self.address:
            raise ProtocolError(f"Peer claims this node's own address {address}")
        self.trust_store.put(address, public_key)
        self.registry.add_peers(self.address, [address])

    def list_peers(self):
        return self.registry.list_peers(self.address)

    # -- outbound --------------------------------------------------------

    def dial(self, addr):
        if addr == self.address:
            raise SelfConnectError(f"{addr} is this node's own address")
        try:
            host, port = parse_address(addr)
        except ConfigError as e:
            raise NetworkError(str(e)) from e
        try:
            return socket.create_connection((host, port), timeout=self.timeout)
        except OSError as e:
            raise NetworkError(f"Could not connect to {addr}: {e}") from e

    def _dial_or_evict(self, addr):
        try:
            return self.dial(addr)
        except SelfConnectError:
            raise
        except NetworkError:
            if self.registry.remove_peer(self.address, addr):
                logger.info(f"Evicted unreachable peer {addr}")
            raise

    def link(self, addr):
        """Handshake with one address. Returns the peer's handshake reply."""
        addr = addr.strip()
        sock = self._dial_or_evict(addr)
        try:
            reply, public_key = HandshakeHandler(self).initiate(sock)
        finally:
            sock.close()
        if reply.address != addr:
            logger.debug(f"{addr} identifies itself as {reply.address}")
            self.trust_store.put(addr, public_key)
        return reply

    def connect(self, addrs):
        """Handshake with every address, reporting each outcome to the operator."""
        linked = []
        for addr in addrs:
            addr = addr.strip()
            if not addr:
                continue
            try:
                reply = self.link(addr)
            except SelfConnectError:
                print("[!] You cannot connect to yourself.")
                continue
            except P2PError as e:
                logger.error(f"Handshake with {addr} failed: {e}")
                print(f"[✗] Could not connect to {addr}: {e}")
                continue
            print(f"[✓] Connected to {reply.address} ({fingerprint(reply.public_key)})")
            linked.append(reply.address)
        return linked

    def send(self, message):
        """Encrypt and deliver one message over a fresh connection."""
        sock = self._dial_or_evict(message.to_address)
        try:
            public_key = self.trust_store.get(message.to_address)
            if public_key is None:
                logger.warning(f"No public key for {message.to_address}")
            ciphertext = encrypt(public_key, self.hash_algorithm, message.inner_bytes())
            envelope = Message(message.from_address, message.to_address, ciphertext)
            send_json(sock, envelope.to_dict())
            current = self._read_reply(sock, message.to_address)
        finally:
            sock.close()
        if current is None or public_key is None:
            return
        if public_key_bytes(current) != public_key_bytes(public_key):
            print(f"[!] {message.to_address} has a new key; the last message may be unreadable.")

    def _read_reply(self, sock, addr):
        # the receiver answers every connection with its current handshake
        try:
            reply = parse_envelope(recv_json(sock, self.max_frame_size))
            if not isinstance(reply, Handshake):
                logger.warning(f"Unexpected reply from {addr}")
                return None
            public_key = load_public_key(reply.public_key)
        except P2PError as e:
            logger.warning(f"No handshake reply from {addr}: {e}")
            return None
        self.trust_store.put(addr, public_key)
        if reply.address not in (addr, self.address):
            self.trust_store.put(reply.address, public_key)
        return public_key

    def broadcast(self, text):
        peers = self.list_peers()
        if not peers:
            print("[!] You're not connected to any peer.")
            return []
        body = text.encode("utf-8")
        delivered = []
        for addr in peers:
            try:
                self.send(Message(self.address, addr, body))
            except P2PError as e:
                logger.error(f"Error while sending message to {addr}: {e}")
                print(f"[✗] Could not deliver to {addr}: {e}")
                continue
            delivered.append(addr)
        return delivered

    def direct_message(self, addr, text):
        addr = addr.strip()
        if addr not in self.trust_store:
            print(f"[!] No key for {addr}. Handshaking...")
            self.link(addr)
        self.send(Message(self.address, addr, text.encode("utf-8")))

    # -- inbound ---------------------------------------------------------

    def open_message(self, envelope):
        """Decrypt a received envelope and remember its sender."""
        if envelope.to_address != self.address:
            logger.warning(f"Message addressed to {envelope.to_address} arrived at {self.address}")
        plaintext = decrypt(self.identity.private_key, self.hash_algorithm, envelope.body)
        inner = Message.from_inner_bytes(plaintext)
        if envelope.from_address == self.address:
            logger.warning(f"Message claims to come from this node's own address {self.address}")
        else:
            self.registry.add_peers(self.address, [envelope.from_address])
        return Message(envelope.from_address, envelope.to_address, inner.body)

    def show_message(self, message):
        print(f"[{message.from_address}] {message.body.decode('utf-8', errors='replace')}")

    # -- operator --------------------------------------------------------

    def print_peers(self):
        peers = self.list_peers()
        if not peers:
            print("No peers found.")
            return
        for addr in peers:
            public_key = self.trust_store.get(addr)
            fp = fingerprint(public_key_bytes(public_key)) if public_key is not None else "no key"
            print(f"| {addr}  [{fp}]")

    def handle_command(self, line):
        """Run one operator command. Returns False when the node should stop."""
        line = line.strip()
        if not line:
            return True
        parts = line.split()
        cmd = parts[0]
        if cmd == "/exit":
            logger.debug("Exiting CLI")
            return False
        elif cmd == "/help":
            print(HELP)
        elif cmd == "/all":
            self.print_peers()
        elif cmd == "/connect":
            if len(parts) < 2:
                print("Usage: /connect <addr> [addr...]")
            else:
                self.connect(parts[1:])
        elif cmd == "/me":
            if len(parts) < 3:
                print("Usage: /me <addr> <text>")
            else:
                text = line.split(None, 2)[2]
                try:
                    self.direct_message(parts[1], text)
                except SelfConnectError:
                    print("[!] You cannot message yourself.")
                except P2PError as e:
                    logger.error(f"Direct message to {parts[1]} failed: {e}")
                    print(f"[✗] Could not deliver to {parts[1]}: {e}")
        else:
            self.broadcast(line)
        return True

    def run_cli(self):
        while True:
            try:
                line = input(">>> ")
            except (EOFError, KeyboardInterrupt):
                logger.debug("CLI interrupted by user")
                print("\nInterrupted. Exiting")
                break
            if not self.handle_command(line):
                print("Exiting")
                break
