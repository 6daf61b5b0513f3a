import json
import struct

from p2pchat.protocol.errors import NetworkError, ProtocolError

HEADER = struct.Struct(">I")
DEFAULT_MAX_FRAME_SIZE = 64 * 1024


def send_json(sock, obj):
    """
    Serialize a JSON object and send it as one length-prefixed frame.
    """
    payload = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    try:
        sock.sendall(HEADER.pack(len(payload)) + payload)
    except OSError as e:
        raise NetworkError(f"Write failed: {e}") from e


def _recv_exact(sock, size):
    buffer = b""
    while len(buffer) < size:
        try:
            chunk = sock.recv(size - len(buffer))
        except OSError as e:
            raise NetworkError(f"Read failed: {e}") from e
        if not chunk:
            raise NetworkError("Socket closed while receiving data.")
        buffer += chunk
    return buffer


def recv_json(sock, max_size=DEFAULT_MAX_FRAME_SIZE):
    """
    Receive one length-prefixed JSON frame. Frames over max_size are refused
    before their payload is read.
    """
    (length,) = HEADER.unpack(_recv_exact(sock, HEADER.size))
    if length > max_size:
        raise ProtocolError(f"Frame of {length} bytes exceeds limit of {max_size}")
    payload = _recv_exact(sock, length)
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}") from e
