#main.py  ==  p2pchat node
           #↳ generates or loads its RSA identity
           #↳ accepts connections
           #↳ makes connections
           #↳ exchanges keys and encrypted messages
           #↳ acts on operator input
'''p2pchat/
├── main.py                     # Entry point to launch the node
├── config.py                   # Defaults and YAML config loading
├── peer/
│   └── peer.py                 # Peer class: accept loop, send/broadcast, CLI
├── crypto/
│   ├── identity.py             # RSA keypair, key persistence, fingerprints
│   └── encrypt.py              # Chunked RSA-OAEP encryption/decryption
├── protocol/
│   ├── message.py              # Handshake and Message wire objects
│   ├── json_handler.py         # Length-prefixed JSON framing
│   ├── handler.py              # Handshake state machine, inbound dispatcher
│   └── errors.py               # Exception taxonomy
├── storage/
│   └── metadata_cache.py       # Peer registry and trust store
└── utils/
    └── helpers.py              # Logging, address parsing, chunking
'''

import argparse
import sys

from p2pchat.peer.peer import Peer
from p2pchat.crypto.identity import generate_identity, load_or_generate_identity
from p2pchat.config import load_config
from p2pchat.protocol.errors import P2PError
from p2pchat.utils.helpers import get_logger, parse_address, set_log_level

logger = get_logger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="p2pchat", description="Encrypted peer-to-peer chat node")
    parser.add_argument("address", help="local bind address, host:port")
    parser.add_argument("--config", help="YAML configuration file")
    return parser.parse_args(argv)


def build_peer(address, config):
    address = address.strip()
    parse_address(address)
    print("[system] Generating keys.")
    if config["key_path"]:
        identity = load_or_generate_identity(config["key_path"], address, config["key_size"])
    else:
        identity = generate_identity(address, config["key_size"])
    print(f"[✓] Identity ready ({identity.fingerprint()})")
    return Peer(config, identity)


def main(argv=None):
    args = parse_args(argv)
    try:
        config = load_config(args.config)
        set_log_level(config["log_level"])
        peer = build_peer(args.address, config)
        peer.start_service()
    except P2PError as e:
        logger.error(f"Startup failed: {e}")
        print(f"[✗] {e}")
        return 1
    try:
        peer.run_cli()
    finally:
        peer.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
