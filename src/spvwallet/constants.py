"""
Bitcoin protocol and wallet policy constants.
"""

from __future__ import annotations

SATOSHIS_PER_BTC = 100_000_000
MAX_MONEY = 21_000_000 * SATOSHIS_PER_BTC

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Wallet fee policy: fixed rate unless the caller supplies one
DEFAULT_FEE_RATE = 2  # sat/vbyte

# Bounded wait for local broadcast acceptance
DEFAULT_SEND_TIMEOUT = 30.0  # seconds

DEFAULT_SHUTDOWN_GRACE_PERIOD = 30.0  # seconds

# Number of unused addresses kept ahead of the last used one, per chain
DEFAULT_LOOKAHEAD = 20

# P2P protocol
PROTOCOL_VERSION = 70016
MIN_PEER_PROTOCOL_VERSION = 70012  # sendheaders support
USER_AGENT = "/spvwallet:0.1.0/"

NODE_NETWORK = 1 << 0
NODE_WITNESS = 1 << 3
NODE_NETWORK_LIMITED = 1 << 10

MAX_HEADERS_PER_MESSAGE = 2000
MAX_BLOCKS_IN_FLIGHT = 16
MAX_INV_PER_MESSAGE = 50_000
MAX_MESSAGE_PAYLOAD = 32 * 1024 * 1024

# Consecutive non-linking header batches tolerated before a peer is dropped
MAX_HEADER_VIOLATIONS = 3
