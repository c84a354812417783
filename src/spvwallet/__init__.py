"""
spvwallet - BIP84/BIP44 HD wallet with a headers-first SPV sync engine.

Derives native segwit addresses from a BIP39 mnemonic, follows the chain
over the Bitcoin P2P protocol and sends payments through connected peers.
"""

__version__ = "0.1.0"
