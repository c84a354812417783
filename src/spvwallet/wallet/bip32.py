"""
BIP32 HD key derivation.

Keys are immutable; every derivation step returns a new HDKey. A key may hold
only a public key (after neuter()), in which case hardened derivation is
refused.
"""

from __future__ import annotations

import hashlib
import hmac

import base58
from coincurve import PrivateKey, PublicKey

from spvwallet.wallet.address import hash160

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000
MASTER_HMAC_KEY = b"Bitcoin seed"


class DerivationError(Exception):
    pass


class ChildIndexSkipped(DerivationError):
    """The child at this index is invalid (IL >= n or a zero key) and must be skipped."""

    def __init__(self, index: int, path: str = ""):
        self.index = index
        self.path = path
        super().__init__(f"Child index {index} is invalid at {path or 'key'}, skipping")


def parse_path(path: str) -> list[int]:
    """
    Parse "m/84'/1'/0'/0" into a list of raw indices.

    Both ' and h mark a hardened step.
    """
    parts = path.strip().split("/")
    if parts[0] != "m":
        raise DerivationError("Path must start with 'm'")

    indices: list[int] = []
    for part in parts[1:]:
        if not part:
            continue
        hardened = part.endswith("'") or part.endswith("h")
        index_str = part.rstrip("'h")
        if not index_str.isdigit():
            raise DerivationError(f"Invalid path component: {part!r}")
        index = int(index_str)
        if index >= HARDENED_OFFSET:
            raise DerivationError(f"Path index out of range: {part!r}")
        indices.append(index + HARDENED_OFFSET if hardened else index)
    return indices


def format_path(indices: list[int]) -> str:
    parts = ["m"]
    for index in indices:
        if index >= HARDENED_OFFSET:
            parts.append(f"{index - HARDENED_OFFSET}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 derivation.
    """

    def __init__(
        self,
        chain_code: bytes,
        private_key: PrivateKey | None = None,
        public_key: PublicKey | None = None,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_index: int = 0,
    ):
        if private_key is None and public_key is None:
            raise DerivationError("HDKey needs a private or a public key")
        self._private_key = private_key
        self._public_key = public_key if public_key is not None else private_key.public_key  # type: ignore[union-attr]
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_index = child_index

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def private_key(self) -> PrivateKey:
        """Return the coincurve PrivateKey instance."""
        if self._private_key is None:
            raise DerivationError("Public-only key has no private key")
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(MASTER_HMAC_KEY, seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        key_int = int.from_bytes(key_bytes, "big")
        if key_int == 0 or key_int >= SECP256K1_N:
            raise DerivationError("Seed produces an invalid master key")

        return cls(chain_code, private_key=PrivateKey(key_bytes))

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        key = self
        for index in parse_path(path):
            key = key.derive_child(index)
        return key

    def derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        if not 0 <= index <= 0xFFFFFFFF:
            raise DerivationError(f"Child index out of range: {index}")
        hardened = index >= HARDENED_OFFSET

        if hardened:
            if self._private_key is None:
                raise DerivationError("Hardened derivation requires a private key")
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise ChildIndexSkipped(index)

        child_fields = {
            "depth": self.depth + 1,
            "parent_fingerprint": self.fingerprint,
            "child_index": index,
        }

        if self._private_key is not None:
            parent_key_int = int.from_bytes(self._private_key.secret, "big")
            child_key_int = (parent_key_int + offset_int) % SECP256K1_N
            if child_key_int == 0:
                raise ChildIndexSkipped(index)
            child_private_key = PrivateKey(child_key_int.to_bytes(32, "big"))
            return HDKey(child_chain, private_key=child_private_key, **child_fields)

        try:
            # point(IL) + parent public key; the point at infinity is rejected
            child_public_key = self._public_key.add(key_offset)
        except ValueError as e:
            raise ChildIndexSkipped(index) from e
        return HDKey(child_chain, public_key=child_public_key, **child_fields)

    def neuter(self) -> HDKey:
        """Return the public-only version of this key."""
        return HDKey(
            self.chain_code,
            public_key=self._public_key,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_index=self.child_index,
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        return self.private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def _serialize(self, version: bytes, key_data: bytes) -> str:
        payload = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_index.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58.b58encode_check(payload).decode("ascii")

    def to_xprv(self, version: bytes = bytes.fromhex("0488ade4")) -> str:
        return self._serialize(version, b"\x00" + self.get_private_key_bytes())

    def to_xpub(self, version: bytes = bytes.fromhex("0488b21e")) -> str:
        return self._serialize(version, self.get_public_key_bytes())

    @classmethod
    def from_extended(cls, encoded: str) -> HDKey:
        """Parse a base58check xprv/xpub (or tprv/tpub) string."""
        try:
            payload = base58.b58decode_check(encoded)
        except ValueError as e:
            raise DerivationError(f"Invalid extended key: {e}") from e
        if len(payload) != 78:
            raise DerivationError(f"Invalid extended key length: {len(payload)}")

        depth = payload[4]
        parent_fingerprint = payload[5:9]
        child_index = int.from_bytes(payload[9:13], "big")
        chain_code = payload[13:45]
        key_data = payload[45:]

        try:
            if key_data[0] == 0:
                return cls(
                    chain_code,
                    private_key=PrivateKey(key_data[1:]),
                    depth=depth,
                    parent_fingerprint=parent_fingerprint,
                    child_index=child_index,
                )
            return cls(
                chain_code,
                public_key=PublicKey(key_data),
                depth=depth,
                parent_fingerprint=parent_fingerprint,
                child_index=child_index,
            )
        except ValueError as e:
            raise DerivationError(f"Invalid key material in extended key: {e}") from e
