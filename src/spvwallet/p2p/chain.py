"""
Validated header chain.

Starts at a trusted base (the wallet's processed tip or the genesis block)
and only grows by headers that link to the current tip and carry valid
proof of work. Forks are not followed.
"""

from __future__ import annotations

from loguru import logger

from spvwallet.p2p.messages import BlockHeader


class ChainError(Exception):
    pass


class NonLinkingHeaderError(ChainError):
    def __init__(self, block_hash: str, prev_block: str, tip_hash: str):
        self.block_hash = block_hash
        self.prev_block = prev_block
        self.tip_hash = tip_hash
        super().__init__(f"Header {block_hash} builds on {prev_block}, not on tip {tip_hash}")


class InvalidProofOfWorkError(ChainError):
    def __init__(self, block_hash: str, bits: int):
        self.block_hash = block_hash
        self.bits = bits
        super().__init__(f"Header {block_hash} does not satisfy its target (bits {bits:#010x})")


class HeaderChain:
    def __init__(
        self,
        base_height: int,
        base_hash: str,
        pow_limit_bits: int,
        check_pow: bool = True,
    ):
        self.base_height = base_height
        self.pow_limit_bits = pow_limit_bits
        self.check_pow = check_pow
        self._hashes: list[str] = [base_hash]
        self._timestamps: list[int | None] = [None]
        self._heights: dict[str, int] = {base_hash: base_height}

    @property
    def tip_height(self) -> int:
        return self.base_height + len(self._hashes) - 1

    @property
    def tip_hash(self) -> str:
        return self._hashes[-1]

    def __contains__(self, block_hash: str) -> bool:
        return block_hash in self._heights

    def height_of(self, block_hash: str) -> int | None:
        return self._heights.get(block_hash)

    def hash_at(self, height: int) -> str | None:
        offset = height - self.base_height
        if 0 <= offset < len(self._hashes):
            return self._hashes[offset]
        return None

    def timestamp_at(self, height: int) -> int | None:
        offset = height - self.base_height
        if 0 <= offset < len(self._timestamps):
            return self._timestamps[offset]
        return None

    def add_headers(self, headers: list[BlockHeader]) -> int:
        """
        Append headers that extend the tip. Already known headers are skipped.

        Headers before a failing one stay accepted.

        Returns:
            Number of new headers added

        Raises:
            NonLinkingHeaderError: header does not build on the current tip
            InvalidProofOfWorkError: header hash above its target or target above the limit
        """
        added = 0
        for header in headers:
            block_hash = header.hash
            if block_hash in self._heights:
                continue
            if header.prev_block != self.tip_hash:
                raise NonLinkingHeaderError(block_hash, header.prev_block, self.tip_hash)
            if self.check_pow and not header.check_proof_of_work(self.pow_limit_bits):
                raise InvalidProofOfWorkError(block_hash, header.bits)

            self._hashes.append(block_hash)
            self._timestamps.append(header.timestamp)
            self._heights[block_hash] = self.tip_height
            added += 1

        if added:
            logger.debug(f"Header chain extended by {added} to height {self.tip_height}")
        return added

    def locator(self) -> list[str]:
        """Block locator: the last ten hashes, then exponentially sparser back to the base."""
        hashes: list[str] = []
        offset = len(self._hashes) - 1
        step = 1
        while offset > 0:
            hashes.append(self._hashes[offset])
            if len(hashes) >= 10:
                step *= 2
            offset -= step
        hashes.append(self._hashes[0])
        return hashes
