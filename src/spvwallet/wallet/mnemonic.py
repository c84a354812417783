"""
BIP39 mnemonic generation, validation and seed derivation.
"""

from __future__ import annotations

import asyncio
import secrets
import unicodedata
from hashlib import pbkdf2_hmac

from loguru import logger
from mnemonic import Mnemonic

DEFAULT_STRENGTH = 128  # bits of entropy -> 12 words
VALID_STRENGTHS = (128, 160, 192, 224, 256)
VALID_WORD_COUNTS = (12, 15, 18, 21, 24)

SEED_SALT_PREFIX = "mnemonic"
PBKDF2_ROUNDS = 2048
SEED_LENGTH = 64

_english = Mnemonic("english")


class MnemonicError(Exception):
    pass


class EntropySourceError(MnemonicError):
    """The secure random source is unavailable; no key material can be trusted."""


class InvalidMnemonicError(MnemonicError):
    pass


def normalize_words(phrase: str) -> list[str]:
    return unicodedata.normalize("NFKD", phrase).lower().split()


def generate_mnemonic(strength: int = DEFAULT_STRENGTH) -> str:
    """
    Generate a BIP39 mnemonic from secure entropy.

    Args:
        strength: Entropy size in bits (128 gives 12 words)

    Returns:
        Space separated mnemonic phrase
    """
    if strength not in VALID_STRENGTHS:
        raise ValueError(f"strength must be one of {VALID_STRENGTHS}")

    try:
        entropy = secrets.token_bytes(strength // 8)
    except (NotImplementedError, OSError) as e:
        raise EntropySourceError(f"Secure random source unavailable: {e}") from e

    return _english.to_mnemonic(entropy)


def validate_mnemonic(phrase: str) -> None:
    """
    Check word count, wordlist membership and the BIP39 checksum.

    Raises:
        InvalidMnemonicError: describing the first problem found. Words are
            reported by position only so the phrase never ends up in logs.
    """
    words = normalize_words(phrase)

    if len(words) not in VALID_WORD_COUNTS:
        raise InvalidMnemonicError(
            f"Invalid word count {len(words)}, expected one of {VALID_WORD_COUNTS}"
        )

    wordlist = set(_english.wordlist)
    for position, word in enumerate(words, start=1):
        if word not in wordlist:
            raise InvalidMnemonicError(f"Word #{position} is not in the BIP39 wordlist")

    if not _english.check(" ".join(words)):
        raise InvalidMnemonicError("Mnemonic checksum mismatch")


def is_valid_mnemonic(phrase: str) -> bool:
    try:
        validate_mnemonic(phrase)
    except InvalidMnemonicError:
        return False
    return True


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert a BIP39 mnemonic to its 64-byte seed (no validation)."""
    mnemonic_bytes = unicodedata.normalize("NFKD", " ".join(normalize_words(mnemonic))).encode(
        "utf-8"
    )
    salt = unicodedata.normalize("NFKD", SEED_SALT_PREFIX + passphrase).encode("utf-8")

    return pbkdf2_hmac("sha512", mnemonic_bytes, salt, PBKDF2_ROUNDS, dklen=SEED_LENGTH)


def derive_seed(phrase: str, passphrase: str = "") -> bytes:
    """Validate the mnemonic, then run the (intentionally slow) seed KDF."""
    validate_mnemonic(phrase)
    seed = mnemonic_to_seed(phrase, passphrase)
    logger.debug(f"Derived seed ({len(seed)} bytes)")
    return seed


async def derive_seed_async(phrase: str, passphrase: str = "") -> bytes:
    """Run seed derivation in a worker thread, off the event loop serving peers."""
    return await asyncio.to_thread(derive_seed, phrase, passphrase)
