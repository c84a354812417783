"""
HD keychain: watched receive/change addresses with a lookahead window.

Derivation path: m/{purpose}'/{coin_type}'/{account}'/{chain}/{index}
- purpose: 84 for native segwit (BIP84), 44 for legacy P2PKH (BIP44)
- chain: 0 (external/receive), 1 (internal/change)
- index: address index

Only the account-level public key is cached. Private keys are derived from
the seed on demand for a single signing operation and not kept.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from coincurve import PrivateKey
from loguru import logger

from spvwallet.constants import DEFAULT_LOOKAHEAD
from spvwallet.models import CoinType, NetworkParams, NetworkType, ScriptType, get_network_params
from spvwallet.wallet.address import (
    pubkey_to_p2pkh_address,
    pubkey_to_p2pkh_script,
    pubkey_to_p2wpkh_address,
    pubkey_to_p2wpkh_script,
)
from spvwallet.wallet.bip32 import (
    HARDENED_OFFSET,
    ChildIndexSkipped,
    DerivationError,
    HDKey,
    parse_path,
)

RECEIVE_CHAIN = 0
CHANGE_CHAIN = 1
CHAINS = (RECEIVE_CHAIN, CHANGE_CHAIN)

SkipCallback = Callable[[ChildIndexSkipped], None]


def account_path(
    coin_type: CoinType | int, account: int = 0, script_type: ScriptType = ScriptType.P2WPKH
) -> str:
    return f"m/{script_type.purpose}'/{int(coin_type)}'/{account}'"


def script_type_for_path(path: str) -> ScriptType:
    """Legacy for BIP44 paths, native segwit otherwise."""
    indices = parse_path(path)
    if indices and indices[0] == HARDENED_OFFSET + ScriptType.P2PKH.purpose:
        return ScriptType.P2PKH
    return ScriptType.P2WPKH


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    path: str
    chain: int
    index: int
    scriptpubkey: bytes
    pubkey: bytes


def master_key(seed: bytes) -> HDKey:
    return HDKey.from_seed(seed)


def derive_child(parent: HDKey, index: int) -> HDKey:
    return parent.derive_child(index)


def _encode(
    pubkey: bytes, params: NetworkParams, script_type: ScriptType
) -> tuple[str, bytes]:
    if script_type is ScriptType.P2PKH:
        return pubkey_to_p2pkh_address(pubkey, params), pubkey_to_p2pkh_script(pubkey)
    return pubkey_to_p2wpkh_address(pubkey, params), pubkey_to_p2wpkh_script(pubkey)


def _report_skip(skipped: ChildIndexSkipped, on_skip: SkipCallback | None) -> None:
    if on_skip is not None:
        on_skip(skipped)
    else:
        logger.warning(str(skipped))


def _enumerate_addresses(
    parent: HDKey,
    parent_path: str,
    chain: int,
    start: int,
    count: int,
    params: NetworkParams,
    script_type: ScriptType,
    on_skip: SkipCallback | None = None,
) -> tuple[list[DerivedAddress], int]:
    """Derive `count` addresses from `start`, stepping over invalid indices.

    Returns the addresses and the next raw index to try.
    """
    results: list[DerivedAddress] = []
    index = start
    while len(results) < count:
        if index >= HARDENED_OFFSET:
            raise DerivationError(f"Non-hardened index space exhausted under {parent_path}")
        path = f"{parent_path}/{index}"
        try:
            child = derive_child(parent, index)
        except ChildIndexSkipped as e:
            _report_skip(ChildIndexSkipped(e.index, path), on_skip)
            index += 1
            continue

        pubkey = child.get_public_key_bytes()
        address, scriptpubkey = _encode(pubkey, params, script_type)
        results.append(
            DerivedAddress(
                address=address,
                path=path,
                chain=chain,
                index=index,
                scriptpubkey=scriptpubkey,
                pubkey=pubkey,
            )
        )
        index += 1
    return results, index


def derive_addresses(
    seed: bytes,
    path_prefix: str,
    count: int,
    network: NetworkType | str,
    on_skip: SkipCallback | None = None,
    script_type: ScriptType | None = None,
) -> list[DerivedAddress]:
    """
    Derive the first `count` addresses under `path_prefix`.

    The prefix may contain hardened steps; addresses are enumerated at
    non-hardened indices from 0. Deriving more addresses never changes the
    ones already returned for a smaller count. Without an explicit
    `script_type`, m/44' prefixes give P2PKH and anything else P2WPKH.
    """
    if count < 0:
        raise ValueError("count must be non-negative")

    indices = parse_path(path_prefix)
    parent = master_key(seed)
    for index in indices:
        parent = derive_child(parent, index)

    chain = indices[-1] if indices and indices[-1] < HARDENED_OFFSET else 0
    addresses, _ = _enumerate_addresses(
        parent,
        path_prefix.rstrip("/"),
        chain,
        0,
        count,
        get_network_params(network),
        script_type or script_type_for_path(path_prefix),
        on_skip,
    )
    return addresses


class KeyChain:
    """
    Deterministic address source for one wallet account.

    Keeps `lookahead` unused addresses per chain beyond the last issued or
    used one, so payments to not-yet-issued addresses are still detected.
    """

    def __init__(
        self,
        seed: bytes,
        params: NetworkParams,
        coin_type: CoinType | int,
        account: int = 0,
        lookahead: int = DEFAULT_LOOKAHEAD,
        on_skip: SkipCallback | None = None,
        script_type: ScriptType = ScriptType.P2WPKH,
    ):
        self._seed = seed
        self.params = params
        self.coin_type = CoinType(coin_type)
        self.account = account
        self.lookahead = lookahead
        self._on_skip = on_skip
        self.script_type = ScriptType(script_type)

        self.account_path = account_path(self.coin_type, account, self.script_type)
        self._account_key = master_key(seed).derive(self.account_path).neuter()
        self._chain_keys = {chain: self._account_key.derive_child(chain) for chain in CHAINS}

        self._addresses: dict[int, list[DerivedAddress]] = {chain: [] for chain in CHAINS}
        self._next_index: dict[int, int] = {chain: 0 for chain in CHAINS}
        # List positions, -1 when nothing issued/used yet
        self._issued: dict[int, int] = {chain: -1 for chain in CHAINS}
        self._used: dict[int, int] = {chain: -1 for chain in CHAINS}

        self._by_script: dict[bytes, tuple[DerivedAddress, int]] = {}
        self._by_address: dict[str, DerivedAddress] = {}

        for chain in CHAINS:
            self._fill_window(chain)

        logger.info(
            f"Keychain ready at {self.account_path} ({self.script_type.value}) "
            f"with lookahead {lookahead} "
            f"({len(self._by_script)} watched scripts)"
        )

    @property
    def account_xpub(self) -> str:
        return self._account_key.to_xpub(self.params.xpub_version)

    def _fill_window(self, chain: int) -> int:
        boundary = max(self._issued[chain], self._used[chain])
        missing = boundary + 1 + self.lookahead - len(self._addresses[chain])
        if missing <= 0:
            return 0

        new, next_index = _enumerate_addresses(
            self._chain_keys[chain],
            f"{self.account_path}/{chain}",
            chain,
            self._next_index[chain],
            missing,
            self.params,
            self.script_type,
            self._on_skip,
        )
        self._next_index[chain] = next_index
        for derived in new:
            position = len(self._addresses[chain])
            self._addresses[chain].append(derived)
            self._by_script[derived.scriptpubkey] = (derived, position)
            self._by_address[derived.address] = derived
        logger.debug(f"Extended chain {chain} window by {len(new)} addresses")
        return len(new)

    def watched_scripts(self) -> set[bytes]:
        return set(self._by_script)

    def addresses(self, chain: int = RECEIVE_CHAIN) -> list[DerivedAddress]:
        return list(self._addresses[chain])

    def lookup_script(self, scriptpubkey: bytes) -> DerivedAddress | None:
        entry = self._by_script.get(scriptpubkey)
        return entry[0] if entry else None

    def lookup_address(self, address: str) -> DerivedAddress | None:
        return self._by_address.get(address)

    def is_mine(self, scriptpubkey: bytes) -> bool:
        return scriptpubkey in self._by_script

    def mark_used(self, scriptpubkey: bytes) -> int:
        """Record that a watched script received funds; returns how many addresses were added."""
        entry = self._by_script.get(scriptpubkey)
        if entry is None:
            return 0
        derived, position = entry
        if position <= self._used[derived.chain]:
            return 0
        self._used[derived.chain] = position
        return self._fill_window(derived.chain)

    def _issue_next(self, chain: int) -> DerivedAddress:
        position = max(self._issued[chain], self._used[chain]) + 1
        self._issued[chain] = position
        self._fill_window(chain)
        return self._addresses[chain][position]

    def receive_address(self) -> DerivedAddress:
        """Current receive address: the last issued one until it receives funds."""
        issued = self._issued[RECEIVE_CHAIN]
        if issued > self._used[RECEIVE_CHAIN]:
            return self._addresses[RECEIVE_CHAIN][issued]
        return self._issue_next(RECEIVE_CHAIN)

    def new_receive_address(self) -> DerivedAddress:
        return self._issue_next(RECEIVE_CHAIN)

    def next_change_address(self) -> DerivedAddress:
        """Change addresses are never handed out twice."""
        return self._issue_next(CHANGE_CHAIN)

    @property
    def address_indices(self) -> dict[int, int]:
        """Highest issued-or-used raw index per chain, for persistence."""
        indices: dict[int, int] = {}
        for chain in CHAINS:
            position = max(self._issued[chain], self._used[chain])
            if position >= 0:
                indices[chain] = self._addresses[chain][position].index
        return indices

    def restore_indices(self, address_indices: dict[int, int]) -> None:
        """Mark everything up to the persisted indices as used so it is not reissued."""
        for chain, raw_index in address_indices.items():
            if chain not in CHAINS:
                continue
            while self._addresses[chain][-1].index < raw_index:
                self._used[chain] = len(self._addresses[chain]) - 1
                self._fill_window(chain)
            for position, derived in enumerate(self._addresses[chain]):
                if derived.index >= raw_index:
                    self._used[chain] = max(self._used[chain], position)
                    self._issued[chain] = max(self._issued[chain], position)
                    break
            self._fill_window(chain)

    def private_key_for(self, path: str) -> PrivateKey:
        """Derive the private key for one of our paths. The caller must not retain it."""
        if not path.startswith(self.account_path + "/"):
            raise DerivationError(f"Path {path} is outside account {self.account_path}")
        return master_key(self._seed).derive(path).private_key
