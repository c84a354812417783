"""
Core data models using Pydantic for validation and serialization.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class CoinType(IntEnum):
    """SLIP-44 coin type used in the second segment of the derivation path."""

    BITCOIN = 0
    TESTNET = 1


def default_coin_type(network: NetworkType) -> CoinType:
    if network == NetworkType.MAINNET:
        return CoinType.BITCOIN
    return CoinType.TESTNET


class ScriptType(str, Enum):
    """Output type the wallet receives to and spends from."""

    P2WPKH = "p2wpkh"  # BIP84, native segwit
    P2PKH = "p2pkh"  # BIP44, legacy

    @property
    def purpose(self) -> int:
        """First (hardened) segment of the derivation path."""
        return 44 if self is ScriptType.P2PKH else 84


class PeerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    SYNCING = "syncing"
    IDLE = "idle"


class PeerInfo(BaseModel):
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    state: PeerState = PeerState.DISCONNECTED
    manual: bool = False
    protocol_version: int | None = None
    services: int = 0
    user_agent: str = ""
    start_height: int = 0
    last_seen: datetime | None = None

    @property
    def location_string(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class NetworkParams(BaseModel):
    """Static consensus and P2P parameters for one network."""

    model_config = ConfigDict(frozen=True)

    network: NetworkType
    magic: bytes
    default_port: int
    genesis_hash: str
    pow_limit_bits: int
    bech32_hrp: str
    p2pkh_version: int
    p2sh_version: int
    xprv_version: bytes
    xpub_version: bytes
    dns_seeds: tuple[str, ...] = ()

    @property
    def discovery_available(self) -> bool:
        return bool(self.dns_seeds)


MAINNET_PARAMS = NetworkParams(
    network=NetworkType.MAINNET,
    magic=bytes.fromhex("f9beb4d9"),
    default_port=8333,
    genesis_hash="000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f",
    pow_limit_bits=0x1D00FFFF,
    bech32_hrp="bc",
    p2pkh_version=0x00,
    p2sh_version=0x05,
    xprv_version=bytes.fromhex("0488ade4"),
    xpub_version=bytes.fromhex("0488b21e"),
    dns_seeds=(
        "seed.bitcoin.sipa.be",
        "dnsseed.bluematt.me",
        "seed.bitcoinstats.com",
        "seed.bitcoin.jonasschnelli.ch",
        "seed.btc.petertodd.net",
        "seed.bitcoin.sprovoost.nl",
    ),
)

TESTNET_PARAMS = NetworkParams(
    network=NetworkType.TESTNET,
    magic=bytes.fromhex("0b110907"),
    default_port=18333,
    genesis_hash="000000000933ea01ad0ee984209779baaec3ced90fa3f408719526f8d77f4943",
    pow_limit_bits=0x1D00FFFF,
    bech32_hrp="tb",
    p2pkh_version=0x6F,
    p2sh_version=0xC4,
    xprv_version=bytes.fromhex("04358394"),
    xpub_version=bytes.fromhex("043587cf"),
    dns_seeds=(
        "testnet-seed.bitcoin.jonasschnelli.ch",
        "seed.tbtc.petertodd.net",
        "seed.testnet.bitcoin.sprovoost.nl",
        "testnet-seed.bluematt.me",
    ),
)

SIGNET_PARAMS = NetworkParams(
    network=NetworkType.SIGNET,
    magic=bytes.fromhex("0a03cf40"),
    default_port=38333,
    genesis_hash="00000008819873e925422c1ff0f99f7cc9bbb232af63a077a480a3633bee1ef6",
    pow_limit_bits=0x1E0377AE,
    bech32_hrp="tb",
    p2pkh_version=0x6F,
    p2sh_version=0xC4,
    xprv_version=bytes.fromhex("04358394"),
    xpub_version=bytes.fromhex("043587cf"),
    dns_seeds=("seed.signet.bitcoin.sprovoost.nl",),
)

# Regtest is an isolated network: there is no discovery, peers must be configured
REGTEST_PARAMS = NetworkParams(
    network=NetworkType.REGTEST,
    magic=bytes.fromhex("fabfb5da"),
    default_port=18444,
    genesis_hash="0f9188f13cb7b2c71f2a335e3a4fc328bf5beb436012afca590b1a11466e2206",
    pow_limit_bits=0x207FFFFF,
    bech32_hrp="bcrt",
    p2pkh_version=0x6F,
    p2sh_version=0xC4,
    xprv_version=bytes.fromhex("04358394"),
    xpub_version=bytes.fromhex("043587cf"),
)

_NETWORK_PARAMS: dict[NetworkType, NetworkParams] = {
    NetworkType.MAINNET: MAINNET_PARAMS,
    NetworkType.TESTNET: TESTNET_PARAMS,
    NetworkType.SIGNET: SIGNET_PARAMS,
    NetworkType.REGTEST: REGTEST_PARAMS,
}


def get_network_params(network: NetworkType | str) -> NetworkParams:
    """Get static parameters for a given network."""
    return _NETWORK_PARAMS[NetworkType(network)]
