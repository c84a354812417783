"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from spvwallet.constants import (
    DEFAULT_FEE_RATE,
    DEFAULT_LOOKAHEAD,
    DEFAULT_SEND_TIMEOUT,
    DEFAULT_SHUTDOWN_GRACE_PERIOD,
    STANDARD_DUST_LIMIT,
)
from spvwallet.models import (
    CoinType,
    NetworkParams,
    NetworkType,
    ScriptType,
    default_coin_type,
    get_network_params,
)


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SPVWALLET_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: NetworkType = NetworkType.TESTNET
    # Explicit coin type for the derivation path; derived from network when unset
    coin_type: CoinType | None = None
    # p2wpkh derives under m/84', p2pkh under m/44'
    script_type: ScriptType = ScriptType.P2WPKH

    # Manual peer, required on regtest where discovery is unavailable
    peer_host: str | None = None
    peer_port: int | None = Field(default=None, ge=1, le=65535)
    max_peers: int = Field(default=4, ge=1, le=32)

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".spvwallet")
    wallet_id: str = Field(default="default", pattern=r"^[A-Za-z0-9_.-]+$")

    # Blocks below this height are only header-validated, not scanned
    scan_from_height: int = Field(default=0, ge=0)
    lookahead: int = Field(default=DEFAULT_LOOKAHEAD, ge=1, le=1000)

    fee_rate: int = Field(default=DEFAULT_FEE_RATE, ge=1, description="Fee rate in sat/vbyte")
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0)
    include_unconfirmed: bool = False

    send_timeout: float = Field(default=DEFAULT_SEND_TIMEOUT, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    handshake_timeout: float = Field(default=30.0, gt=0)
    shutdown_grace_period: float = Field(default=DEFAULT_SHUTDOWN_GRACE_PERIOD, ge=0)
    reconnect_backoff_initial: float = Field(default=1.0, gt=0)
    reconnect_backoff_max: float = Field(default=60.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=1)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_peer_configuration(self) -> WalletSettings:
        """Default coin type from network; isolated networks need a manual peer."""
        if self.coin_type is None:
            object.__setattr__(self, "coin_type", default_coin_type(self.network))
        if self.network == NetworkType.REGTEST and not self.peer_host:
            raise ValueError("peer_host is required on regtest (no peer discovery)")
        return self

    @property
    def params(self) -> NetworkParams:
        return get_network_params(self.network)

    @property
    def manual_peer(self) -> tuple[str, int] | None:
        if not self.peer_host:
            return None
        return self.peer_host, self.peer_port or self.params.default_port

    @property
    def wallet_file(self) -> Path:
        return self.data_dir / self.network.value / f"{self.wallet_id}.json"


def get_settings(**overrides: object) -> WalletSettings:
    return WalletSettings(**overrides)  # type: ignore[arg-type]
