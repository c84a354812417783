"""
Tests for settings loading and validation.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from spvwallet.config import WalletSettings, get_settings
from spvwallet.models import CoinType, NetworkType, ScriptType


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in ("NETWORK", "PEER_HOST", "PEER_PORT", "COIN_TYPE", "FEE_RATE", "SCRIPT_TYPE"):
        monkeypatch.delenv(f"SPVWALLET_{key}", raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults():
    settings = get_settings()
    assert settings.network == NetworkType.TESTNET
    assert settings.coin_type == CoinType.TESTNET
    assert settings.manual_peer is None
    assert settings.send_timeout > 0
    assert settings.script_type == ScriptType.P2WPKH


def test_mainnet_coin_type():
    assert get_settings(network=NetworkType.MAINNET).coin_type == CoinType.BITCOIN


def test_explicit_coin_type_kept():
    settings = get_settings(network=NetworkType.MAINNET, coin_type=CoinType.TESTNET)
    assert settings.coin_type == CoinType.TESTNET


def test_script_type_from_environment(monkeypatch):
    monkeypatch.setenv("SPVWALLET_SCRIPT_TYPE", "p2pkh")
    assert WalletSettings().script_type == ScriptType.P2PKH
    with pytest.raises(ValidationError):
        get_settings(script_type="p2tr")


def test_regtest_requires_peer():
    with pytest.raises(ValidationError, match="peer_host"):
        get_settings(network=NetworkType.REGTEST)


def test_manual_peer_default_port():
    settings = get_settings(network=NetworkType.REGTEST, peer_host="10.0.0.5")
    assert settings.manual_peer == ("10.0.0.5", 18444)
    settings = get_settings(network=NetworkType.REGTEST, peer_host="10.0.0.5", peer_port=20000)
    assert settings.manual_peer == ("10.0.0.5", 20000)


def test_environment_prefix(monkeypatch):
    monkeypatch.setenv("SPVWALLET_NETWORK", "regtest")
    monkeypatch.setenv("SPVWALLET_PEER_HOST", "node")
    monkeypatch.setenv("SPVWALLET_FEE_RATE", "7")
    settings = WalletSettings()
    assert settings.network == NetworkType.REGTEST
    assert settings.peer_host == "node"
    assert settings.fee_rate == 7


def test_wallet_file_is_per_network(tmp_path):
    settings = get_settings(network=NetworkType.SIGNET, data_dir=tmp_path, wallet_id="alice")
    assert settings.wallet_file == Path(tmp_path) / "signet" / "alice.json"


@pytest.mark.parametrize(
    "overrides",
    [
        {"fee_rate": 0},
        {"peer_port": 70000},
        {"wallet_id": "../escape"},
        {"send_timeout": 0},
    ],
)
def test_rejects_bad_values(overrides):
    with pytest.raises(ValidationError):
        get_settings(**overrides)
