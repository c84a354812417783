"""
Tests for the offline CLI commands.
"""

import stat

import pytest
from typer.testing import CliRunner

from spvwallet.cli import app
from spvwallet.wallet.mnemonic import validate_mnemonic

runner = CliRunner()


@pytest.fixture(autouse=True)
def no_mnemonic_env(monkeypatch):
    monkeypatch.delenv("MNEMONIC", raising=False)
    monkeypatch.delenv("MNEMONIC_PASSPHRASE", raising=False)


def test_generate_prints_mnemonic():
    result = runner.invoke(app, ["generate", "--words", "24"])
    assert result.exit_code == 0
    (line,) = [ln for ln in result.stdout.splitlines() if len(ln.split()) == 24]
    validate_mnemonic(line)


def test_generate_rejects_word_count():
    result = runner.invoke(app, ["generate", "--words", "13"])
    assert result.exit_code == 1


def test_generate_save(tmp_path):
    target = tmp_path / "keys" / "wallet.mnemonic"
    result = runner.invoke(app, ["generate", "--save", "--output", str(target)])
    assert result.exit_code == 0
    assert len(target.read_text().split()) == 12
    assert stat.S_IMODE(target.stat().st_mode) == 0o600


def test_addresses_mainnet(test_mnemonic):
    result = runner.invoke(
        app, ["addresses", "--mnemonic", test_mnemonic, "--network", "mainnet", "--count", "2"]
    )
    assert result.exit_code == 0
    lines = result.stdout.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].split() == ["m/84'/0'/0'/0/0", "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"]
    assert lines[1].startswith("m/84'/0'/0'/0/1")


def test_addresses_from_file_and_env(tmp_path, test_mnemonic, monkeypatch):
    path = tmp_path / "words"
    path.write_text(test_mnemonic + "\n")
    from_file = runner.invoke(app, ["addresses", "-f", str(path), "--change", "-c", "1"])

    monkeypatch.setenv("MNEMONIC", test_mnemonic)
    from_env = runner.invoke(app, ["addresses", "--change", "-c", "1"])

    assert from_file.exit_code == from_env.exit_code == 0
    assert from_file.stdout == from_env.stdout
    assert from_file.stdout.startswith("m/84'/1'/0'/1/0")
    assert "tb1q" in from_file.stdout


def test_addresses_coin_type_override(test_mnemonic):
    result = runner.invoke(
        app, ["addresses", "--mnemonic", test_mnemonic, "--coin-type", "0", "-c", "1"]
    )
    assert result.exit_code == 0
    assert result.stdout.startswith("m/84'/0'/0'/0/0")
    assert "tb1q" in result.stdout


def test_addresses_legacy(test_mnemonic):
    result = runner.invoke(
        app,
        [
            "addresses",
            "--mnemonic",
            test_mnemonic,
            "-n",
            "mainnet",
            "--script-type",
            "p2pkh",
            "-c",
            "1",
        ],
    )
    assert result.exit_code == 0
    assert result.stdout.split() == ["m/44'/0'/0'/0/0", "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"]


def test_addresses_without_mnemonic():
    result = runner.invoke(app, ["addresses"])
    assert result.exit_code == 1


def test_addresses_invalid_mnemonic():
    result = runner.invoke(app, ["addresses", "--mnemonic", "abandon " * 11 + "abandon"])
    assert result.exit_code == 1


def test_balance_regtest_needs_peer(tmp_path, test_mnemonic):
    result = runner.invoke(
        app,
        ["balance", "--mnemonic", test_mnemonic, "--network", "regtest", "-d", str(tmp_path)],
    )
    assert result.exit_code == 1
