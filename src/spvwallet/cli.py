"""
SPV Wallet CLI - Generate mnemonics, derive addresses, sync, and send payments.
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import typer
from loguru import logger
from pydantic import ValidationError

from spvwallet.config import WalletSettings, get_settings
from spvwallet.events import BlockReceived, CoinsReceived, CoinsSent, SyncComplete, WalletEvent
from spvwallet.models import CoinType, NetworkType, ScriptType, default_coin_type
from spvwallet.wallet.commands import ErrorResponse, format_btc
from spvwallet.wallet.keychain import CHANGE_CHAIN, RECEIVE_CHAIN, account_path, derive_addresses
from spvwallet.wallet.mnemonic import (
    InvalidMnemonicError,
    MnemonicError,
    derive_seed,
    generate_mnemonic,
)

app = typer.Typer(
    name="spv-wallet",
    help="SPV Bitcoin wallet",
    add_completion=False,
)

WORDS_TO_STRENGTH = {12: 128, 15: 160, 18: 192, 21: 224, 24: 256}


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)
    return mnemonic


def _build_settings(**overrides: object) -> WalletSettings:
    try:
        return get_settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        for error in e.errors():
            logger.error(f"Invalid configuration: {error['msg']}")
        raise typer.Exit(1) from e


@app.command()
def generate(
    word_count: int = typer.Option(12, "--words", "-w", help="Number of words (12-24)"),
    save: bool = typer.Option(False, "--save", "-s", help="Save to file"),
    output_file: Path | None = typer.Option(
        None, "--output", "-o", help="Output file path for the mnemonic"
    ),
) -> None:
    """Generate a new BIP39 mnemonic phrase."""
    setup_logging()

    strength = WORDS_TO_STRENGTH.get(word_count)
    if strength is None:
        logger.error(f"--words must be one of {sorted(WORDS_TO_STRENGTH)}")
        raise typer.Exit(1)

    try:
        mnemonic = generate_mnemonic(strength)
    except MnemonicError as e:
        logger.error(f"Failed to generate mnemonic: {e}")
        raise typer.Exit(1) from e

    if save:
        if output_file is None:
            output_file = Path.home() / ".spvwallet" / "default.mnemonic"
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(mnemonic)
        os.chmod(output_file, 0o600)  # Restrict permissions

        typer.echo(f"\nMnemonic saved to: {output_file}")
        typer.echo("KEEP THIS FILE SECURE - IT CONTROLS YOUR FUNDS!")
        return

    typer.echo("\n" + "=" * 80)
    typer.echo("GENERATED MNEMONIC - WRITE THIS DOWN AND KEEP IT SAFE!")
    typer.echo("=" * 80)
    typer.echo(f"\n{mnemonic}\n")
    typer.echo("=" * 80)
    typer.echo("Anyone with this phrase can spend your coins.")
    typer.echo("=" * 80 + "\n")


@app.command()
def addresses(
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    passphrase: str = typer.Option("", "--passphrase", envvar="MNEMONIC_PASSPHRASE"),
    network: NetworkType = typer.Option(NetworkType.TESTNET, "--network", "-n"),
    coin_type: int | None = typer.Option(None, "--coin-type", help="Override SLIP-44 coin type"),
    script_type: ScriptType = typer.Option(
        ScriptType.P2WPKH, "--script-type", help="p2wpkh (BIP84) or p2pkh (BIP44)"
    ),
    count: int = typer.Option(10, "--count", "-c", min=1, max=1000),
    change: bool = typer.Option(False, "--change", help="Show change addresses"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Derive addresses offline, without connecting to the network."""
    setup_logging(log_level)
    phrase = _load_mnemonic(mnemonic, mnemonic_file)

    try:
        seed = derive_seed(phrase, passphrase)
    except InvalidMnemonicError as e:
        logger.error(f"Invalid mnemonic: {e}")
        raise typer.Exit(1) from e

    coin = CoinType(coin_type) if coin_type is not None else default_coin_type(network)
    chain = CHANGE_CHAIN if change else RECEIVE_CHAIN
    prefix = f"{account_path(coin, script_type=script_type)}/{chain}"

    for derived in derive_addresses(seed, prefix, count, network, script_type=script_type):
        typer.echo(f"{derived.path:<24} {derived.address}")


def _log_event(event: WalletEvent) -> None:
    if isinstance(event, BlockReceived) and event.height % 1000 == 0:
        logger.info(f"Block {event.height} ({event.blocks_remaining} remaining)")
    elif isinstance(event, SyncComplete):
        logger.info(f"Synced to height {event.height}")
    elif isinstance(event, CoinsReceived):
        logger.info(f"Received {format_btc(event.amount)} BTC in {event.txid}")
    elif isinstance(event, CoinsSent):
        logger.info(f"Sent {format_btc(event.amount)} BTC in {event.txid}")


async def _run_synced(
    settings: WalletSettings,
    mnemonic: str,
    passphrase: str,
    sync_timeout: float,
    action: str,
    send_to: tuple[str, str] | None = None,
) -> int:
    from spvwallet.wallet.service import WalletService

    try:
        service = await WalletService.create(settings, mnemonic, passphrase)
    except InvalidMnemonicError as e:
        logger.error(f"Invalid mnemonic: {e}")
        return 1

    service.events.subscribe(_log_event)
    await service.start()
    try:
        if not await service.sync.wait_until_synced(sync_timeout):
            logger.error(f"Not synced after {sync_timeout}s")
            return 1

        commands = service.commands
        if action == "balance":
            balance = commands.get_balance()
            print(f"\nConfirmed:     {format_btc(balance.confirmed)} BTC")
            print(f"Unconfirmed:   {format_btc(balance.unconfirmed)} BTC")
            print(f"Pending spent: {format_btc(balance.pending_spent)} BTC")
            print(f"Total:         {format_btc(balance.total)} BTC")
            print(f"\nReceive address: {commands.get_receive_address()}")
        elif action == "history":
            entries = commands.get_transactions()
            if not entries:
                print("\nNo transactions.")
            for entry in entries:
                when = entry.timestamp.strftime("%Y-%m-%d %H:%M") if entry.timestamp else "pending"
                height = entry.height if entry.height is not None else "-"
                print(f"{when:<17} {height:>8}  {entry.net_value / 1e8:+.8f}  {entry.txid}")
        elif action == "send" and send_to is not None:
            result = await commands.send(*send_to)
            if isinstance(result, ErrorResponse):
                print(f"\nSend failed [{result.code.value}]: {result.message}")
                return 1
            print(f"\nSent {result.amount_sent} BTC (fee {result.fee} BTC)")
            print(f"Transaction ID: {result.transaction_id}")
        return 0
    finally:
        await service.stop()


def _network_options(
    network: NetworkType | None,
    script_type: ScriptType | None,
    peer_host: str | None,
    peer_port: int | None,
    data_dir: Path | None,
    log_level: str,
) -> WalletSettings:
    setup_logging(log_level)
    return _build_settings(
        network=network,
        script_type=script_type,
        peer_host=peer_host,
        peer_port=peer_port,
        data_dir=data_dir,
        log_level=log_level,
    )


@app.command()
def balance(
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(None, "--mnemonic-file", "-f"),
    passphrase: str = typer.Option("", "--passphrase", envvar="MNEMONIC_PASSPHRASE"),
    network: NetworkType | None = typer.Option(None, "--network", "-n"),
    script_type: ScriptType | None = typer.Option(None, "--script-type"),
    peer_host: str | None = typer.Option(None, "--peer-host", help="Connect to this peer only"),
    peer_port: int | None = typer.Option(None, "--peer-port"),
    data_dir: Path | None = typer.Option(None, "--data-dir", "-d"),
    sync_timeout: float = typer.Option(600.0, "--sync-timeout"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Sync and show the wallet balance."""
    settings = _network_options(
        network, script_type, peer_host, peer_port, data_dir, log_level
    )
    phrase = _load_mnemonic(mnemonic, mnemonic_file)
    raise typer.Exit(asyncio.run(_run_synced(settings, phrase, passphrase, sync_timeout, "balance")))


@app.command()
def history(
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(None, "--mnemonic-file", "-f"),
    passphrase: str = typer.Option("", "--passphrase", envvar="MNEMONIC_PASSPHRASE"),
    network: NetworkType | None = typer.Option(None, "--network", "-n"),
    script_type: ScriptType | None = typer.Option(None, "--script-type"),
    peer_host: str | None = typer.Option(None, "--peer-host"),
    peer_port: int | None = typer.Option(None, "--peer-port"),
    data_dir: Path | None = typer.Option(None, "--data-dir", "-d"),
    sync_timeout: float = typer.Option(600.0, "--sync-timeout"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Sync and list wallet transactions, newest first."""
    settings = _network_options(
        network, script_type, peer_host, peer_port, data_dir, log_level
    )
    phrase = _load_mnemonic(mnemonic, mnemonic_file)
    raise typer.Exit(asyncio.run(_run_synced(settings, phrase, passphrase, sync_timeout, "history")))


@app.command()
def send(
    address: str = typer.Argument(..., help="Destination address"),
    amount: str = typer.Argument(..., help="Amount in BTC, e.g. 0.001"),
    mnemonic: str = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"),
    mnemonic_file: Path | None = typer.Option(None, "--mnemonic-file", "-f"),
    passphrase: str = typer.Option("", "--passphrase", envvar="MNEMONIC_PASSPHRASE"),
    network: NetworkType | None = typer.Option(None, "--network", "-n"),
    script_type: ScriptType | None = typer.Option(None, "--script-type"),
    peer_host: str | None = typer.Option(None, "--peer-host"),
    peer_port: int | None = typer.Option(None, "--peer-port"),
    data_dir: Path | None = typer.Option(None, "--data-dir", "-d"),
    sync_timeout: float = typer.Option(600.0, "--sync-timeout"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Sync, then send AMOUNT BTC to ADDRESS."""
    settings = _network_options(
        network, script_type, peer_host, peer_port, data_dir, log_level
    )
    phrase = _load_mnemonic(mnemonic, mnemonic_file)
    raise typer.Exit(
        asyncio.run(
            _run_synced(settings, phrase, passphrase, sync_timeout, "send", (address, amount))
        )
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
