"""
satwallet CLI - watch-only wallet with an external signer.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import typer
from loguru import logger
from pydantic import ValidationError

from satwallet.backends.events import EventFeed, parse_event
from satwallet.backends.neutrino import NeutrinoRelay
from satwallet.config import WalletSettings, get_settings
from satwallet.errors import BroadcastTimeout, WalletError
from satwallet.service import WalletService
from satwallet.signers.http import HttpSigner

app = typer.Typer(
    name="satwallet",
    help="Non-custodial Bitcoin wallet backed by a light client and a hardware signer",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_settings(
    network: str | None,
    data_dir: Path | None,
    xpub: str | None,
    light_client_url: str | None = None,
) -> WalletSettings:
    overrides: dict[str, object] = {}
    if network is not None:
        overrides["network"] = network
    if data_dir is not None:
        overrides["data_dir"] = data_dir
    if xpub is not None:
        overrides["xpub"] = xpub
    if light_client_url is not None:
        overrides["light_client_url"] = light_client_url
    try:
        return get_settings(**overrides)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1) from e


def _open_service(
    settings: WalletSettings, with_relay: bool = False, with_signer: bool = False
) -> WalletService:
    relay = (
        NeutrinoRelay(neutrino_url=settings.light_client_url, network=settings.network)
        if with_relay
        else None
    )
    signer = (
        HttpSigner(url=settings.signer_url, timeout=settings.signer_timeout_sec)
        if with_signer
        else None
    )
    return WalletService(settings, relay=relay, signer=signer)


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine, mapping wallet errors to exit codes."""
    try:
        asyncio.run(coro)
    except WalletError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e
    except ValueError as e:
        logger.error(f"Invalid input: {e}")
        raise typer.Exit(2) from e


def _format_sats(value: int) -> str:
    return f"{value:>15,} sats ({value / 1e8:.8f} BTC)"


NetworkOption = typer.Option(None, "--network", "-n", help="Bitcoin network")
DataDirOption = typer.Option(None, "--data-dir", "-d", help="Wallet data directory")
XpubOption = typer.Option(None, "--xpub", help="Account xpub (BIP84)")
LogLevelOption = typer.Option(None, "--log-level", "-l", help="Overrides SATWALLET_LOG_LEVEL")


@app.command()
def balance(
    network: str | None = NetworkOption,
    data_dir: Path | None = DataDirOption,
    xpub: str | None = XpubOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show confirmed, immature, pending and locked balances."""
    settings = _load_settings(network, data_dir, xpub)
    setup_logging(log_level or settings.log_level)
    _run(_show_balance(settings))


async def _show_balance(settings: WalletSettings) -> None:
    wallet = _open_service(settings)
    try:
        bal = wallet.balance()
        print(f"\nConfirmed: {_format_sats(bal.confirmed)}")
        print(f"Immature:  {_format_sats(bal.immature)}")
        print(f"Pending:   {_format_sats(bal.pending)}")
        print(f"Locked:    {_format_sats(bal.locked)}")
        print(f"Total:     {_format_sats(bal.total)}")
    finally:
        await wallet.close()


@app.command()
def history(
    network: str | None = NetworkOption,
    data_dir: Path | None = DataDirOption,
    xpub: str | None = XpubOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """List wallet transactions, unconfirmed first."""
    settings = _load_settings(network, data_dir, xpub)
    setup_logging(log_level or settings.log_level)
    _run(_show_history(settings))


async def _show_history(settings: WalletSettings) -> None:
    wallet = _open_service(settings)
    try:
        records = wallet.history()
        if not records:
            print("\nNo transactions.")
            return
        for record in records:
            height = "pending" if record.height is None else str(record.height)
            print(f"{record.txid}  {height:>8}  {record.net:>+15,} sats")
    finally:
        await wallet.close()


@app.command()
def receive(
    network: str | None = NetworkOption,
    data_dir: Path | None = DataDirOption,
    xpub: str | None = XpubOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show the next unused receive address."""
    settings = _load_settings(network, data_dir, xpub)
    setup_logging(log_level or settings.log_level)
    _run(_show_receive(settings))


async def _show_receive(settings: WalletSettings) -> None:
    wallet = _open_service(settings)
    try:
        print(wallet.receive_address())
    finally:
        await wallet.close()


@app.command()
def send(
    address: str = typer.Argument(..., help="Destination address"),
    amount: int = typer.Argument(..., help="Amount in sats"),
    fee_rate: float | None = typer.Option(
        None, "--fee-rate", "-f", help="Fee rate in sat/vB (estimated if omitted)"
    ),
    no_wait: bool = typer.Option(False, "--no-wait", help="Return once the relay accepts"),
    network: str | None = NetworkOption,
    data_dir: Path | None = DataDirOption,
    xpub: str | None = XpubOption,
    light_client_url: str | None = typer.Option(
        None, "--light-client-url", envvar="NEUTRINO_URL"
    ),
    log_level: str | None = LogLevelOption,
) -> None:
    """Build a payment, sign it on the external signer and broadcast it."""
    settings = _load_settings(network, data_dir, xpub, light_client_url)
    setup_logging(log_level or settings.log_level)
    _run(_send(settings, address, amount, fee_rate, not no_wait))


async def _send(
    settings: WalletSettings,
    address: str,
    amount: int,
    fee_rate: float | None,
    wait: bool,
) -> None:
    wallet = _open_service(settings, with_relay=True, with_signer=True)
    try:
        result = await wallet.send(address, amount, fee_rate=fee_rate, wait=wait)
        print(f"\nTransaction: {result.txid}")
        print(f"Fee:         {result.fee:,} sats")
        if result.status is not None:
            print(f"Status:      {result.status.status.value}")
    except BroadcastTimeout as e:
        # Submitted and applied; later events settle it
        logger.warning(str(e))
        print(f"\nTransaction: {e.txid} (submitted, not yet seen by the network)")
    finally:
        await wallet.close()


@app.command()
def status(
    network: str | None = NetworkOption,
    data_dir: Path | None = DataDirOption,
    xpub: str | None = XpubOption,
    light_client_url: str | None = typer.Option(
        None, "--light-client-url", envvar="NEUTRINO_URL"
    ),
    offline: bool = typer.Option(False, "--offline", help="Do not query the light client"),
    log_level: str | None = LogLevelOption,
) -> None:
    """Show sync status."""
    settings = _load_settings(network, data_dir, xpub, light_client_url)
    setup_logging(log_level or settings.log_level)
    _run(_show_status(settings, not offline))


async def _show_status(settings: WalletSettings, with_relay: bool) -> None:
    wallet = _open_service(settings, with_relay=with_relay)
    try:
        st = await wallet.status()
        tip = "none" if st.tip_height is None else f"{st.tip_height} ({st.tip_hash})"
        print(f"\nNetwork:      {st.network}")
        print(f"Tip:          {tip}")
        print(f"Cursor:       {st.cursor_state}")
        print(f"Coins:        {st.coin_count}")
        print(f"Pending txs:  {st.pending_transactions}")
        if st.engine:
            print(f"Light client: {st.engine}")
        if st.rescan_required:
            print(f"RESCAN REQUIRED from height {st.rescan_height}")
    finally:
        await wallet.close()


@app.command()
def sync(
    events_file: Path = typer.Argument(
        Path("-"), help="JSON-lines event stream ('-' reads stdin)"
    ),
    network: str | None = NetworkOption,
    data_dir: Path | None = DataDirOption,
    xpub: str | None = XpubOption,
    light_client_url: str | None = typer.Option(
        None, "--light-client-url", envvar="NEUTRINO_URL"
    ),
    offline: bool = typer.Option(False, "--offline", help="Do not query the light client"),
    log_level: str | None = LogLevelOption,
) -> None:
    """Apply a stream of light-client events to the wallet."""
    settings = _load_settings(network, data_dir, xpub, light_client_url)
    setup_logging(log_level or settings.log_level)
    if str(events_file) != "-" and not events_file.exists():
        logger.error(f"Events file not found: {events_file}")
        raise typer.Exit(1)
    _run(_sync(settings, events_file, not offline))


async def _sync(settings: WalletSettings, events_file: Path, with_relay: bool) -> None:
    if str(events_file) == "-":
        lines = sys.stdin.read().splitlines()
    else:
        lines = events_file.read_text().splitlines()

    wallet = _open_service(settings, with_relay=with_relay)
    feed = EventFeed()
    try:
        consumer = asyncio.create_task(wallet.run(feed))
        for number, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                event = parse_event(line)
            except ValueError as e:
                logger.error(f"Skipping malformed event on line {number}: {e}")
                continue
            await feed.put(event)
        feed.close()
        await consumer

        st = await wallet.status()
        print(f"\nSynced to height {st.tip_height}")
        if st.rescan_required:
            logger.error(f"Rescan required from height {st.rescan_height}")
            raise typer.Exit(1)
    finally:
        await wallet.close()


@app.command()
def rescan(
    start_height: int | None = typer.Option(
        None, "--from-height", help="Height to rescan from (default: as reported by sync)"
    ),
    network: str | None = NetworkOption,
    data_dir: Path | None = DataDirOption,
    xpub: str | None = XpubOption,
    light_client_url: str | None = typer.Option(
        None, "--light-client-url", envvar="NEUTRINO_URL"
    ),
    offline: bool = typer.Option(False, "--offline", help="Do not ask the light client to replay"),
    log_level: str | None = LogLevelOption,
) -> None:
    """Revert chain state from a height and ask the light client to replay blocks."""
    settings = _load_settings(network, data_dir, xpub, light_client_url)
    setup_logging(log_level or settings.log_level)
    _run(_rescan(settings, start_height, not offline))


async def _rescan(settings: WalletSettings, start_height: int | None, with_relay: bool) -> None:
    wallet = _open_service(settings, with_relay=with_relay)
    try:
        height = await wallet.rescan(start_height)
        print(f"\nRescan started from height {height}")
    finally:
        await wallet.close()


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
