"""
btc-explorer CLI - Query Esplora and Electrum servers from the command line.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any, TypeVar

import typer
from loguru import logger

from btcexplorer.backends import Explorer, create_explorer
from btcexplorer.config import Settings
from btcexplorer.errors import ExplorerError

T = TypeVar("T")

app = typer.Typer(
    name="btc-explorer",
    help="Query Bitcoin blockchain state through Esplora or Electrum servers",
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


@dataclass
class CLIOptions:
    json_output: bool = False
    overrides: dict[str, Any] = field(default_factory=dict)


@app.callback()
def common(
    ctx: typer.Context,
    backend: str | None = typer.Option(
        None, "--backend", "-b", help="Backend: esplora | electrum"
    ),
    network: str | None = typer.Option(
        None, "--network", "-n", help="Network: mainnet | testnet | regtest"
    ),
    url: str | None = typer.Option(None, "--url", help="Esplora API URL"),
    host: str | None = typer.Option(None, "--host", help="Electrum server host"),
    port: int | None = typer.Option(None, "--port", help="Electrum server port"),
    protocol: str | None = typer.Option(None, "--protocol", help="Electrum protocol: ssl | tcp"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    setup_logging(log_level)

    # Only options given on the command line override env/.env settings
    overrides = {
        "backend": backend,
        "network": network,
        "esplora_url": url,
        "electrum_host": host,
        "electrum_port": port,
        "electrum_protocol": protocol,
    }
    ctx.obj = CLIOptions(
        json_output=json_output,
        overrides={key: value for key, value in overrides.items() if value is not None},
    )


def _run(ctx: typer.Context, operation: Callable[[Explorer], Awaitable[T]]) -> T:
    """Connect, run one operation, close. Errors are logged and exit with status 1."""
    options: CLIOptions = ctx.obj
    try:
        explorer = create_explorer(Settings(**options.overrides))
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    async def runner() -> T:
        await explorer.connect()
        try:
            return await operation(explorer)
        finally:
            await explorer.close()

    try:
        return asyncio.run(runner())
    except (ExplorerError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise typer.Exit(1)


def _output(ctx: typer.Context, data: Any, text: str) -> None:
    options: CLIOptions = ctx.obj
    if options.json_output:
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(text)


@app.command()
def height(ctx: typer.Context) -> None:
    """Show the current tip height."""
    tip = _run(ctx, lambda explorer: explorer.fetch_block_height())
    _output(ctx, tip, str(tip))


@app.command()
def fees(ctx: typer.Context) -> None:
    """Show fee estimates (sat/vB) per confirmation target."""
    estimates = _run(ctx, lambda explorer: explorer.fetch_fee_estimates())
    lines = [f"{target:>5} blocks: {rate:.3f} sat/vB" for target, rate in estimates.items()]
    _output(ctx, estimates, "\n".join(lines))


@app.command()
def address(
    ctx: typer.Context,
    address: str | None = typer.Argument(None, help="Bitcoin address"),
    script_hash: str | None = typer.Option(
        None, "--script-hash", "-s", help="Electrum-style script hash instead of an address"
    ),
) -> None:
    """Show balances and transaction counts of an address or script hash."""
    if address is None and script_hash is None:
        logger.error("Give an address or --script-hash")
        raise typer.Exit(1)

    async def fetch(explorer: Explorer) -> Any:
        if address is not None:
            return await explorer.fetch_address(address)
        return await explorer.fetch_script_hash(script_hash)

    info = _run(ctx, fetch)
    _output(
        ctx,
        {**asdict(info), "used": info.used},
        f"Balance:             {info.balance} sats\n"
        f"Transactions:        {info.tx_count}\n"
        f"Unconfirmed balance: {info.unconfirmed_balance} sats\n"
        f"Unconfirmed txs:     {info.unconfirmed_tx_count}",
    )


@app.command()
def history(
    ctx: typer.Context,
    address: str | None = typer.Argument(None, help="Bitcoin address"),
    script_hash: str | None = typer.Option(None, "--script-hash", "-s"),
) -> None:
    """List the transaction history of an address or script hash."""
    if address is None and script_hash is None:
        logger.error("Give an address or --script-hash")
        raise typer.Exit(1)

    entries = _run(
        ctx,
        lambda explorer: explorer.fetch_tx_history(address=address, script_hash=script_hash),
    )
    lines = []
    for entry in entries:
        where = f"block {entry.block_height}" if entry.block_height else "mempool"
        final = " (irreversible)" if entry.irreversible else ""
        lines.append(f"{entry.tx_id} {where}{final}")
    _output(ctx, [asdict(entry) for entry in entries], "\n".join(lines) or "No transactions")


@app.command()
def utxos(
    ctx: typer.Context,
    address: str | None = typer.Argument(None, help="Bitcoin address"),
    script_hash: str | None = typer.Option(None, "--script-hash", "-s"),
) -> None:
    """List unspent outputs of an address or script hash."""
    if address is None and script_hash is None:
        logger.error("Give an address or --script-hash")
        raise typer.Exit(1)

    utxo_set = _run(
        ctx, lambda explorer: explorer.fetch_utxos(address=address, script_hash=script_hash)
    )
    lines = [f"{utxo_id} block {u.block_height}" for utxo_id, u in utxo_set.confirmed.items()]
    lines += [f"{utxo_id} mempool" for utxo_id in utxo_set.unconfirmed]
    _output(ctx, asdict(utxo_set), "\n".join(lines) or "No UTXOs")


@app.command()
def tx(ctx: typer.Context, tx_id: str = typer.Argument(..., help="Transaction id")) -> None:
    """Print a raw transaction as hex."""
    tx_hex = _run(ctx, lambda explorer: explorer.fetch_tx(tx_id))
    _output(ctx, tx_hex, tx_hex)


@app.command("block-status")
def block_status(
    ctx: typer.Context, block_height: int = typer.Argument(..., help="Block height")
) -> None:
    """Show hash, time and finality of the block at a height."""
    status = _run(ctx, lambda explorer: explorer.fetch_block_status(block_height))
    if status is None:
        logger.error(f"Block {block_height} is above the current tip")
        raise typer.Exit(1)
    _output(
        ctx,
        asdict(status),
        f"Height:       {status.block_height}\n"
        f"Hash:         {status.block_hash}\n"
        f"Time:         {status.block_time}\n"
        f"Irreversible: {status.irreversible}",
    )


@app.command()
def push(ctx: typer.Context, tx_hex: str = typer.Argument(..., help="Raw transaction hex")) -> None:
    """Broadcast a raw transaction."""
    txid = _run(ctx, lambda explorer: explorer.push(tx_hex))
    _output(ctx, txid, txid)


@app.command()
def ping(ctx: typer.Context) -> None:
    """Check that the server is reachable."""
    alive = _run(ctx, lambda explorer: explorer.is_connected())
    _output(ctx, alive, "connected" if alive else "not connected")
    if not alive:
        raise typer.Exit(1)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
