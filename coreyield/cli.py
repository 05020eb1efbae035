"""
CLI entrypoint for the CoreYield position orchestration engine.

Read-only developer views against the configured RPC: markets, pools,
quote, balances, stake.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from coreyield.config.config import Config, load_config
from coreyield.data.ledger_client import JsonRpcLedgerGateway
from coreyield.exceptions import CoreYieldError, OperationFailed
from coreyield.execution.position_orchestrator import PositionOrchestrator
from coreyield.monitoring.logger import get_logger, setup_logging
from coreyield.utils.units import from_base_units

app = typer.Typer(
    name="coreyield",
    help="CoreYield position orchestration engine",
    add_completion=False,
)

logger = get_logger(__name__)
console = Console()


def _load(config_path: Optional[Path]) -> Config:
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


def _gateway(config: Config) -> JsonRpcLedgerGateway:
    return JsonRpcLedgerGateway(
        config.network.rpc_url,
        amm=config.contracts.amm,
        staking=config.contracts.staking,
        timeout_seconds=config.network.rpc_timeout_seconds,
        confirmation_timeout_seconds=config.network.confirmation_timeout_seconds,
        poll_interval_seconds=config.network.confirmation_poll_seconds,
        read_retries=config.network.read_retries,
    )


def _fmt(value: Decimal) -> str:
    return f"{value.normalize():f}" if value else "0"


def _ts(unix: int) -> str:
    if not unix:
        return "-"
    return datetime.fromtimestamp(unix, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


@app.command()
def markets(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    List configured markets and their maturity.

    Example:
        coreyield markets
    """
    config = _load(config_path)
    now = datetime.now(timezone.utc).timestamp()

    table = Table(title=f"Markets on {config.network.name} (chain {config.network.chain_id})")
    table.add_column("Market")
    table.add_column("Asset")
    table.add_column("SY")
    table.add_column("PT")
    table.add_column("YT")
    table.add_column("Maturity")
    table.add_column("Status")

    for market in config.build_markets():
        status = "[red]matured[/red]" if market.is_matured(now) else f"{market.seconds_to_maturity(now) // 86400}d left"
        table.add_row(
            market.market_id,
            market.asset,
            market.sy_token,
            market.pt_token,
            market.yt_token,
            _ts(market.maturity),
            status,
        )
    console.print(table)


@app.command()
def pools(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Show live reserves for every configured AMM pool.

    Example:
        coreyield pools
    """
    config = _load(config_path)

    async def _run():
        async with _gateway(config) as gateway:
            orchestrator = PositionOrchestrator.from_config(config, gateway, account=None)
            table = Table(title="AMM pools")
            table.add_column("Pool")
            table.add_column("Reserve A", justify="right")
            table.add_column("Reserve B", justify="right")
            table.add_column("Fee (bps)", justify="right")
            table.add_column("Active")
            for spec in orchestrator.registry.list_pools():
                pool = await orchestrator.get_pool(spec.pool_id)
                registry = orchestrator.registry
                table.add_row(
                    pool.pool_id,
                    _fmt(from_base_units(pool.reserve_a, registry.token_decimals(pool.token_a))),
                    _fmt(from_base_units(pool.reserve_b, registry.token_decimals(pool.token_b))),
                    str(pool.trading_fee_bps),
                    "[green]yes[/green]" if pool.is_active else "[red]no[/red]",
                )
            console.print(table)

    _run_async(_run())


@app.command()
def quote(
    pool_id: str = typer.Argument(..., help="Pool id from config"),
    token_in: str = typer.Argument(..., help="Address of the token to sell"),
    amount: str = typer.Argument(..., help="Amount to sell, in whole tokens"),
    slippage_bps: Optional[int] = typer.Option(None, "--slippage-bps", help="Slippage tolerance (default from config)"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Quote a PT/YT swap against live reserves without submitting anything.

    Example:
        coreyield quote stCORE-pt-yt 0xe0DB...C7a7 10 --slippage-bps 100
    """
    config = _load(config_path)

    async def _run():
        async with _gateway(config) as gateway:
            orchestrator = PositionOrchestrator.from_config(config, gateway, account=None)
            registry = orchestrator.registry
            try:
                result = await orchestrator.quote_swap(pool_id, token_in, Decimal(amount), slippage_bps)
            except OperationFailed as e:
                console.print(f"[bold red]Quote refused:[/bold red] {e}")
                raise typer.Exit(1)
            out_decimals = registry.token_decimals(result.token_out)
            console.print(f"Pool:            {result.pool_id}")
            console.print(f"Amount in:       {amount}")
            console.print(f"Expected out:    {_fmt(from_base_units(result.amount_out, out_decimals))}")
            console.print(f"Minimum out:     {_fmt(from_base_units(result.min_amount_out, out_decimals))}")
            console.print(f"Slippage:        {result.slippage_bps} bps")

    _run_async(_run())


@app.command()
def balances(
    account: str = typer.Argument(..., help="Account address"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Per-market and per-asset balances for an account.

    Example:
        coreyield balances 0xYourAddress
    """
    config = _load(config_path)

    async def _run():
        async with _gateway(config) as gateway:
            orchestrator = PositionOrchestrator.from_config(config, gateway, account=account)
            snapshot = await orchestrator.refresh_balances()

            table = Table(title=f"Balances by market for {account}")
            for column in ("Market", "Underlying", "SY", "PT", "YT", "Claimable"):
                table.add_column(column, justify="right" if column != "Market" else "left")
            for market in orchestrator.list_markets():
                b = snapshot.per_market[market.market_id]
                label = market.market_id
                if market.market_id in snapshot.errors:
                    label = f"{label} [red](read failed)[/red]"
                table.add_row(label, _fmt(b.underlying), _fmt(b.sy), _fmt(b.pt), _fmt(b.yt), _fmt(b.claimable_yield))
            console.print(table)

            assets = Table(title="Balances by asset")
            for column in ("Underlying", "Wallet", "SY", "PT", "YT", "Claimable"):
                assets.add_column(column, justify="right" if column != "Underlying" else "left")
            for underlying, b in snapshot.per_asset.items():
                symbol = orchestrator.registry.markets_for_underlying(underlying)[0].asset
                assets.add_row(symbol, _fmt(b.underlying), _fmt(b.sy), _fmt(b.pt), _fmt(b.yt), _fmt(b.claimable_yield))
            console.print(assets)

    _run_async(_run())


@app.command()
def stake(
    account: str = typer.Argument(..., help="Account address"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Staking position and lock status for an account.

    Example:
        coreyield stake 0xYourAddress
    """
    config = _load(config_path)

    async def _run():
        async with _gateway(config) as gateway:
            orchestrator = PositionOrchestrator.from_config(config, gateway, account=account)
            snapshot = await orchestrator.refresh_balances()
            position = snapshot.stake
            if position is None:
                console.print(f"[bold red]Stake read failed:[/bold red] {snapshot.errors.get('staking')}")
                raise typer.Exit(1)

            now = datetime.now(timezone.utc).timestamp()
            console.print(f"Staked:          {_fmt(position.staked_amount)}")
            console.print(f"Earned rewards:  {_fmt(position.earned_rewards)}")
            console.print(f"Last stake:      {_ts(position.last_stake_time)}")
            console.print(f"Lock ends:       {_ts(position.lock_period_end)}")
            if position.is_locked(now):
                console.print(f"[yellow]Locked for another {int(position.remaining_lock(now))}s[/yellow]")
            else:
                console.print("[green]Unlocked[/green]")

    _run_async(_run())


def _run_async(coro) -> None:
    try:
        asyncio.run(coro)
    except CoreYieldError as e:
        logger.error("Command failed", error=str(e), error_type=type(e).__name__)
        console.print(f"[bold red]{type(e).__name__}:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
