"""
CLI entrypoint for the copy trading system.

Provides commands to mirror a primary trade, size a position offline,
reconcile P&L, refresh follower funds, print statistics and manage
follower credentials.
"""
import asyncio
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer

from copytrader.config.config import Config, load_config
from copytrader.domain.models import Follower, InstrumentMeta, PrimaryTrade, TradeSide
from copytrader.exceptions import SizingRejectedError
from copytrader.execution.position_sizing import size_position
from copytrader.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="copytrader",
    help="Copy trading: mirror primary trades onto follower accounts",
    add_completion=False,
)

logger = get_logger(__name__)

_DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


def _load(config_path: Path, dry_run: Optional[bool] = None) -> Config:
    config = load_config(str(config_path))
    if dry_run is not None:
        config.execution.dry_run = dry_run
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


def _runtime(config: Config):
    from copytrader.services.runtime import build_runtime

    return build_runtime(config)


@app.command()
def size(
    entry: str = typer.Option(..., "--entry", help="Entry price"),
    stop: str = typer.Option(..., "--stop", help="Stop-loss price"),
    fund: str = typer.Option(..., "--fund", help="Follower fund (USDT)"),
    risk: str = typer.Option(..., "--risk", help="Risk per trade, percent"),
    pair: str = typer.Option(..., "--pair", help="Pair, e.g. BTC_USDT"),
    step: str = typer.Option(..., "--step", help="Quantity step size"),
    min_qty: str = typer.Option("0", "--min-qty"),
    min_notional: str = typer.Option("0", "--min-notional"),
    max_leverage: str = typer.Option("20", "--max-leverage"),
):
    """
    Size a position offline against explicit instrument constraints.

    Example:
        python run.py size --entry 45000 --stop 44000 --fund 100 --risk 5 --pair BTC_USDT --step 0.001
    """
    meta = InstrumentMeta(
        pair=pair,
        step_size=Decimal(step),
        min_qty=Decimal(min_qty),
        min_notional=Decimal(min_notional),
        max_leverage=Decimal(max_leverage),
    )
    try:
        result = size_position(entry, stop, fund, risk, pair, meta)
    except SizingRejectedError as e:
        typer.echo(f"Rejected ({e.reason.value}): {e}")
        raise typer.Exit(1)
    typer.echo(f"qty={result.qty} leverage={result.leverage}x notional={result.notional} margin={result.required_margin}")
    for warning in result.warnings:
        typer.echo(f"warning: {warning}")


@app.command()
def mirror(
    pair: str = typer.Option(..., "--pair"),
    side: str = typer.Option(..., "--side", help="buy or sell"),
    entry: str = typer.Option(..., "--entry"),
    stop: str = typer.Option(..., "--stop"),
    total: str = typer.Option(..., "--total", help="Primary quantity"),
    leverage: str = typer.Option("1", "--leverage"),
    trade_id: Optional[str] = typer.Option(None, "--trade-id"),
    dry_run: Optional[bool] = typer.Option(None, "--dry-run/--live", help="Override execution.dry_run"),
    timeout: float = typer.Option(120.0, "--timeout", help="Seconds to wait for all followers"),
    config_path: Path = typer.Option(_DEFAULT_CONFIG, "--config"),
):
    """Mirror one primary trade onto every active follower and wait for the outcome."""
    config = _load(config_path, dry_run)
    primary = PrimaryTrade(
        id=trade_id or str(uuid.uuid4()),
        pair=pair,
        side=TradeSide.parse(side),
        entry_price=Decimal(entry),
        stop_loss=Decimal(stop),
        leverage=Decimal(leverage),
        total=Decimal(total),
    )

    async def run():
        runtime = _runtime(config)
        batch = await runtime.service.process_primary_trade(primary)
        typer.echo(batch.message)
        for err in batch.errors:
            typer.echo(f"error: {err}")
        if batch.completion is not None and not await batch.completion.wait(timeout):
            typer.echo(f"Timed out after {timeout}s; remaining mirrors continue in the background")
        stats = await runtime.service.get_stats()
        typer.echo(f"executed={batch.completion.executed if batch.completion else 0} "
                   f"failed={batch.completion.failed if batch.completion else 0} "
                   f"success_rate={stats['success_rate']:.1f}%")

    asyncio.run(run())


@app.command()
def reconcile(
    mirror_id: Optional[str] = typer.Option(None, "--mirror-id", help="Reconcile one copy trade"),
    loop: bool = typer.Option(False, "--loop", help="Sweep periodically until interrupted"),
    config_path: Path = typer.Option(_DEFAULT_CONFIG, "--config"),
):
    """Fill realized P&L and exit price for settled copy trades."""
    config = _load(config_path)

    async def run():
        runtime = _runtime(config)
        if mirror_id:
            updated = await runtime.reconciler.reconcile_by_id(mirror_id)
            typer.echo("updated" if updated else "not settled yet")
        elif loop:
            await runtime.reconciler.run_periodic(config.reconciliation.interval_seconds)
        else:
            summary = await runtime.reconciler.reconcile_all()
            typer.echo(" ".join(f"{k}={v}" for k, v in summary.items()))

    asyncio.run(run())


@app.command("check-funds")
def check_funds(
    loop: bool = typer.Option(False, "--loop"),
    config_path: Path = typer.Option(_DEFAULT_CONFIG, "--config"),
):
    """Refresh follower wallet balances and low-fund flags."""
    config = _load(config_path)

    async def run():
        runtime = _runtime(config)
        if loop:
            await runtime.fund_monitor.run_periodic(config.monitoring.fund_check_interval_seconds)
        else:
            summary = await runtime.fund_monitor.refresh_all()
            typer.echo(" ".join(f"{k}={v}" for k, v in summary.items()))

    asyncio.run(run())


@app.command()
def stats(
    follower_id: Optional[str] = typer.Option(None, "--follower-id"),
    config_path: Path = typer.Option(_DEFAULT_CONFIG, "--config"),
):
    """Print copy trade counts and success rate."""
    from rich.console import Console
    from rich.table import Table

    config = _load(config_path)

    async def run():
        runtime = _runtime(config)
        return await runtime.service.get_stats(follower_id)

    result = asyncio.run(run())
    table = Table(title=f"Copy trades ({follower_id or 'all followers'})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in result.items():
        table.add_row(key, f"{value:.1f}%" if key == "success_rate" else str(value))
    Console().print(table)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8080, "--port"),
    config_path: Path = typer.Option(_DEFAULT_CONFIG, "--config"),
):
    """Run the health/stats API with the P&L sweep and fund monitor in the background."""
    import uvicorn

    from copytrader.health import create_health_app

    config = _load(config_path)

    async def run():
        runtime = _runtime(config)
        background = [
            asyncio.create_task(
                runtime.fund_monitor.run_periodic(config.monitoring.fund_check_interval_seconds),
                name="fund-monitor",
            )
        ]
        if config.reconciliation.enabled:
            background.append(asyncio.create_task(
                runtime.reconciler.run_periodic(config.reconciliation.interval_seconds),
                name="pnl-sweep",
            ))
        server = uvicorn.Server(uvicorn.Config(create_health_app(runtime), host=host, port=port, log_level="warning"))
        logger.info("SERVER_STARTING", host=host, port=port, executor=runtime.executor.mode)
        try:
            await server.serve()
        finally:
            for task in background:
                task.cancel()
            await runtime.service.wait_for_all(timeout=30)

    asyncio.run(run())


@app.command("add-follower")
def add_follower(
    name: str = typer.Option(..., "--name"),
    fund: str = typer.Option(..., "--fund"),
    risk: str = typer.Option(..., "--risk", help="Risk per trade, percent"),
    max_trades_per_day: Optional[int] = typer.Option(None, "--max-trades-per-day"),
    config_path: Path = typer.Option(_DEFAULT_CONFIG, "--config"),
):
    """Register a follower; API key and secret are prompted and stored encrypted."""
    config = _load(config_path)
    api_key = typer.prompt("API key", hide_input=True)
    api_secret = typer.prompt("API secret", hide_input=True)

    from copytrader.storage.db import init_db
    from copytrader.storage.repository import save_follower
    from copytrader.utils.credentials import CredentialCipher

    cipher = CredentialCipher.from_env(config.security.encryption_key_env, config.security.encryption_salt_env)
    follower = Follower(
        id=str(uuid.uuid4()),
        name=name,
        api_key=cipher.encrypt(api_key),
        api_secret=cipher.encrypt(api_secret),
        fund=Decimal(fund),
        risk_per_trade=Decimal(risk),
        max_trades_per_day=max_trades_per_day,
    )
    if not config.data.database_url:
        typer.echo("DATABASE_URL is not set")
        raise typer.Exit(1)
    save_follower(follower, db=init_db(config.data.database_url))
    typer.echo(f"Follower {name} added: {follower.id}")


@app.command("encrypt-credential")
def encrypt_credential(
    config_path: Path = typer.Option(_DEFAULT_CONFIG, "--config"),
):
    """Encrypt a credential for storage (value is prompted, not echoed)."""
    config = _load(config_path)
    from copytrader.utils.credentials import CredentialCipher

    cipher = CredentialCipher.from_env(config.security.encryption_key_env, config.security.encryption_salt_env)
    value = typer.prompt("Value", hide_input=True)
    typer.echo(cipher.encrypt(value))


if __name__ == "__main__":
    app()
