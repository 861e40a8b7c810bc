"""CLI entry point for the perp maker engine."""

from __future__ import annotations

import asyncio
import random
import sys
from decimal import Decimal
from pathlib import Path

import typer
from loguru import logger

from perp_maker.core.config import EngineConfig, load_config
from perp_maker.engine.reconciliation import EngineSnapshot, ReconciliationLoop
from perp_maker.sim.mock_exchange import BulkMockExchange, MockExchange
from perp_maker.strategies.offset import OffsetQuoteStrategy

app = typer.Typer(
    name="perp-maker",
    help="Perpetual futures maker engine - order reconciliation with stop-loss protection",
)


def setup_logging(log_dir: Path | None = None, verbose: bool = False) -> None:
    """Configure loguru logging.

    Args:
        log_dir: Optional directory for rotating log files
        verbose: Enable verbose debug logging
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
        "<level>{message}</level>",
        level="DEBUG" if verbose else "INFO",
    )
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "perp_maker_{time}.log",
            rotation="1 day",
            retention="7 days",
            level="DEBUG",
        )


async def run_simulation(
    config: EngineConfig,
    *,
    duration: float,
    start_price: Decimal,
    seed: int | None = None,
    bulk: bool = False,
) -> EngineSnapshot:
    """Run the reconciliation loop against a random-walk MockExchange."""
    exchange: MockExchange = (
        BulkMockExchange(config.symbol) if bulk else MockExchange(config.symbol)
    )
    strategy = OffsetQuoteStrategy(config.bid_offset, config.ask_offset)
    engine = ReconciliationLoop(config, exchange, strategy)

    rng = random.Random(seed)
    tick = config.price_tick
    mid = start_price
    exchange.set_market(mid - tick, mid + tick)
    exchange.publish_all()

    interval = config.refresh_interval_ms / 1000
    steps = max(1, int(duration / interval))
    engine.start()
    try:
        for _ in range(steps):
            await asyncio.sleep(interval)
            mid += tick * rng.randint(-3, 3)
            exchange.set_market(mid - tick, mid + tick)
    finally:
        await engine.stop()
    return engine.snapshot()


def _print_snapshot(snapshot: EngineSnapshot, log_lines: int) -> None:
    position = snapshot.position
    typer.echo(f"Symbol:        {snapshot.symbol}")
    typer.echo(f"Phase:         {snapshot.phase.value}")
    typer.echo(f"Top of book:   {snapshot.top_bid} / {snapshot.top_ask}")
    typer.echo(f"Position:      {position.amount} @ {position.entry_price}")
    typer.echo(f"PnL:           {snapshot.pnl}")
    typer.echo(f"Protection:    {snapshot.protection.value}")
    typer.echo(f"Volume:        {snapshot.session_volume}")
    typer.echo(f"Open orders:   {len(snapshot.open_orders)}")
    for order in snapshot.open_orders:
        price = order.stop_price if order.is_protective else order.price
        typer.echo(
            f"  {order.order_id} {order.order_type.value} {order.side.value} "
            f"{order.quantity} @ {price} reduceOnly={order.reduce_only}"
        )
    if log_lines > 0:
        typer.echo("Recent log:")
        for entry in snapshot.trade_log[-log_lines:]:
            typer.echo(f"  [{entry.category.value}] {entry.message}")


@app.command()
def simulate(
    symbol: str = typer.Option("BTCUSDT", "--symbol", "-s", help="Symbol to simulate"),
    duration: float = typer.Option(5.0, "--duration", "-d", min=0.1, help="Seconds to run"),
    start_price: str = typer.Option("100", "--start-price", help="Initial mid price"),
    seed: int | None = typer.Option(None, "--seed", help="Random walk seed"),
    bulk: bool = typer.Option(False, "--bulk", help="Simulate a venue with batch orders"),
    log_lines: int = typer.Option(10, "--log-lines", help="Trade log lines to print"),
    log_dir: Path | None = typer.Option(None, "--log-dir", help="Write log files here"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Run the engine against an in-memory exchange and print the final snapshot."""
    setup_logging(log_dir, verbose=verbose)
    try:
        price = Decimal(start_price)
    except ArithmeticError as exc:
        raise typer.BadParameter("Invalid start price.") from exc
    if not price.is_finite() or price <= 0:
        raise typer.BadParameter("Start price must be positive.")

    config = load_config(symbol=symbol)
    try:
        snapshot = asyncio.run(
            run_simulation(config, duration=duration, start_price=price, seed=seed, bulk=bulk)
        )
    except Exception as exc:  # pragma: no cover - surface detailed CLI error
        logger.error(f"Simulation failed: {exc}")
        raise typer.Exit(code=1) from exc
    _print_snapshot(snapshot, log_lines)


@app.command("show-config")
def show_config() -> None:
    """Print the effective configuration (environment and .env applied)."""
    config = load_config()
    for name, value in config.model_dump().items():
        typer.echo(f"{name}: {value}")


if __name__ == "__main__":
    app()
