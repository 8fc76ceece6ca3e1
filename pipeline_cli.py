#!/usr/bin/env python3
"""
Trade Pipeline CLI

Commands:
  execute  — run one signal through risk evaluation and execution
  demo     — open and then close a position on the simulated exchange

Example:
    python pipeline_cli.py execute BUY BTC-USD --entry 50000 --stop 48500
    python pipeline_cli.py demo --seed 7
"""
import asyncio
import random
import sys
from decimal import Decimal
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import get_config
from container import ServiceContainer
from execution.trade_pipeline import PipelineOutcome

app = typer.Typer()
console = Console()


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _outcome_table(outcome: PipelineOutcome) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan", width=22)
    table.add_column("Value")
    decision = outcome.decision
    result = outcome.result
    status = "[green]✓ executed[/green]" if outcome.executed else f"[red]✗ {outcome.reason}[/red]"
    table.add_row("Status", status)
    if decision is not None:
        table.add_row("Risk decision", decision.reason)
        if decision.risk_reward_ratio is not None:
            table.add_row("Risk/reward", f"{decision.risk_reward_ratio:.2f}:1")
        if decision.modified_signal is not None:
            p = decision.modified_signal.params
            table.add_row("Position size", f"{p.position_size:.6f}")
            table.add_row("Stop loss / take profit", f"{p.stop_loss:,.2f} / {p.take_profit:,.2f}")
    if result is not None:
        table.add_row("Strategy", result.strategy)
        if result.executed_price is not None:
            table.add_row("Executed", f"{result.executed_quantity} @ {result.executed_price:,.4f}")
        if result.slippage is not None:
            table.add_row("Slippage", f"{result.slippage:+.4%}")
        if result.transaction_cost is not None:
            table.add_row("Transaction cost", f"${result.transaction_cost:,.4f}")
        table.add_row("Attempts", str(result.attempts))
        table.add_row("Time", f"{result.execution_time_ms:.0f} ms")
    return table


def _portfolio_table(container: ServiceContainer) -> Table:
    state = container.ledger.state
    table = Table(title="Portfolio", show_header=True, header_style="bold magenta")
    table.add_column("Symbol", style="cyan")
    table.add_column("Direction")
    table.add_column("Quantity", justify="right")
    table.add_column("Avg price", justify="right")
    for pos in state.positions.values():
        table.add_row(pos.symbol, pos.direction.upper(), f"{pos.quantity:.6f}", f"{pos.average_price:,.2f}")
    table.caption = (f"value=${state.total_value:,.2f}  exposure={state.current_exposure:.2%}  "
                     f"drawdown={state.current_drawdown:.2%}")
    return table


def _metrics_table(container: ServiceContainer) -> Table:
    summary = container.metrics.get_summary()
    table = Table(title="Execution metrics", show_header=True, header_style="bold magenta")
    table.add_column("Strategy", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Avg |slippage|", justify="right")
    for name, s in summary["by_strategy"].items():
        table.add_row(name, str(s["total"]), str(s["successful"]), str(s["failed"]),
                      f"{s['avg_slippage']:.4%}")
    table.caption = f"success rate {summary['success_rate']:.0%} over {summary['total_orders']} orders"
    return table


@app.command()
def execute(
    action: str = typer.Argument(..., help="BUY, SELL or CLOSE"),
    symbol: str = typer.Argument(..., help="Instrument, e.g. BTC-USD"),
    entry: Optional[float] = typer.Option(None, "--entry", help="Entry price"),
    stop: Optional[float] = typer.Option(None, "--stop", help="Stop-loss price"),
    target: Optional[float] = typer.Option(None, "--target", help="Take-profit price"),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s",
                                           help="market, limit, smart or iceberg"),
    confidence: float = typer.Option(0.8, "--confidence"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed the simulated exchange"),
    log_level: Optional[str] = typer.Option(None, "--log-level"),
):
    """Run one signal through the pipeline."""
    cfg = get_config()
    _configure_logging(log_level or cfg.log_level)
    params = {k: v for k, v in {"entryPrice": entry, "stopLoss": stop, "takeProfit": target}.items()
              if v is not None}
    signal = {"action": action.upper(), "symbol": symbol, "confidence": confidence,
              "strategyId": "cli", "params": params}

    async def run() -> PipelineOutcome:
        container = ServiceContainer(cfg, rng=random.Random(seed) if seed is not None else None)
        await container.start()
        try:
            return await container.pipeline.process_signal(
                signal, {"strategy": strategy} if strategy else None)
        finally:
            await container.shutdown()

    outcome = asyncio.run(run())
    console.print(_outcome_table(outcome))
    raise typer.Exit(0 if outcome.executed else 1)


@app.command()
def demo(
    symbol: str = typer.Option("BTC-USD", "--symbol"),
    price: float = typer.Option(50000.0, "--price", help="Mid price quoted by the simulated exchange"),
    seed: int = typer.Option(7, "--seed"),
    log_level: str = typer.Option("WARNING", "--log-level"),
):
    """Open a position, close it one tick higher and print the ledger."""
    cfg = get_config()
    _configure_logging(log_level)
    console.print(Panel.fit("[bold cyan]TRADE PIPELINE DEMO[/bold cyan]", border_style="cyan"))

    async def run():
        container = ServiceContainer(cfg, rng=random.Random(seed))
        await container.start()
        try:
            exchange = container.executor.get_exchange(cfg.execution.default_exchange)
            mid = Decimal(str(price))
            exchange.set_quote(symbol, bid=mid - 5, ask=mid + 5, volume=1000)
            opened = await container.pipeline.process_signal({
                "action": "BUY", "symbol": symbol, "confidence": 0.8, "strategyId": "demo",
                "params": {"entryPrice": price}})
            console.print("\n[cyan]═══ Open ═══[/cyan]")
            console.print(_outcome_table(opened))

            exit_mid = mid * Decimal("1.02")
            exchange.set_quote(symbol, bid=exit_mid - 5, ask=exit_mid + 5, volume=1000)
            closed = await container.pipeline.process_signal({
                "action": "CLOSE", "symbol": symbol, "confidence": 1.0, "strategyId": "demo",
                "params": {}})
            console.print("\n[cyan]═══ Close ═══[/cyan]")
            console.print(_outcome_table(closed))
            console.print(_portfolio_table(container))
            console.print(_metrics_table(container))
        finally:
            await container.shutdown()

    asyncio.run(run())


if __name__ == "__main__":
    app()
