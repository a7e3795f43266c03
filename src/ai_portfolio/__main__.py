"""CLI entrypoint for ai-portfolio."""

import json
import os
import sys
from decimal import Decimal

from rich.console import Console
from rich.table import Table

from ai_portfolio.clients import AlpacaClient, FixedMarketSession, StaticPriceResolver
from ai_portfolio.clients.finnhub import FinnhubClient
from ai_portfolio.config import AppConfig, Secrets, load_config
from ai_portfolio.data import DataStore
from ai_portfolio.exceptions import PortfolioEngineError
from ai_portfolio.execution import PortfolioEngine
from ai_portfolio.models import AssetType, BatchResult, PortfolioStatus

console = Console()

USAGE = """usage: python -m ai_portfolio [options]

  --create NAME        create a portfolio (prints its id)
  --capital AMOUNT     starting capital for --create
  --crypto             create a crypto portfolio
  --portfolio ID       portfolio to act on
  --trades FILE        process a JSON file of proposed trades ("-" for stdin)
  --snapshot           write today's valuation snapshot
  --show               show holdings, pending orders and snapshots
  --reset              wipe the database"""


def _arg(flag: str) -> str | None:
    """Value following flag in argv, or None."""
    if flag not in sys.argv:
        return None
    idx = sys.argv.index(flag)
    if idx + 1 >= len(sys.argv):
        console.print(f"[red]Error: {flag} needs a value[/red]")
        sys.exit(2)
    return sys.argv[idx + 1]


def build_engine(config: AppConfig, secrets: Secrets, store: DataStore) -> PortfolioEngine:
    """Wire the engine to its market collaborators.

    Without Alpaca credentials the engine can still create and show
    portfolios, but has no prices.
    """
    if not secrets.alpaca_api_key or not secrets.alpaca_secret_key:
        return PortfolioEngine(
            store, market=FixedMarketSession(is_open=True), prices=StaticPriceResolver({}),
            config=config,
        )

    provider = config.market.provider
    alpaca = AlpacaClient(secrets)
    if provider == "finnhub":
        market = FinnhubClient(secrets.finnhub_api_key, timeout=config.market.timeout_seconds)
    elif provider in ("open", "closed"):
        market = FixedMarketSession(is_open=provider == "open")
    else:
        market = alpaca
    return PortfolioEngine(store, market=market, prices=alpaca, config=config)


def print_result(result: BatchResult) -> None:
    table = Table(title="Trade Results")
    table.add_column("Ticker", style="cyan")
    table.add_column("Action", style="bold")
    table.add_column("Shares", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Value", justify="right")
    table.add_column("Status")

    for o in result.executed:
        style = "green" if o.side.value == "buy" else "red"
        table.add_row(
            o.ticker,
            f"[{style}]{o.action.value}[/{style}]",
            str(o.shares),
            f"${o.price:,.2f}",
            f"${o.total_value:,.2f}",
            "executed",
        )
    for o in result.pending:
        table.add_row(
            o.ticker,
            o.action.value,
            str(o.shares),
            f"${o.price:,.2f}",
            f"${o.total_value:,.2f}",
            "[yellow]pending[/yellow]",
        )
    console.print(table)

    for e in result.errors:
        console.print(f"  [red]✗[/red] {e.kind.value}: {e.message}")
    console.print(f"Cash: ${result.cash:,.2f}")


def show_portfolio(engine: PortfolioEngine, portfolio_id: str) -> None:
    store = engine.store
    portfolio = store.get_portfolio(portfolio_id)
    if portfolio is None:
        console.print(f"[red]Portfolio {portfolio_id} not found[/red]")
        sys.exit(1)

    console.rule(f"[bold blue]{portfolio.name}")
    console.print(f"  Status: {portfolio.status.value} ({portfolio.asset_type.value})")
    console.print(f"  Starting capital: ${portfolio.starting_capital:,.2f}")
    console.print(f"  Cash: ${portfolio.current_cash:,.2f}")
    if portfolio.next_rebalance_date:
        console.print(f"  Next rebalance: {portfolio.next_rebalance_date}")
    console.print(f"  Next run mode: {engine.select_policy(portfolio_id).mode.value}")

    holdings = Table(title="Holdings")
    holdings.add_column("Ticker", style="cyan")
    holdings.add_column("Shares", justify="right")
    holdings.add_column("Avg Cost", justify="right")
    for h in store.list_holdings(portfolio_id):
        holdings.add_row(h.ticker, str(h.shares), f"${h.avg_cost:,.2f}")
    console.print(holdings)

    pending = store.list_orders(portfolio_id, pending=True)
    if pending:
        console.print(f"[yellow]{len(pending)} pending order(s)[/yellow]")
        for o in pending:
            console.print(f"  {o.action.value} {o.shares} {o.ticker} @ ${o.price:,.2f}")

    snapshots = Table(title="Snapshots")
    snapshots.add_column("Date")
    snapshots.add_column("Cash", justify="right")
    snapshots.add_column("Holdings", justify="right")
    snapshots.add_column("Total", justify="right", style="bold")
    for s in store.list_snapshots(portfolio_id):
        snapshots.add_row(
            str(s.snapshot_date),
            f"${s.cash:,.2f}",
            f"${s.holdings_value:,.2f}",
            f"${s.total_value:,.2f}",
        )
    console.print(snapshots)


def main():
    if "--help" in sys.argv or "-h" in sys.argv or len(sys.argv) == 1:
        console.print(USAGE)
        return

    db_path = os.environ.get("DB_PATH", "ai_portfolio.db")

    # --reset: wipe the database and start fresh
    if "--reset" in sys.argv:
        if os.path.exists(db_path):
            os.remove(db_path)
            console.print(f"[green]Deleted {db_path} — starting fresh[/green]")
        else:
            console.print("[dim]No database to reset[/dim]")
        if len(sys.argv) <= 2:
            return

    config = load_config()
    secrets = Secrets()

    # Validate credentials for anything that prices or trades
    needs_market = "--trades" in sys.argv or "--snapshot" in sys.argv
    if needs_market and (not secrets.alpaca_api_key or not secrets.alpaca_secret_key):
        console.print("[red]Error: ALPACA_API_KEY and ALPACA_SECRET_KEY must be set[/red]")
        sys.exit(1)

    store = DataStore(db_path)
    engine = build_engine(config, secrets, store)

    portfolio_id = _arg("--portfolio")
    try:
        name = _arg("--create")
        if name:
            capital = _arg("--capital")
            asset_type = AssetType.CRYPTO if "--crypto" in sys.argv else AssetType.STOCK
            portfolio = engine.create_portfolio(
                name, Decimal(capital) if capital else None, asset_type
            )
            portfolio_id = portfolio.id

        trades_file = _arg("--trades")
        if trades_file:
            if not portfolio_id:
                console.print("[red]Error: --trades needs --portfolio or --create[/red]")
                sys.exit(2)
            if trades_file == "-":
                payload = sys.stdin.read()
            else:
                with open(trades_file) as f:
                    payload = f.read()
            result = engine.process_trade_batch(portfolio_id, payload)
            print_result(result)
            if name:
                store.set_status(portfolio_id, PortfolioStatus.ACTIVE)

        if "--snapshot" in sys.argv:
            if not portfolio_id:
                console.print("[red]Error: --snapshot needs --portfolio[/red]")
                sys.exit(2)
            snapshot = engine.create_daily_snapshot(portfolio_id)
            console.print(json.dumps(snapshot.model_dump(mode="json"), indent=2))

        if "--show" in sys.argv and portfolio_id:
            show_portfolio(engine, portfolio_id)
    except PortfolioEngineError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
