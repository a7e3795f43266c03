"""Execution engine: validation, trade execution, and per-portfolio orchestration."""

import calendar
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from rich.console import Console

from ai_portfolio.clients import MarketSessionOracle, PriceResolver, TradeProposer
from ai_portfolio.config import AppConfig
from ai_portfolio.data import DataStore
from ai_portfolio.exceptions import (
    PersistenceError,
    PortfolioEngineError,
    PortfolioAccessError,
    PortfolioBusyError,
    PortfolioNotFoundError,
    TradeRejected,
    UpstreamUnavailable,
)
from ai_portfolio.ledger import HoldingsLedger
from ai_portfolio.models import (
    AssetType,
    BatchResult,
    ErrorKind,
    Order,
    Portfolio,
    PortfolioStatus,
    ProposedTrade,
    RebalanceCadence,
    Snapshot,
    TradeError,
    TradeSide,
)
from ai_portfolio.policy import RebalancePolicy, build_trade_context, select_policy
from ai_portfolio.snapshots import SnapshotService
from ai_portfolio.validation import OrderValidator, parse_proposed_trades

console = Console()


def add_months(day: date, months: int) -> date:
    """Same day N months later, clamped to the last day of the target month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def _as_price_map(prices: Mapping[str, Any]) -> dict[str, Decimal]:
    return {str(t).upper(): Decimal(str(p)) for t, p in prices.items() if p is not None}


def _reject(trade: ProposedTrade, kind: ErrorKind, message: str) -> TradeError:
    console.print(f"  [red]✗[/red] {trade.describe()}: [dim]{kind.value}[/dim] {message}")
    return TradeError(trade=trade.raw, kind=kind, message=message)


class TradeExecutor:
    """Applies validated trades to the ledger and cash, or queues them as pending.

    One open/closed decision governs the whole batch. Trades run strictly in
    order, so state left by trade N is what trade N+1 is validated against.
    """

    def __init__(self, store: DataStore, validator: OrderValidator | None = None):
        self.store = store
        self.validator = validator or OrderValidator()

    def execute_batch(
        self,
        portfolio: Portfolio,
        ledger: HoldingsLedger,
        trades: list[ProposedTrade],
        prices: Mapping[str, Decimal],
        market_open: bool,
    ) -> BatchResult:
        if market_open:
            return self._execute_open(portfolio, ledger, trades, prices)
        return self._queue_closed(portfolio, ledger, trades, prices)

    def _queue_closed(
        self,
        portfolio: Portfolio,
        ledger: HoldingsLedger,
        trades: list[ProposedTrade],
        prices: Mapping[str, Decimal],
    ) -> BatchResult:
        console.print("[yellow]⏸ Market is closed - queueing trades as PENDING[/yellow]")
        result = BatchResult(
            portfolio_id=portfolio.id, market_open=False, cash=portfolio.current_cash
        )
        for trade in trades:
            try:
                order = self.validator.validate(
                    portfolio.id, trade, prices, portfolio.current_cash, ledger
                )
            except TradeRejected as e:
                result.errors.append(_reject(trade, e.kind, e.message))
                continue
            if order is None:
                continue

            pending = order.model_copy(update={"is_pending": True, "executed_at": None})
            try:
                saved = self.store.insert_order(pending)
            except PersistenceError as e:
                result.errors.append(
                    _reject(
                        trade,
                        ErrorKind.PERSISTENCE_FAILURE,
                        f"Failed to record pending trade: {e}",
                    )
                )
                continue

            result.pending.append(saved)
            console.print(
                f"  [yellow]⏸[/yellow] PENDING {saved.action.value}: {saved.shares} "
                f"{saved.ticker} @ ${saved.price:,.2f} = ${saved.total_value:,.2f}"
            )
        return result

    def _execute_open(
        self,
        portfolio: Portfolio,
        ledger: HoldingsLedger,
        trades: list[ProposedTrade],
        prices: Mapping[str, Decimal],
    ) -> BatchResult:
        console.print("[green]Market is open - executing trades[/green]")
        cash = portfolio.current_cash
        result = BatchResult(portfolio_id=portfolio.id, market_open=True, cash=cash)

        for trade in trades:
            try:
                order = self.validator.validate(portfolio.id, trade, prices, cash, ledger)
            except TradeRejected as e:
                result.errors.append(_reject(trade, e.kind, e.message))
                continue
            if order is None:
                continue

            executed = order.model_copy(
                update={"is_pending": False, "executed_at": datetime.now()}
            )
            if executed.side == TradeSide.BUY:
                holding = ledger.preview_buy(executed.ticker, executed.shares, executed.price)
            else:
                holding = ledger.preview_sell(executed.ticker, executed.shares)

            try:
                saved = self.store.apply_trade(executed, executed.ticker, holding)
            except PersistenceError as e:
                # cash and ledger are left as they were before this trade
                result.errors.append(
                    _reject(trade, ErrorKind.PERSISTENCE_FAILURE, f"Failed to record trade: {e}")
                )
                continue

            if saved.side == TradeSide.BUY:
                ledger.upsert_on_buy(saved.ticker, saved.shares, saved.price)
                cash -= saved.total_value
            else:
                ledger.reduce_on_sell(saved.ticker, saved.shares)
                cash += saved.total_value

            result.executed.append(saved)
            console.print(
                f"  [green]✓[/green] {saved.action.value}: {saved.shares} {saved.ticker} "
                f"@ ${saved.price:,.2f} = ${saved.total_value:,.2f}"
            )

        if result.executed:
            # single portfolio write per batch; failure here is fatal to the request
            self.store.update_cash(portfolio.id, cash, datetime.now())
            console.print(f"  Updated portfolio cash: ${cash:,.2f}")
        result.cash = cash
        return result


class PortfolioEngine:
    """Orchestrates policy selection → validation → execution → snapshot per portfolio."""

    def __init__(
        self,
        store: DataStore,
        market: MarketSessionOracle,
        prices: PriceResolver,
        config: AppConfig | None = None,
    ):
        self.config = config or AppConfig()
        self.store = store
        self.market = market
        self.prices = prices
        self.executor = TradeExecutor(store, OrderValidator(self.config.trading))
        self.snapshots = SnapshotService(store, self.config.snapshots.timezone)
        # portfolio_id -> [lock, number of callers holding or contending for it]
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _portfolio_lock(self, portfolio_id: str):
        """Single writer per portfolio: a second concurrent run is rejected.

        Entries are dropped once no caller references them, so the table only
        holds portfolios currently being worked on.
        """
        with self._locks_guard:
            entry = self._locks.setdefault(portfolio_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(blocking=False):
                raise PortfolioBusyError(f"Portfolio {portfolio_id} is already being processed")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[portfolio_id]

    def _load_portfolio(self, portfolio_id: str, owner_id: str | None = None) -> Portfolio:
        portfolio = self.store.get_portfolio(portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError(f"Portfolio {portfolio_id} not found")
        if owner_id is not None and portfolio.owner_id != owner_id:
            raise PortfolioAccessError(
                f"Portfolio {portfolio_id} does not belong to owner {owner_id}"
            )
        return portfolio

    def _load_ledger(self, portfolio_id: str) -> HoldingsLedger:
        return HoldingsLedger(
            portfolio_id,
            self.store.list_holdings(portfolio_id),
            share_epsilon=self.config.trading.share_epsilon,
        )

    def check_market(self) -> bool:
        """Ask the oracle once. Errors fall back to assuming the market is open."""
        try:
            status = self.market.is_market_open()
        except Exception as e:
            console.print(f"[yellow]⚠ Market status check failed: {e}[/yellow]")
            console.print("  [dim]Proceeding as if the market is open[/dim]")
            return True
        if status.error:
            console.print(f"[yellow]⚠ Market status check failed: {status.error}[/yellow]")
            console.print("  [dim]Proceeding as if the market is open[/dim]")
            return True
        console.print(f"  Market is {'OPEN' if status.is_open else 'CLOSED'}")
        return status.is_open

    def resolve_prices(self, tickers: set[str]) -> dict[str, Decimal]:
        """Prices for tickers; an unavailable resolver yields an empty map."""
        if not tickers:
            return {}
        try:
            return _as_price_map(self.prices.resolve_prices(sorted(tickers)))
        except Exception as e:
            console.print(f"[yellow]⚠ Price lookup failed: {e}[/yellow]")
            return {}

    @staticmethod
    def _trade_tickers(trades: list[ProposedTrade]) -> set[str]:
        return {
            str(t.ticker).strip().upper()
            for t in trades
            if isinstance(t.ticker, str) and t.ticker.strip()
        }

    def process_trade_batch(
        self,
        portfolio_id: str,
        proposed_trades: Any,
        owner_id: str | None = None,
        price_map: Mapping[str, Decimal] | None = None,
    ) -> BatchResult:
        """Validate and execute (or queue) a batch, then write the day's snapshot."""
        with self._portfolio_lock(portfolio_id):
            return self._process(portfolio_id, proposed_trades, owner_id, price_map)

    def _process(
        self,
        portfolio_id: str,
        proposed_trades: Any,
        owner_id: str | None,
        price_map: Mapping[str, Decimal] | None,
    ) -> BatchResult:
        portfolio = self._load_portfolio(portfolio_id, owner_id)
        ledger = self._load_ledger(portfolio_id)
        trades = parse_proposed_trades(proposed_trades)

        console.rule(f"[bold blue]Processing {len(trades)} trade(s) for {portfolio.name}")

        if price_map is None:
            prices = self.resolve_prices(self._trade_tickers(trades) | set(ledger.tickers()))
        else:
            prices = _as_price_map(price_map)

        if trades:
            market_open = self.check_market()
            result = self.executor.execute_batch(portfolio, ledger, trades, prices, market_open)
        else:
            console.print("[dim]No trades proposed; portfolio unchanged[/dim]")
            result = BatchResult(portfolio_id=portfolio.id, cash=portfolio.current_cash)

        try:
            self.snapshots.record(portfolio.id, result.cash, ledger, prices)
        except PersistenceError as e:
            console.print(f"[red]✗ Failed to write portfolio snapshot: {e}[/red]")

        console.print(
            f"Executed {len(result.executed)}, pending {len(result.pending)}, "
            f"errors {len(result.errors)}"
        )
        return result

    def create_daily_snapshot(
        self,
        portfolio_id: str,
        as_of: date | None = None,
        price_map: Mapping[str, Decimal] | None = None,
    ) -> Snapshot:
        """Value the portfolio and upsert its snapshot for the given (or current) day."""
        with self._portfolio_lock(portfolio_id):
            portfolio = self._load_portfolio(portfolio_id)
            ledger = self._load_ledger(portfolio_id)
            if price_map is None:
                prices = self.resolve_prices(set(ledger.tickers()))
            else:
                prices = _as_price_map(price_map)
            return self.snapshots.record(
                portfolio.id, portfolio.current_cash, ledger, prices, as_of
            )

    def create_portfolio(
        self,
        name: str,
        starting_capital: Decimal | None = None,
        asset_type: AssetType = AssetType.STOCK,
        owner_id: str | None = None,
    ) -> Portfolio:
        """Create a portfolio in the initializing state."""
        capital = Decimal(str(starting_capital or self.config.portfolio.starting_capital))
        if capital <= 0:
            raise ValueError("Starting capital must be greater than 0")
        cadence = None
        next_rebalance = None
        # crypto portfolios are not rebalanced on a calendar
        if asset_type == AssetType.STOCK:
            cadence = RebalanceCadence.MONTHLY
            next_rebalance = add_months(
                self.snapshots.today(), self.config.portfolio.rebalance_months
            )
        portfolio = self.store.create_portfolio(
            name=name.strip(),
            starting_capital=capital,
            asset_type=asset_type,
            owner_id=owner_id,
            rebalance_cadence=cadence,
            next_rebalance_date=next_rebalance,
        )
        console.print(f"[green]✓[/green] Portfolio created with ID: {portfolio.id}")
        return portfolio

    def _propose(self, portfolio: Portfolio, proposer: TradeProposer) -> list[ProposedTrade]:
        """Call the proposer; only a failed call moves the portfolio to the error state.

        A reply that cannot be read as trades proposes nothing.
        """
        ledger = self._load_ledger(portfolio.id)
        prices = self.resolve_prices(set(ledger.tickers()))
        context = build_trade_context(portfolio, ledger.holdings(), prices)
        console.print(f"  Mode: {context['mode']}")
        try:
            reply = proposer.propose_trades(context)
        except Exception as e:
            self.store.set_status(portfolio.id, PortfolioStatus.ERROR)
            console.print(f"[red]✗ Trade proposal failed: {e}[/red]")
            raise UpstreamUnavailable(f"Trade proposal failed: {e}") from e
        return parse_proposed_trades(reply)

    def initialize_portfolio(
        self,
        name: str,
        proposer: TradeProposer,
        starting_capital: Decimal | None = None,
        asset_type: AssetType = AssetType.STOCK,
        owner_id: str | None = None,
    ) -> tuple[Portfolio, BatchResult]:
        """Create a portfolio, ask for its first trades, and process them.

        The portfolio becomes active once processing finishes, even when no
        trades were proposed.
        """
        portfolio = self.create_portfolio(name, starting_capital, asset_type, owner_id)
        trades = self._propose(portfolio, proposer)
        try:
            result = self.process_trade_batch(portfolio.id, trades, owner_id=owner_id)
        except PortfolioEngineError:
            self.store.set_status(portfolio.id, PortfolioStatus.ERROR)
            raise
        self.store.set_status(portfolio.id, PortfolioStatus.ACTIVE)
        return self._load_portfolio(portfolio.id), result

    def rebalance_portfolio(
        self,
        portfolio_id: str,
        proposer: TradeProposer,
        owner_id: str | None = None,
    ) -> BatchResult:
        """Ask for trades against existing holdings, process them, and roll the schedule."""
        portfolio = self._load_portfolio(portfolio_id, owner_id)
        trades = self._propose(portfolio, proposer)
        result = self.process_trade_batch(portfolio_id, trades, owner_id=owner_id)
        if portfolio.rebalance_cadence is not None:
            today = self.snapshots.today()
            self.store.update_rebalance_dates(
                portfolio_id,
                previous=today,
                upcoming=add_months(today, self.config.portfolio.rebalance_months),
            )
        if portfolio.status != PortfolioStatus.ACTIVE:
            self.store.set_status(portfolio_id, PortfolioStatus.ACTIVE)
        return result

    def pending_orders(self, portfolio_id: str) -> list[Order]:
        """Orders queued while the market was closed, awaiting external fulfilment."""
        return self.store.list_orders(portfolio_id, pending=True)

    def select_policy(self, portfolio_id: str) -> RebalancePolicy:
        return select_policy(self.store.list_holdings(portfolio_id))
