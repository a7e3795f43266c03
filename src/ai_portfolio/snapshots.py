"""Daily portfolio valuation snapshots."""

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rich.console import Console

from ai_portfolio.data import DataStore
from ai_portfolio.exceptions import ConfigurationError
from ai_portfolio.ledger import HoldingsLedger
from ai_portfolio.models import Snapshot

console = Console()


class SnapshotService:
    """Computes cash + mark-to-market value and upserts one row per portfolio per day."""

    def __init__(self, store: DataStore, timezone: str | None = None):
        self.store = store
        self.timezone = None
        if timezone:
            try:
                self.timezone = ZoneInfo(timezone)
            except ZoneInfoNotFoundError as e:
                raise ConfigurationError(f"Unknown snapshot timezone {timezone!r}") from e

    def today(self) -> date:
        """Current calendar day for the portfolio owner (never UTC by default)."""
        if self.timezone is not None:
            return datetime.now(self.timezone).date()
        return datetime.now().date()

    def build(
        self,
        portfolio_id: str,
        cash: Decimal,
        ledger: HoldingsLedger,
        price_map: Mapping[str, Decimal],
        as_of: date | None = None,
    ) -> Snapshot:
        holdings_value = ledger.valuate(price_map)
        return Snapshot(
            portfolio_id=portfolio_id,
            snapshot_date=as_of or self.today(),
            total_value=cash + holdings_value,
            cash=cash,
            holdings_value=holdings_value,
        )

    def record(
        self,
        portfolio_id: str,
        cash: Decimal,
        ledger: HoldingsLedger,
        price_map: Mapping[str, Decimal],
        as_of: date | None = None,
    ) -> Snapshot:
        """Build and persist a snapshot; a second call for the same day overwrites."""
        snapshot = self.build(portfolio_id, cash, ledger, price_map, as_of)
        self.store.upsert_snapshot(snapshot)
        console.print(
            f"  [dim]Snapshot {snapshot.snapshot_date}: "
            f"cash ${snapshot.cash:,.2f} + holdings ${snapshot.holdings_value:,.2f} "
            f"= ${snapshot.total_value:,.2f}[/dim]"
        )
        return snapshot

    def latest(self, portfolio_id: str) -> Snapshot | None:
        return self.store.latest_snapshot(portfolio_id)

    def history(self, portfolio_id: str) -> list[Snapshot]:
        return self.store.list_snapshots(portfolio_id)
