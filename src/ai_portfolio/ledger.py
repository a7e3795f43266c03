"""In-memory holdings ledger with average-cost accounting."""

from collections.abc import Iterable, Mapping
from datetime import datetime
from decimal import Decimal

from ai_portfolio.config import SHARE_EPSILON
from ai_portfolio.models import Holding


class HoldingsLedger:
    """Share and average-cost state per ticker for one portfolio.

    Holds no I/O. The trade executor mutates it in step with the store so
    that trade N's effect is visible when trade N+1 is validated.
    """

    def __init__(
        self,
        portfolio_id: str,
        holdings: Iterable[Holding] = (),
        share_epsilon: Decimal = SHARE_EPSILON,
    ):
        self.portfolio_id = portfolio_id
        self.share_epsilon = share_epsilon
        self._holdings: dict[str, Holding] = {h.ticker: h for h in holdings}

    def __len__(self) -> int:
        return len(self._holdings)

    def __contains__(self, ticker: str) -> bool:
        return ticker in self._holdings

    def get(self, ticker: str) -> Holding | None:
        return self._holdings.get(ticker)

    def holdings(self) -> list[Holding]:
        return sorted(self._holdings.values(), key=lambda h: h.ticker)

    def tickers(self) -> list[str]:
        return sorted(self._holdings)

    def preview_buy(self, ticker: str, shares: Decimal, price: Decimal) -> Holding:
        """Return the holding a buy would produce, without applying it."""
        existing = self._holdings.get(ticker)
        if existing is None:
            return Holding(
                portfolio_id=self.portfolio_id, ticker=ticker, shares=shares, avg_cost=price
            )
        new_shares = existing.shares + shares
        new_avg_cost = (existing.shares * existing.avg_cost + shares * price) / new_shares
        return Holding(
            portfolio_id=self.portfolio_id,
            ticker=ticker,
            shares=new_shares,
            avg_cost=new_avg_cost,
            updated_at=datetime.now(),
        )

    def preview_sell(self, ticker: str, shares: Decimal) -> Holding | None:
        """Return the holding left after a sell, or None if the position closes."""
        existing = self._holdings.get(ticker)
        if existing is None:
            raise ValueError(f"No position in {ticker} to sell")
        if shares > existing.shares:
            raise ValueError(f"Sell qty ({shares}) > position ({existing.shares}) for {ticker}")
        remaining = existing.shares - shares
        if remaining <= self.share_epsilon:
            return None
        # selling never changes cost basis
        return existing.model_copy(update={"shares": remaining, "updated_at": datetime.now()})

    def upsert_on_buy(self, ticker: str, shares: Decimal, price: Decimal) -> Holding:
        holding = self.preview_buy(ticker, shares, price)
        self._holdings[ticker] = holding
        return holding

    def reduce_on_sell(self, ticker: str, shares: Decimal) -> Holding | None:
        holding = self.preview_sell(ticker, shares)
        if holding is None:
            del self._holdings[ticker]
        else:
            self._holdings[ticker] = holding
        return holding

    def valuate(self, price_map: Mapping[str, Decimal]) -> Decimal:
        """Mark holdings to market, falling back to cost basis for unknown tickers."""
        return sum(
            (h.market_value(price_map.get(h.ticker)) for h in self._holdings.values()),
            Decimal("0"),
        )
