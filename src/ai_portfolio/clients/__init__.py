"""Market session and price collaborators."""

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Protocol

from alpaca.data.historical import StockHistoricalDataClient
from alpaca.data.historical.crypto import CryptoHistoricalDataClient
from alpaca.data.requests import CryptoLatestQuoteRequest, StockLatestQuoteRequest
from alpaca.trading.client import TradingClient

from ai_portfolio.config import Secrets
from ai_portfolio.models import MarketStatus


class MarketSessionOracle(Protocol):
    def is_market_open(self) -> MarketStatus: ...


class PriceResolver(Protocol):
    def resolve_prices(self, tickers: Iterable[str]) -> dict[str, Decimal]: ...


class TradeProposer(Protocol):
    """Produces {"trades": [{action, ticker, shares, reason}, ...]} from a context."""

    def propose_trades(self, context: dict) -> dict | list | str: ...


class FixedMarketSession:
    """Market session with a fixed answer (paper runs, tests, after-hours replays)."""

    def __init__(self, is_open: bool = True):
        self.is_open = is_open

    def is_market_open(self) -> MarketStatus:
        return MarketStatus(is_open=self.is_open, session="fixed")


class StaticPriceResolver:
    """Price lookup backed by a fixed table."""

    def __init__(self, prices: Mapping[str, Decimal | float | str] | None = None):
        self.prices = {
            str(t).upper(): Decimal(str(p)) for t, p in (prices or {}).items()
        }

    def resolve_prices(self, tickers: Iterable[str]) -> dict[str, Decimal]:
        wanted = {t.upper() for t in tickers}
        return {t: p for t, p in self.prices.items() if t in wanted}


def _mid_price(quote) -> Decimal | None:
    bid = float(quote.bid_price or 0)
    ask = float(quote.ask_price or 0)
    # mid-price avoids ask-side bias
    mid = (bid + ask) / 2 if bid > 0 and ask > 0 else ask or bid
    return Decimal(str(mid)) if mid > 0 else None


class AlpacaClient:
    """Market clock and latest quotes from Alpaca's APIs."""

    def __init__(self, secrets: Secrets | None = None):
        self.secrets = secrets or Secrets()
        self.trading = TradingClient(
            api_key=self.secrets.alpaca_api_key,
            secret_key=self.secrets.alpaca_secret_key,
            paper=True,
        )
        self.data = StockHistoricalDataClient(
            api_key=self.secrets.alpaca_api_key,
            secret_key=self.secrets.alpaca_secret_key,
        )
        self.crypto_data = CryptoHistoricalDataClient(
            api_key=self.secrets.alpaca_api_key,
            secret_key=self.secrets.alpaca_secret_key,
        )

    @staticmethod
    def is_crypto(symbol: str) -> bool:
        return "/" in symbol

    def is_market_open(self) -> MarketStatus:
        """US equity session state from the Alpaca clock."""
        try:
            clock = self.trading.get_clock()
        except Exception as e:
            return MarketStatus(is_open=False, error=f"Alpaca clock error: {e}")
        return MarketStatus(is_open=bool(clock.is_open), exchange="US", session="regular")

    def resolve_prices(self, tickers: Iterable[str]) -> dict[str, Decimal]:
        """Latest mid prices for stocks and/or crypto pairs. Missing symbols are omitted."""
        symbols = sorted({t.upper() for t in tickers})
        stock_syms = [s for s in symbols if not self.is_crypto(s)]
        crypto_syms = [s for s in symbols if self.is_crypto(s)]
        prices: dict[str, Decimal] = {}

        if stock_syms:
            quotes = self.data.get_stock_latest_quote(
                StockLatestQuoteRequest(symbol_or_symbols=stock_syms)
            )
            for symbol, quote in quotes.items():
                price = _mid_price(quote)
                if price is not None:
                    prices[symbol] = price

        if crypto_syms:
            quotes = self.crypto_data.get_crypto_latest_quote(
                CryptoLatestQuoteRequest(symbol_or_symbols=crypto_syms)
            )
            for symbol, quote in quotes.items():
                price = _mid_price(quote)
                if price is not None:
                    prices[symbol] = price

        return prices
