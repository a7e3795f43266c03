"""Order validation: guardrails applied to each proposed trade."""

import json
import re
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from rich.console import Console

from ai_portfolio.config import TradingRules
from ai_portfolio.exceptions import TradeRejected
from ai_portfolio.ledger import HoldingsLedger
from ai_portfolio.models import (
    Action,
    ErrorKind,
    Order,
    ProposedTrade,
    TradeSide,
)

console = Console()


def _decode(text: str) -> Any:
    """JSON from a proposer reply, falling back to the outermost {...} block."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", text)
        if match is None:
            raise
        return json.loads(match.group(0))


def parse_proposed_trades(payload: Any) -> list[ProposedTrade]:
    """Parse a proposer response into ProposedTrade records.

    Accepts raw JSON text (optionally inside a markdown code block or wrapped
    in prose), a dict with a "trades" list, or a bare list. A reply that
    cannot be read as trades is treated as proposing none. Individual entries
    are not checked here; that is the validator's job.
    """
    if isinstance(payload, str):
        cleaned = payload.strip()
        if cleaned.startswith("```"):
            cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
            cleaned = cleaned.rsplit("```", 1)[0]
        if not cleaned.strip():
            return []
        try:
            payload = _decode(cleaned)
        except json.JSONDecodeError as e:
            console.print(f"[yellow]⚠ Could not parse proposed trades: {e}[/yellow]")
            return []

    if payload is None:
        return []
    if isinstance(payload, Mapping):
        payload = payload.get("trades") or []
    if isinstance(payload, ProposedTrade):
        return [payload]
    if not isinstance(payload, list):
        console.print(
            f"[yellow]⚠ Expected a list of trades, got {type(payload).__name__}; "
            "processing none[/yellow]"
        )
        return []
    return [t if isinstance(t, ProposedTrade) else ProposedTrade.from_raw(t) for t in payload]


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


class OrderValidator:
    """Checks a single proposed trade against policy rules and current state."""

    def __init__(self, rules: TradingRules | None = None):
        self.rules = rules or TradingRules()

    def validate(
        self,
        portfolio_id: str,
        trade: ProposedTrade,
        prices: Mapping[str, Decimal],
        cash: Decimal,
        ledger: HoldingsLedger,
    ) -> Order | None:
        """Return a tentative Order, or None for HOLD.

        Raises TradeRejected when a rule fails. Never mutates cash or ledger.
        """
        if _is_blank(trade.ticker) or _is_blank(trade.shares) or _is_blank(trade.action):
            raise TradeRejected(
                ErrorKind.MISSING_FIELD, "Missing required fields (ticker, shares, action)"
            )

        ticker = str(trade.ticker).strip().upper()
        shares = _to_decimal(trade.shares)
        if shares is None or shares <= 0:
            raise TradeRejected(
                ErrorKind.INVALID_SHARE_COUNT,
                f"Shares must be greater than 0 (got {trade.shares!r})",
            )

        raw_action = str(trade.action).strip().upper()
        if raw_action == Action.HOLD.value:
            console.print(f"  [dim]HOLD: {ticker} - no action taken[/dim]")
            return None
        try:
            action = Action(raw_action)
        except ValueError:
            raise TradeRejected(
                ErrorKind.UNKNOWN_ACTION,
                f"Invalid action: {trade.action}. "
                "Must be one of: BUY, SELL, TRIM, INCREASE, or HOLD",
            ) from None

        price = prices.get(ticker)
        if price is None or price <= 0:
            raise TradeRejected(ErrorKind.PRICE_UNAVAILABLE, f"Price not available for {ticker}")

        total_value = shares * price
        if action.side == TradeSide.BUY:
            self._check_buy(ticker, total_value, cash)
        else:
            self._check_sell(ticker, shares, ledger)

        return Order(
            portfolio_id=portfolio_id,
            ticker=ticker,
            action=action,
            side=action.side,
            shares=shares,
            price=price,
            total_value=total_value,
            reasoning=None if _is_blank(trade.reason) else str(trade.reason),
        )

    def _check_buy(self, ticker: str, total_value: Decimal, cash: Decimal) -> None:
        if total_value > cash:
            raise TradeRejected(
                ErrorKind.INSUFFICIENT_CASH,
                f"Insufficient cash. Need ${total_value:,.2f}, have ${cash:,.2f}",
            )
        if total_value < self.rules.min_trade_value:
            raise TradeRejected(
                ErrorKind.BELOW_MINIMUM_TRADE_VALUE,
                f"Trade value ${total_value:,.2f} is below minimum "
                f"${self.rules.min_trade_value:,.2f}",
            )

    def _check_sell(self, ticker: str, shares: Decimal, ledger: HoldingsLedger) -> None:
        existing = ledger.get(ticker)
        if existing is None or existing.shares < shares:
            available = existing.shares if existing else Decimal("0")
            raise TradeRejected(
                ErrorKind.INSUFFICIENT_SHARES,
                f"Insufficient shares of {ticker}. Need {shares}, have {available}",
            )
