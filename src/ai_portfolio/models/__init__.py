"""Pydantic models for portfolios, holdings, orders, and snapshots."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class PortfolioStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    ERROR = "error"


class AssetType(str, Enum):
    STOCK = "stock"
    CRYPTO = "crypto"


class RebalanceCadence(str, Enum):
    MONTHLY = "monthly"


class TradeSide(str, Enum):
    """Ledger effect of an action."""

    BUY = "buy"
    SELL = "sell"


class Action(str, Enum):
    """Action label as proposed. TRIM and INCREASE are display synonyms."""

    BUY = "BUY"
    SELL = "SELL"
    TRIM = "TRIM"
    INCREASE = "INCREASE"
    HOLD = "HOLD"

    @property
    def side(self) -> TradeSide | None:
        if self in (Action.BUY, Action.INCREASE):
            return TradeSide.BUY
        if self in (Action.SELL, Action.TRIM):
            return TradeSide.SELL
        return None


class ErrorKind(str, Enum):
    MISSING_FIELD = "MissingField"
    INVALID_SHARE_COUNT = "InvalidShareCount"
    UNKNOWN_ACTION = "UnknownAction"
    PRICE_UNAVAILABLE = "PriceUnavailable"
    INSUFFICIENT_CASH = "InsufficientCash"
    BELOW_MINIMUM_TRADE_VALUE = "BelowMinimumTradeValue"
    INSUFFICIENT_SHARES = "InsufficientShares"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"


class RebalanceMode(str, Enum):
    NEW_PORTFOLIO = "NEW_PORTFOLIO"
    REBALANCE = "REBALANCE"


class Portfolio(BaseModel):
    """A simulated portfolio. Only the trade executor changes current_cash."""

    id: str
    name: str
    owner_id: str | None = None
    asset_type: AssetType = AssetType.STOCK
    starting_capital: Decimal
    current_cash: Decimal
    status: PortfolioStatus = PortfolioStatus.INITIALIZING
    rebalance_cadence: RebalanceCadence | None = None
    next_rebalance_date: date | None = None
    previous_rebalance_date: date | None = None
    last_traded_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class Holding(BaseModel):
    """Current position in one ticker."""

    portfolio_id: str
    ticker: str
    shares: Decimal
    avg_cost: Decimal
    updated_at: datetime = Field(default_factory=datetime.now)

    def market_value(self, price: Decimal | None = None) -> Decimal:
        return self.shares * (price or self.avg_cost)


class Order(BaseModel):
    """A validated trade, either executed or pending.

    Stored orders are one of two states: executed (is_pending False,
    executed_at set) or pending (is_pending True, executed_at None).
    OrderValidator also returns a third, tentative state (is_pending False,
    executed_at None) that never reaches the store: the executor stamps
    executed_at when it applies the trade, or marks it pending when the
    market is closed.
    """

    id: int | None = None
    portfolio_id: str
    ticker: str
    action: Action
    side: TradeSide
    shares: Decimal
    price: Decimal
    total_value: Decimal
    reasoning: str | None = None
    is_pending: bool = False
    executed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def _check_pending_state(self) -> "Order":
        # pending orders are never stamped
        if self.is_pending and self.executed_at is not None:
            raise ValueError("pending orders cannot have executed_at")
        return self


class Snapshot(BaseModel):
    """Daily valuation record, unique per (portfolio_id, snapshot_date)."""

    portfolio_id: str
    snapshot_date: date
    total_value: Decimal
    cash: Decimal
    holdings_value: Decimal
    created_at: datetime = Field(default_factory=datetime.now)


class ProposedTrade(BaseModel):
    """A trade as received from the proposer. Nothing here is trusted."""

    action: Any = None
    ticker: Any = None
    shares: Any = None
    reason: Any = None
    raw: Any = None

    @classmethod
    def from_raw(cls, obj: Any) -> "ProposedTrade":
        if not isinstance(obj, dict):
            return cls(raw=obj)
        return cls(
            action=obj.get("action"),
            ticker=obj.get("ticker"),
            shares=obj.get("shares"),
            reason=obj.get("reason"),
            raw=obj,
        )

    def describe(self) -> str:
        return f"{self.action} {self.shares} {self.ticker}"


class TradeError(BaseModel):
    """A per-trade failure returned alongside the batch result."""

    trade: Any
    kind: ErrorKind
    message: str


class MarketStatus(BaseModel):
    """Answer from the market session oracle."""

    is_open: bool
    error: str | None = None
    exchange: str | None = None
    session: str | None = None


class BatchResult(BaseModel):
    """Outcome of one trade-processing run."""

    portfolio_id: str
    executed: list[Order] = []
    pending: list[Order] = []
    errors: list[TradeError] = []
    market_open: bool = True
    cash: Decimal
