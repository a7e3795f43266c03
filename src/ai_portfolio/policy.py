"""Rebalance policy selection and proposer context."""

from collections.abc import Mapping, Sequence
from decimal import Decimal

from pydantic import BaseModel

from ai_portfolio.models import Holding, Portfolio, RebalanceMode

NEW_PORTFOLIO_INSTRUCTIONS = "This is a new portfolio. Make your initial investment decisions."

REBALANCE_INSTRUCTIONS = (
    "This is an existing portfolio. Rebalance only if justified.\n"
    "You are allowed to make NO trades if no action is warranted.\n"
    "Prefer incremental changes (trims/adds) over replacing the entire portfolio.\n"
    "Use sells/trims primarily to fix rule violations or to replace deteriorating setups."
)

NO_HOLDINGS_TEXT = "Current Holdings: None (new portfolio)"


class RebalancePolicy(BaseModel):
    mode: RebalanceMode
    instructions: str


def select_policy(holdings: Sequence[Holding]) -> RebalancePolicy:
    """REBALANCE when the portfolio holds anything, otherwise NEW_PORTFOLIO."""
    if holdings:
        return RebalancePolicy(mode=RebalanceMode.REBALANCE, instructions=REBALANCE_INSTRUCTIONS)
    return RebalancePolicy(
        mode=RebalanceMode.NEW_PORTFOLIO, instructions=NEW_PORTFOLIO_INSTRUCTIONS
    )


def format_holdings_table(
    holdings: Sequence[Holding],
    price_map: Mapping[str, Decimal],
    total_value: Decimal,
) -> str:
    """Render holdings with weight and unrealized P&L for the proposer prompt."""
    if not holdings:
        return NO_HOLDINGS_TEXT

    lines = [
        f"Current Portfolio Holdings ({len(holdings)} positions):",
        "",
        "Ticker | Shares | Avg Cost | Current Price | Weight % | Unrealized P&L %",
        "-" * 80,
    ]
    holdings_value = Decimal("0")
    for h in holdings:
        price = price_map.get(h.ticker) or h.avg_cost
        value = h.shares * price
        holdings_value += value
        weight = value / total_value * 100 if total_value > 0 else Decimal("0")
        pnl = (price - h.avg_cost) / h.avg_cost * 100 if h.avg_cost > 0 else Decimal("0")
        lines.append(
            f"{h.ticker:<6} | {h.shares:>8.4f} | ${h.avg_cost:>8.2f} | ${price:>11.2f} | "
            f"{weight:>7.2f}% | {pnl:>+7.2f}%"
        )
    lines.append("-" * 80)
    share = holdings_value / total_value * 100 if total_value > 0 else Decimal("0")
    lines.append(f"Total Holdings Value: ${holdings_value:,.2f} ({share:.2f}% of portfolio)")
    return "\n".join(lines)


def build_trade_context(
    portfolio: Portfolio,
    holdings: Sequence[Holding],
    price_map: Mapping[str, Decimal],
) -> dict:
    """Context handed to the trade proposer."""
    policy = select_policy(holdings)
    holdings_value = sum(
        (h.market_value(price_map.get(h.ticker)) for h in holdings), Decimal("0")
    )
    total_value = portfolio.current_cash + holdings_value
    return {
        "portfolio_id": portfolio.id,
        "name": portfolio.name,
        "asset_type": portfolio.asset_type.value,
        "starting_capital": portfolio.starting_capital,
        "current_cash": portfolio.current_cash,
        "total_value": total_value,
        "mode": policy.mode.value,
        "mode_instructions": policy.instructions,
        "holdings_table": format_holdings_table(holdings, price_map, total_value),
        "tickers": [h.ticker for h in holdings],
    }
