"""Tests for trade execution and batch processing."""

from datetime import date
from decimal import Decimal

import pytest

from ai_portfolio.clients import FixedMarketSession, StaticPriceResolver
from ai_portfolio.data import DataStore
from ai_portfolio.exceptions import (
    PersistenceError,
    PortfolioAccessError,
    PortfolioBusyError,
    PortfolioNotFoundError,
    UpstreamUnavailable,
)
from ai_portfolio.execution import PortfolioEngine, add_months
from ai_portfolio.models import (
    Action,
    AssetType,
    ErrorKind,
    MarketStatus,
    PortfolioStatus,
    RebalanceMode,
    TradeSide,
)

PRICES = {"AAPL": "100", "MSFT": "200", "NVDA": "50"}


class _ErrorMarket:
    def is_market_open(self):
        return MarketStatus(is_open=False, error="Finnhub API error: 503")


class _RaisingMarket:
    def is_market_open(self):
        raise TimeoutError("market status timed out")


class _BrokenPrices:
    def resolve_prices(self, tickers):
        raise ConnectionError("quotes unavailable")


class _FlakyStore(DataStore):
    """Fails the holding/order write for one ticker."""

    def __init__(self, fail_ticker):
        super().__init__(":memory:")
        self.fail_ticker = fail_ticker

    def apply_trade(self, order, ticker, holding):
        if ticker == self.fail_ticker:
            raise PersistenceError("database is locked")
        return super().apply_trade(order, ticker, holding)


class _StaticProposer:
    def __init__(self, response):
        self.response = response
        self.contexts = []

    def propose_trades(self, context):
        self.contexts.append(context)
        return self.response


class _FailingProposer:
    def propose_trades(self, context):
        raise RuntimeError("model timeout")


def _make_engine(is_open=True, prices=None, store=None, market=None):
    return PortfolioEngine(
        store or DataStore(":memory:"),
        market=market or FixedMarketSession(is_open),
        prices=prices if prices is not None else StaticPriceResolver(PRICES),
    )


def _make_portfolio(engine, capital="100000", owner_id=None):
    return engine.create_portfolio("Test", Decimal(capital), owner_id=owner_id)


def _trade(action, ticker, shares, reason="Test"):
    return {"action": action, "ticker": ticker, "shares": shares, "reason": reason}


def _holding(engine, portfolio_id, ticker):
    return next((h for h in engine.store.list_holdings(portfolio_id) if h.ticker == ticker), None)


def test_cash_is_conserved_across_buys_and_sells():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(
        p.id,
        [
            _trade("BUY", "AAPL", 10),
            _trade("BUY", "MSFT", 5),
            _trade("SELL", "AAPL", 4),
        ],
    )

    assert result.errors == []
    assert len(result.executed) == 3
    expected = Decimal("100000") - Decimal("1000") - Decimal("1000") + Decimal("400")
    assert result.cash == expected
    assert engine.store.get_portfolio(p.id).current_cash == expected


def test_buy_then_sell_all_removes_holding():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(
        p.id, [_trade("BUY", "AAPL", 10), _trade("SELL", "AAPL", 10)]
    )

    assert len(result.executed) == 2
    assert _holding(engine, p.id, "AAPL") is None
    assert engine.store.get_portfolio(p.id).current_cash == Decimal("100000")


def test_average_cost_is_share_weighted():
    engine = _make_engine()
    p = _make_portfolio(engine)

    engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)], price_map={"AAPL": "100"})
    engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)], price_map={"AAPL": "200"})

    holding = _holding(engine, p.id, "AAPL")
    assert holding.shares == Decimal("20")
    assert holding.avg_cost == Decimal("150")


def test_partial_sell_keeps_cost_basis():
    engine = _make_engine()
    p = _make_portfolio(engine)
    engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)], price_map={"AAPL": "100"})

    engine.process_trade_batch(p.id, [_trade("TRIM", "AAPL", 4)], price_map={"AAPL": "130"})

    holding = _holding(engine, p.id, "AAPL")
    assert holding.shares == Decimal("6")
    assert holding.avg_cost == Decimal("100")
    assert engine.store.get_portfolio(p.id).current_cash == Decimal("99520")


def test_buy_below_minimum_is_rejected():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 4)])

    assert result.executed == []
    assert len(result.errors) == 1
    assert result.errors[0].kind == ErrorKind.BELOW_MINIMUM_TRADE_VALUE
    assert engine.store.get_portfolio(p.id).current_cash == Decimal("100000")


def test_market_closed_queues_pending_order():
    engine = _make_engine(is_open=False)
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)])

    assert result.market_open is False
    assert result.executed == []
    assert len(result.pending) == 1
    order = result.pending[0]
    assert order.is_pending is True
    assert order.executed_at is None
    assert order.id is not None
    assert engine.store.get_portfolio(p.id).current_cash == Decimal("100000")
    assert engine.store.list_holdings(p.id) == []
    assert [o.id for o in engine.pending_orders(p.id)] == [order.id]


def test_market_closed_does_not_touch_last_traded_at():
    engine = _make_engine(is_open=False)
    p = _make_portfolio(engine)

    engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)])

    assert engine.store.get_portfolio(p.id).last_traded_at is None


def test_executed_order_has_timestamp_and_updates_last_traded_at():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)])

    assert result.executed[0].executed_at is not None
    assert result.executed[0].is_pending is False
    assert engine.store.get_portfolio(p.id).last_traded_at is not None


def test_buy_exceeding_cash_is_rejected():
    engine = _make_engine()
    p = _make_portfolio(engine, capital="1000")

    result = engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 20)])

    assert result.executed == []
    assert result.errors[0].kind == ErrorKind.INSUFFICIENT_CASH
    assert engine.store.get_portfolio(p.id).current_cash == Decimal("1000")
    assert engine.store.list_holdings(p.id) == []


def test_sell_more_than_held_is_rejected():
    engine = _make_engine()
    p = _make_portfolio(engine)
    engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 30)])

    result = engine.process_trade_batch(p.id, [_trade("SELL", "AAPL", 50)])

    assert result.errors[0].kind == ErrorKind.INSUFFICIENT_SHARES
    assert _holding(engine, p.id, "AAPL").shares == Decimal("30")


def test_sell_without_position_is_rejected():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(p.id, [_trade("SELL", "MSFT", 1)])

    assert result.errors[0].kind == ErrorKind.INSUFFICIENT_SHARES


def test_one_bad_trade_does_not_stop_the_batch():
    engine = _make_engine()
    p = _make_portfolio(engine)
    bad = _trade("SHORT", "MSFT", 5)

    result = engine.process_trade_batch(
        p.id, [_trade("BUY", "AAPL", 10), bad, _trade("BUY", "NVDA", 20)]
    )

    assert [o.ticker for o in result.executed] == ["AAPL", "NVDA"]
    assert len(result.errors) == 1
    assert result.errors[0].kind == ErrorKind.UNKNOWN_ACTION
    assert result.errors[0].trade == bad


def test_one_bad_trade_does_not_stop_a_queued_batch():
    engine = _make_engine(is_open=False)
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(
        p.id,
        [_trade("BUY", "AAPL", 10), _trade("BUY", "AAPL", 0), _trade("BUY", "NVDA", 20)],
    )

    assert [o.ticker for o in result.pending] == ["AAPL", "NVDA"]
    assert [e.kind for e in result.errors] == [ErrorKind.INVALID_SHARE_COUNT]


def test_trades_see_state_left_by_earlier_trades():
    engine = _make_engine()
    p = _make_portfolio(engine, capital="1000")

    result = engine.process_trade_batch(
        p.id,
        [
            _trade("BUY", "AAPL", 10),
            _trade("BUY", "AAPL", 5),  # no cash left
            _trade("SELL", "AAPL", 5),
            _trade("BUY", "AAPL", 5),  # funded by the sell
        ],
    )

    assert len(result.executed) == 3
    assert [e.kind for e in result.errors] == [ErrorKind.INSUFFICIENT_CASH]
    assert result.cash == Decimal("0")
    assert _holding(engine, p.id, "AAPL").shares == Decimal("10")


def test_hold_is_skipped_without_error():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(p.id, [_trade("hold", "AAPL", 10)])

    assert result.executed == []
    assert result.pending == []
    assert result.errors == []
    assert engine.store.list_orders(p.id) == []


def test_trim_and_increase_keep_label_and_map_side():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(
        p.id, [_trade("increase", "AAPL", 10), _trade("trim", "AAPL", 5)]
    )

    assert [(o.action, o.side) for o in result.executed] == [
        (Action.INCREASE, TradeSide.BUY),
        (Action.TRIM, TradeSide.SELL),
    ]
    stored = engine.store.list_orders(p.id)
    assert [o.side for o in stored] == [TradeSide.BUY, TradeSide.SELL]


def test_market_status_error_assumes_open():
    engine = _make_engine(market=_ErrorMarket())
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)])

    assert result.market_open is True
    assert len(result.executed) == 1


def test_market_status_exception_assumes_open():
    engine = _make_engine(market=_RaisingMarket())
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)])

    assert len(result.executed) == 1


def test_price_lookup_failure_rejects_only_unpriced_trades():
    engine = _make_engine(prices=_BrokenPrices())
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(
        p.id, [_trade("BUY", "AAPL", 10), _trade("BUY", "MSFT", 5)]
    )

    assert result.executed == []
    assert [e.kind for e in result.errors] == [ErrorKind.PRICE_UNAVAILABLE] * 2


def test_unknown_ticker_price_is_unavailable():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(
        p.id, [_trade("BUY", "ZZZZ", 10), _trade("BUY", "AAPL", 10)]
    )

    assert [o.ticker for o in result.executed] == ["AAPL"]
    assert result.errors[0].kind == ErrorKind.PRICE_UNAVAILABLE


def test_persistence_failure_aborts_only_that_trade():
    engine = _make_engine(store=_FlakyStore("MSFT"))
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(
        p.id,
        [_trade("BUY", "AAPL", 10), _trade("BUY", "MSFT", 5), _trade("BUY", "NVDA", 20)],
    )

    assert [o.ticker for o in result.executed] == ["AAPL", "NVDA"]
    assert [e.kind for e in result.errors] == [ErrorKind.PERSISTENCE_FAILURE]
    assert result.cash == Decimal("98000")
    assert _holding(engine, p.id, "MSFT") is None


def test_proposer_json_text_is_accepted():
    engine = _make_engine()
    p = _make_portfolio(engine)
    payload = '```json\n{"trades": [{"action": "BUY", "ticker": "aapl", "shares": 10}]}\n```'

    result = engine.process_trade_batch(p.id, payload)

    assert result.executed[0].ticker == "AAPL"


def test_zero_trade_run_still_writes_snapshot():
    engine = _make_engine()
    p = _make_portfolio(engine)

    result = engine.process_trade_batch(p.id, {"trades": []})

    assert result.executed == [] and result.errors == []
    snapshot = engine.store.get_snapshot(p.id, engine.snapshots.today())
    assert snapshot.total_value == Decimal("100000")


def test_batch_snapshot_marks_holdings_to_market():
    engine = _make_engine()
    p = _make_portfolio(engine)

    engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)], price_map={"AAPL": "100"})
    snapshot = engine.create_daily_snapshot(p.id, price_map={"AAPL": "120"})

    assert snapshot.cash == Decimal("99000")
    assert snapshot.holdings_value == Decimal("1200")
    assert snapshot.total_value == Decimal("100200")
    assert len(engine.store.list_snapshots(p.id)) == 1


def test_missing_portfolio_is_fatal():
    engine = _make_engine()

    with pytest.raises(PortfolioNotFoundError):
        engine.process_trade_batch("nope", [_trade("BUY", "AAPL", 10)])


def test_owner_mismatch_is_fatal():
    engine = _make_engine()
    p = _make_portfolio(engine, owner_id="alice")

    with pytest.raises(PortfolioAccessError):
        engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)], owner_id="bob")


def test_concurrent_run_for_same_portfolio_is_rejected():
    engine = _make_engine()
    p = _make_portfolio(engine)

    with engine._portfolio_lock(p.id):
        with pytest.raises(PortfolioBusyError):
            engine.process_trade_batch(p.id, [])

    # released afterwards
    engine.process_trade_batch(p.id, [])


def test_create_portfolio_defaults():
    engine = _make_engine()

    p = _make_portfolio(engine, capital="25000")

    assert p.status == PortfolioStatus.INITIALIZING
    assert p.current_cash == Decimal("25000")
    assert p.next_rebalance_date == add_months(engine.snapshots.today(), 1)


def test_crypto_portfolio_has_no_rebalance_schedule():
    engine = _make_engine()

    p = engine.create_portfolio("Coins", Decimal("5000"), asset_type=AssetType.CRYPTO)

    assert p.rebalance_cadence is None
    assert p.next_rebalance_date is None


def test_initialize_portfolio_becomes_active():
    engine = _make_engine()
    proposer = _StaticProposer({"trades": [_trade("BUY", "AAPL", 10)]})

    portfolio, result = engine.initialize_portfolio("Growth", proposer, Decimal("10000"))

    assert portfolio.status == PortfolioStatus.ACTIVE
    assert portfolio.current_cash == Decimal("9000")
    assert len(result.executed) == 1
    assert proposer.contexts[0]["mode"] == RebalanceMode.NEW_PORTFOLIO.value


def test_initialize_portfolio_with_no_trades_becomes_active():
    engine = _make_engine()

    portfolio, result = engine.initialize_portfolio("Idle", _StaticProposer({"trades": []}))

    assert portfolio.status == PortfolioStatus.ACTIVE
    assert result.executed == []


def test_proposer_failure_marks_portfolio_error():
    engine = _make_engine()

    with pytest.raises(UpstreamUnavailable):
        engine.initialize_portfolio("Broken", _FailingProposer())

    [portfolio] = engine.store.list_portfolios()
    assert portfolio.status == PortfolioStatus.ERROR


def test_rebalance_uses_rebalance_mode_and_rolls_schedule():
    engine = _make_engine()
    portfolio, _ = engine.initialize_portfolio(
        "Growth", _StaticProposer({"trades": [_trade("BUY", "AAPL", 10)]})
    )
    proposer = _StaticProposer({"trades": [_trade("TRIM", "AAPL", 5)]})

    result = engine.rebalance_portfolio(portfolio.id, proposer)

    assert proposer.contexts[0]["mode"] == RebalanceMode.REBALANCE.value
    assert "AAPL" in proposer.contexts[0]["holdings_table"]
    assert len(result.executed) == 1
    updated = engine.store.get_portfolio(portfolio.id)
    assert updated.previous_rebalance_date == engine.snapshots.today()
    assert updated.next_rebalance_date == add_months(engine.snapshots.today(), 1)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 12, 15), 1) == date(2026, 1, 15)


def test_wrong_shaped_payload_runs_as_zero_trade_batch():
    engine = _make_engine()
    p = _make_portfolio(engine)

    for payload in ({"trades": "none"}, '{"trades": [', "no trades today"):
        result = engine.process_trade_batch(p.id, payload)

        assert result.executed == []
        assert result.errors == []
        assert result.cash == Decimal("100000")

    [snapshot] = engine.snapshots.history(p.id)
    assert snapshot.total_value == Decimal("100000")


def test_prose_wrapped_reply_is_executed():
    engine = _make_engine()
    reply = (
        "Here is my plan:\n"
        '{"trades": [{"action": "BUY", "ticker": "AAPL", "shares": 10, "reason": "x"}]}\n'
        "Good luck."
    )

    portfolio, result = engine.initialize_portfolio("Growth", _StaticProposer(reply))

    assert portfolio.status == PortfolioStatus.ACTIVE
    assert [o.ticker for o in result.executed] == ["AAPL"]
    assert engine.snapshots.latest(portfolio.id) is not None


def test_unparseable_reply_leaves_portfolio_active():
    engine = _make_engine()

    portfolio, result = engine.initialize_portfolio(
        "Growth", _StaticProposer("I would rather not say.")
    )

    assert portfolio.status == PortfolioStatus.ACTIVE
    assert result.executed == []
    assert portfolio.current_cash == portfolio.starting_capital
    assert engine.snapshots.latest(portfolio.id).total_value == portfolio.starting_capital


def test_lock_table_is_empty_after_runs():
    engine = _make_engine()
    p = _make_portfolio(engine)

    engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)])
    with engine._portfolio_lock(p.id):
        with pytest.raises(PortfolioBusyError):
            engine.process_trade_batch(p.id, [])
        assert list(engine._locks) == [p.id]

    assert engine._locks == {}


def test_engine_policy_follows_holdings():
    engine = _make_engine()
    p = _make_portfolio(engine)

    assert engine.select_policy(p.id).mode == RebalanceMode.NEW_PORTFOLIO

    engine.process_trade_batch(p.id, [_trade("BUY", "AAPL", 10)])

    assert engine.select_policy(p.id).mode == RebalanceMode.REBALANCE
