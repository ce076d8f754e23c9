# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""Tests for crypto_arena.portfolio.ledger and ledger_math."""

from datetime import datetime, timezone

import pytest

from crypto_arena.errors import (
    InsufficientBalanceError,
    InsufficientPositionError,
    InvalidActionError,
)
from crypto_arena.portfolio import ledger_math
from crypto_arena.portfolio.ledger import PortfolioLedger

SYMBOL = "BTCUSDT"
TS = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def ledger():
    return PortfolioLedger(initial_capital=10_000.0, owner="test")


class TestLedgerMath:
    """Tests for the shared formulas."""

    def test_weighted_average_price(self):
        assert ledger_math.weighted_average_price(1.0, 100.0, 1.0, 200.0) == 150.0
        assert ledger_math.weighted_average_price(0.0, 0.0, 2.0, 50.0) == 50.0

    def test_realized_pnl_net_of_fee(self):
        assert ledger_math.realized_pnl(100.0, 110.0, 2.0, 0.5) == pytest.approx(19.5)

    def test_percent_buy_amount_leaves_room_for_fee(self):
        amount = ledger_math.percent_buy_amount(1_000.0, 1.0, 0.001)
        assert amount + amount * 0.001 == pytest.approx(1_000.0)

    def test_total_equity(self):
        assert ledger_math.total_equity(100.0, [(2.0, 10.0), (1.0, 5.0)]) == 125.0

    def test_is_dust(self):
        assert ledger_math.is_dust(0.0)
        assert ledger_math.is_dust(1e-13)
        assert not ledger_math.is_dust(1e-6)


class TestBuy:
    """Tests for PortfolioLedger.buy."""

    def test_buy_by_amount(self, ledger):
        """Notional buys convert to quantity at the fill price."""
        trade = ledger.buy(SYMBOL, 40_000.0, amount=1_000.0, fee_rate=0.001, timestamp=TS)

        assert trade.quantity == pytest.approx(0.025)
        assert trade.fee == pytest.approx(1.0)
        assert trade.side == "buy"
        assert trade.trade_id == "test-1"
        assert ledger.balance == pytest.approx(10_000.0 - 1_000.0 - 1.0)
        assert ledger.held(SYMBOL) == pytest.approx(0.025)

    def test_buy_by_quantity(self, ledger):
        ledger.buy(SYMBOL, 100.0, quantity=3.0)
        assert ledger.balance == pytest.approx(9_700.0)
        assert ledger.position(SYMBOL).avg_price == 100.0

    def test_avg_price_is_quantity_weighted(self, ledger):
        """avg_price equals sum(p*q) / sum(q) over any buy sequence."""
        fills = [(100.0, 1.0), (120.0, 3.0), (90.0, 2.0), (150.0, 0.5)]
        for price, qty in fills:
            ledger.buy(SYMBOL, price, quantity=qty)

        expected = sum(p * q for p, q in fills) / sum(q for _, q in fills)
        assert ledger.position(SYMBOL).avg_price == pytest.approx(expected)
        assert ledger.held(SYMBOL) == pytest.approx(6.5)

    def test_insufficient_balance_leaves_state_unchanged(self, ledger):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.buy(SYMBOL, 100.0, amount=10_000.0, fee_rate=0.001)

        assert exc_info.value.kind == "InsufficientBalanceError"
        assert ledger.balance == 10_000.0
        assert ledger.positions == {}
        assert ledger.trades == []

    def test_needs_exactly_one_sizing(self, ledger):
        with pytest.raises(InvalidActionError):
            ledger.buy(SYMBOL, 100.0)
        with pytest.raises(InvalidActionError):
            ledger.buy(SYMBOL, 100.0, amount=10.0, quantity=1.0)

    def test_rejects_non_positive_values(self, ledger):
        with pytest.raises(InvalidActionError):
            ledger.buy(SYMBOL, 100.0, amount=0.0)
        with pytest.raises(InvalidActionError):
            ledger.buy(SYMBOL, 100.0, quantity=-1.0)
        with pytest.raises(InvalidActionError):
            ledger.buy(SYMBOL, 0.0, amount=10.0)

    def test_rejects_non_positive_initial_capital(self):
        with pytest.raises(InvalidActionError):
            PortfolioLedger(initial_capital=0.0)


class TestSell:
    """Tests for PortfolioLedger.sell."""

    def test_partial_sell_realizes_pnl(self, ledger):
        ledger.buy(SYMBOL, 100.0, quantity=10.0)
        trade = ledger.sell(SYMBOL, 4.0, 110.0, fee_rate=0.001)

        fee = 4.0 * 110.0 * 0.001
        assert trade.realized_pnl == pytest.approx(40.0 - fee)
        assert ledger.realized_pnl == pytest.approx(40.0 - fee)
        assert ledger.held(SYMBOL) == pytest.approx(6.0)
        assert ledger.balance == pytest.approx(9_000.0 + 440.0 - fee)
        # Cost basis is unchanged by sells
        assert ledger.position(SYMBOL).avg_price == 100.0

    def test_full_sell_removes_position(self, ledger):
        ledger.buy(SYMBOL, 100.0, quantity=2.0)
        ledger.sell(SYMBOL, 2.0, 90.0)

        assert ledger.position(SYMBOL) is None
        assert ledger.realized_pnl == pytest.approx(-20.0)
        assert ledger.balance == pytest.approx(9_980.0)

    def test_oversell_leaves_state_unchanged(self, ledger):
        """Oversells are rejected, never clamped."""
        ledger.buy(SYMBOL, 100.0, quantity=1.0)
        balance = ledger.balance
        trades = ledger.trades

        with pytest.raises(InsufficientPositionError) as exc_info:
            ledger.sell(SYMBOL, 1.5, 100.0)

        assert exc_info.value.kind == "InsufficientPositionError"
        assert ledger.balance == balance
        assert ledger.held(SYMBOL) == 1.0
        assert ledger.trades == trades

    def test_sell_without_position(self, ledger):
        with pytest.raises(InsufficientPositionError):
            ledger.sell(SYMBOL, 0.1, 100.0)

    def test_trade_ids_are_sequential(self, ledger):
        ledger.buy(SYMBOL, 100.0, quantity=1.0)
        ledger.buy(SYMBOL, 100.0, quantity=1.0)
        ledger.sell(SYMBOL, 1.0, 100.0)

        assert [t.trade_id for t in ledger.trades] == ["test-1", "test-2", "test-3"]


class TestValuation:
    """Tests for mark_to_market and snapshots."""

    def test_equity_identity(self, ledger):
        """total_equity == balance + sum(qty * current_price)."""
        ledger.buy(SYMBOL, 100.0, quantity=5.0, fee_rate=0.001)
        ledger.buy("ETHUSDT", 10.0, quantity=20.0, fee_rate=0.001)

        equity = ledger.mark_to_market({SYMBOL: 120.0, "ETHUSDT": 8.0})

        expected = ledger.balance + 5.0 * 120.0 + 20.0 * 8.0
        assert equity == pytest.approx(expected)
        assert ledger.total_equity == pytest.approx(expected)

    def test_mark_does_not_touch_trades(self, ledger):
        ledger.buy(SYMBOL, 100.0, quantity=1.0)
        ledger.mark_to_market({SYMBOL: 50.0})

        assert ledger.trade_count == 1
        assert ledger.position(SYMBOL).unrealized_pnl == pytest.approx(-50.0)

    def test_missing_price_keeps_last_mark(self, ledger):
        ledger.buy(SYMBOL, 100.0, quantity=1.0)
        ledger.mark_to_market({"ETHUSDT": 1.0})
        assert ledger.position(SYMBOL).current_price == 100.0

    def test_snapshot_is_a_deep_copy(self, ledger):
        ledger.buy(SYMBOL, 100.0, quantity=1.0)
        state = ledger.snapshot()

        state.positions[SYMBOL].quantity = 999.0
        state.balance = 0.0

        assert ledger.held(SYMBOL) == 1.0
        assert ledger.balance == pytest.approx(9_900.0)
        assert state.position_quantity(SYMBOL) == 999.0
