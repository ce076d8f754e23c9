# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""Tests for crypto_arena.portfolio.live."""

from datetime import datetime, timezone

import pytest

from crypto_arena.portfolio import LivePortfolio

SYMBOL = "BTCUSDT"
FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def portfolio():
    return LivePortfolio(initial_capital=10_000.0, fee_rate=0.0, now=lambda: FIXED_NOW)


class TestExecuteTrade:
    """Tests for LivePortfolio.execute_trade."""

    def test_buy_at_cached_price(self, portfolio):
        portfolio.update_price(SYMBOL, 100.0)
        outcome = portfolio.execute_trade(SYMBOL, "buy", 2.0)

        assert outcome.success
        assert outcome.trade.price == 100.0
        assert outcome.trade.timestamp == FIXED_NOW
        assert portfolio.balance == pytest.approx(9_800.0)

    def test_explicit_price_wins(self, portfolio):
        portfolio.update_price(SYMBOL, 100.0)
        outcome = portfolio.execute_trade(SYMBOL, "BUY", 1.0, price=90.0)
        assert outcome.trade.price == 90.0

    def test_missing_price_fails(self, portfolio):
        outcome = portfolio.execute_trade(SYMBOL, "buy", 1.0)
        assert not outcome.success
        assert "No price" in outcome.error

    def test_unknown_side_fails(self, portfolio):
        outcome = portfolio.execute_trade(SYMBOL, "short", 1.0, price=100.0)
        assert not outcome.success
        assert "Unknown side" in outcome.error

    def test_rejections_do_not_raise(self, portfolio):
        """Ledger errors come back as failed outcomes."""
        oversell = portfolio.execute_trade(SYMBOL, "sell", 1.0, price=100.0)
        overbuy = portfolio.execute_trade(SYMBOL, "buy", 1_000.0, price=100.0)

        assert not oversell.success
        assert not overbuy.success
        assert portfolio.balance == 10_000.0
        assert portfolio.get_trades() == []

    def test_shares_ledger_math_with_backtest(self):
        """Fees and cost basis follow the same formulas as the backtest ledger."""
        portfolio = LivePortfolio(initial_capital=1_000.0, fee_rate=0.001)
        portfolio.execute_trade(SYMBOL, "buy", 1.0, price=100.0)
        portfolio.execute_trade(SYMBOL, "buy", 1.0, price=200.0)

        assert portfolio.get_position(SYMBOL).avg_price == pytest.approx(150.0)
        assert portfolio.balance == pytest.approx(1_000.0 - 300.0 - 0.3)


class TestReporting:
    """Tests for overview and statistics."""

    def test_overview(self, portfolio):
        portfolio.execute_trade(SYMBOL, "buy", 10.0, price=100.0)
        portfolio.execute_trade(SYMBOL, "sell", 5.0, price=110.0)
        portfolio.update_price(SYMBOL, 120.0)

        overview = portfolio.get_overview()

        assert overview["realized_pnl"] == pytest.approx(50.0)
        assert overview["unrealized_pnl"] == pytest.approx(100.0)
        assert overview["total_return_pct"] == pytest.approx(0.015)
        assert overview["total_equity"] == pytest.approx(9_000.0 + 550.0 + 600.0)
        assert len(overview["positions"]) == 1

    def test_stats(self, portfolio):
        portfolio.execute_trade(SYMBOL, "buy", 4.0, price=100.0)
        portfolio.execute_trade(SYMBOL, "sell", 1.0, price=130.0)  # +30
        portfolio.execute_trade(SYMBOL, "sell", 1.0, price=110.0)  # +10
        portfolio.execute_trade(SYMBOL, "sell", 1.0, price=80.0)  # -20

        stats = portfolio.get_stats()

        assert stats["total_trades"] == 3
        assert stats["winning_trades"] == 2
        assert stats["losing_trades"] == 1
        assert stats["win_rate"] == pytest.approx(2 / 3)
        assert stats["avg_win"] == pytest.approx(20.0)
        assert stats["avg_loss"] == pytest.approx(20.0)
        assert stats["profit_factor"] == pytest.approx(2.0)

    def test_profit_factor_without_losses(self, portfolio):
        portfolio.execute_trade(SYMBOL, "buy", 1.0, price=100.0)
        portfolio.execute_trade(SYMBOL, "sell", 1.0, price=110.0)
        assert portfolio.get_stats()["profit_factor"] == float("inf")

    def test_trades_newest_first(self, portfolio):
        portfolio.execute_trade(SYMBOL, "buy", 1.0, price=100.0)
        portfolio.execute_trade(SYMBOL, "sell", 1.0, price=100.0)

        trades = portfolio.get_trades()
        assert [t.side for t in trades] == ["sell", "buy"]
        assert len(portfolio.get_trades(limit=1)) == 1

    def test_reset(self, portfolio):
        portfolio.update_price(SYMBOL, 100.0)
        portfolio.execute_trade(SYMBOL, "buy", 1.0)
        portfolio.reset()

        assert portfolio.balance == 10_000.0
        assert portfolio.get_positions() == []
        assert portfolio.get_price(SYMBOL) is None
