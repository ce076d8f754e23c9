# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Live portfolio manager.

Wall-clock counterpart of the backtest ledger. Wraps a PortfolioLedger
(so both share ledger_math) and adds a price cache, a non-raising
trade entry point and trade statistics.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger

from crypto_arena.errors import LedgerError
from crypto_arena.portfolio.ledger import PortfolioLedger, Position, Trade, TradeSide


@dataclass
class TradeOutcome:
    """Result of a live trade request."""

    success: bool
    trade: Optional[Trade] = None
    error: Optional[str] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LivePortfolio:
    """
    Portfolio driven by live prices instead of a simulation clock.

    Usage:
        portfolio = LivePortfolio(initial_capital=10_000)
        portfolio.update_price("BTCUSDT", 43_250.0)

        outcome = portfolio.execute_trade("BTCUSDT", "buy", 0.01)
        if not outcome.success:
            print(outcome.error)
    """

    def __init__(
        self,
        initial_capital: float,
        fee_rate: float = 0.001,
        owner: str = "live",
        now: Callable[[], datetime] = _utc_now,
    ):
        self.fee_rate = fee_rate
        self._ledger = PortfolioLedger(initial_capital, owner=owner)
        self._prices: Dict[str, float] = {}
        self._now = now

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def update_price(self, symbol: str, price: float) -> None:
        """Cache a price and re-mark open positions."""
        self._prices[symbol] = price
        self._ledger.mark_to_market(self._prices)

    def update_prices(self, prices: Mapping[str, float]) -> None:
        """Cache several prices at once."""
        self._prices.update(prices)
        self._ledger.mark_to_market(self._prices)

    def get_price(self, symbol: str) -> Optional[float]:
        return self._prices.get(symbol)

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def execute_trade(
        self,
        symbol: str,
        side: str,
        quantity: float,
        price: Optional[float] = None,
        notes: str = "",
    ) -> TradeOutcome:
        """
        Execute a market trade at the given or cached price.

        Never raises for rejected trades; the reason is returned in
        TradeOutcome.error.
        """
        fill_price = price if price is not None else self._prices.get(symbol)
        if fill_price is None:
            return TradeOutcome(success=False, error=f"No price available for {symbol}")

        try:
            side_enum = TradeSide(side.lower())
        except ValueError:
            return TradeOutcome(success=False, error=f"Unknown side: {side}")

        try:
            if side_enum == TradeSide.BUY:
                trade = self._ledger.buy(
                    symbol,
                    fill_price,
                    quantity=quantity,
                    fee_rate=self.fee_rate,
                    timestamp=self._now(),
                    notes=notes,
                )
            else:
                trade = self._ledger.sell(
                    symbol,
                    quantity,
                    fill_price,
                    fee_rate=self.fee_rate,
                    timestamp=self._now(),
                    notes=notes,
                )
        except LedgerError as e:
            logger.warning(f"Live {side_enum.value} {symbol} rejected: {e}")
            return TradeOutcome(success=False, error=str(e))

        self._prices.setdefault(symbol, fill_price)
        logger.info(
            f"Live {trade.side} {trade.quantity:.6f} {symbol} @ {trade.price:,.2f} "
            f"(fee {trade.fee:.4f})"
        )
        return TradeOutcome(success=True, trade=trade)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @property
    def balance(self) -> float:
        return self._ledger.balance

    @property
    def total_equity(self) -> float:
        return self._ledger.total_equity

    def get_position(self, symbol: str) -> Optional[Position]:
        return self._ledger.position(symbol)

    def get_positions(self) -> List[Position]:
        return list(self._ledger.positions.values())

    def get_trades(self, limit: Optional[int] = None) -> List[Trade]:
        """Trade history, newest first."""
        trades = list(reversed(self._ledger.trades))
        return trades[:limit] if limit else trades

    def get_overview(self) -> Dict[str, Any]:
        """Balance, equity and P&L overview."""
        initial = self._ledger.initial_capital
        unrealized = sum(p.unrealized_pnl for p in self._ledger.positions.values())
        realized = self._ledger.realized_pnl
        total_return = realized + unrealized
        return {
            "initial_capital": initial,
            "balance": self._ledger.balance,
            "total_equity": self._ledger.total_equity,
            "realized_pnl": realized,
            "unrealized_pnl": unrealized,
            "total_return": total_return,
            "total_return_pct": total_return / initial,
            "positions": [p.to_dict() for p in self._ledger.positions.values()],
        }

    def get_stats(self) -> Dict[str, Any]:
        """Statistics over closing trades."""
        closed = [t for t in self._ledger.trades if t.realized_pnl is not None]
        wins = [t.realized_pnl for t in closed if t.realized_pnl > 0]
        losses = [t.realized_pnl for t in closed if t.realized_pnl < 0]

        total_win = sum(wins)
        total_loss = abs(sum(losses))

        if total_loss > 0:
            profit_factor = total_win / total_loss
        else:
            profit_factor = float("inf") if total_win > 0 else 0.0

        return {
            "total_trades": len(closed),
            "winning_trades": len(wins),
            "losing_trades": len(losses),
            "win_rate": len(wins) / len(closed) if closed else 0.0,
            "avg_win": total_win / len(wins) if wins else 0.0,
            "avg_loss": total_loss / len(losses) if losses else 0.0,
            "profit_factor": profit_factor,
        }

    def reset(self) -> None:
        """Start over with the original capital."""
        self._ledger = PortfolioLedger(
            self._ledger.initial_capital, owner=self._ledger.owner
        )
        self._prices.clear()
        logger.info("Live portfolio reset")

    def __repr__(self) -> str:
        return (
            f"LivePortfolio(balance={self.balance:,.2f}, "
            f"equity={self.total_equity:,.2f})"
        )
