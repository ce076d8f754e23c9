# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Pivot grid (buy low, sell high) contestant.

Grid levels come from pivot lows/highs on 15-minute bars over the last
`window_days`. Missing levels are synthesized at a fixed spacing from
the nearest existing level. Risk layers, checked in order each tick:
1. Hard stop: price below lowest buy level * (1 - stop loss) sells all
2. Take profit: unrealized gain >= take profit reduces the position by half
3. Grid buys and sells
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from crypto_arena.backtest.config import Action, ActionKind, GridSettings, SizeUnit
from crypto_arena.backtest.contestants.base import Contestant
from crypto_arena.backtest.data_source import MarketWindow
from crypto_arena.backtest.indicators import resample_ohlcv, window_volatility
from crypto_arena.portfolio.ledger import PortfolioState


def find_pivot_lows(lows: Sequence[float], n: int) -> List[int]:
    """Indices whose low is strictly below the n lows on each side."""
    values = np.asarray(lows, dtype=float)
    pivots = []
    for i in range(n, len(values) - n):
        left = values[i - n : i]
        right = values[i + 1 : i + n + 1]
        if values[i] < left.min() and values[i] < right.min():
            pivots.append(i)
    return pivots


def find_pivot_highs(highs: Sequence[float], n: int) -> List[int]:
    """Indices whose high is strictly above the n highs on each side."""
    values = np.asarray(highs, dtype=float)
    pivots = []
    for i in range(n, len(values) - n):
        left = values[i - n : i]
        right = values[i + 1 : i + n + 1]
        if values[i] > left.max() and values[i] > right.max():
            pivots.append(i)
    return pivots


def build_levels(
    pivot_lows: Sequence[float],
    pivot_highs: Sequence[float],
    price: float,
    levels: int,
    spacing: float,
) -> Tuple[List[float], List[float]]:
    """
    Buy levels (ascending) below price and sell levels (ascending) above it.

    Pivots within 0.1% of price are ignored. Shortfalls are filled by
    stepping `spacing` away from the furthest level (or from price).
    """
    buys = sorted(p for p in pivot_lows if p < price * 0.999)
    sells = sorted(p for p in pivot_highs if p > price * 1.001)

    while len(buys) < levels:
        base = buys[0] if buys else price * (1 - spacing)
        buys.insert(0, base * (1 - spacing))
    while len(sells) < levels:
        base = sells[-1] if sells else price * (1 + spacing)
        sells.append(base * (1 + spacing))

    # Keep the levels nearest to price
    return buys[-levels:], sells[:levels]


class GridContestant(Contestant):
    """Pivot grid trader."""

    kind = "grid"

    def __init__(
        self,
        contestant_id: str,
        name: str,
        symbol: str,
        settings: GridSettings,
    ):
        super().__init__(contestant_id, name, symbol)
        self.settings = settings

        self.buy_levels: List[float] = []
        self.sell_levels: List[float] = []
        self.buy_triggered: List[bool] = []
        self.sell_triggered: List[bool] = []
        self.volatility: Optional[float] = None

        self._tick = 0
        self._last_buy_tick: Optional[int] = None

    # ------------------------------------------------------------------
    # Grid maintenance
    # ------------------------------------------------------------------

    def _needs_recalc(self) -> bool:
        if not self.buy_levels and not self.sell_levels:
            return True
        return all(self.buy_triggered) or all(self.sell_triggered)

    def recalculate(self, window: MarketWindow) -> bool:
        """
        Rebuild grid levels from the visible window.

        Returns:
            True if a grid was built, False when history is too short
        """
        s = self.settings
        recent = window.since(timedelta(days=s.window_days))
        bars_15m = resample_ohlcv(window.to_frame(recent), "15min")

        min_bars = 2 * s.pivot_n + 1
        if len(bars_15m) < min_bars:
            logger.debug(
                f"[{self.id}] {len(bars_15m)} 15m bars, need {min_bars} for pivots"
            )
            return False

        highs = bars_15m["high"].to_numpy()
        lows = bars_15m["low"].to_numpy()
        price = float(bars_15m["close"].iloc[-1])

        self.volatility = window_volatility(highs, lows)
        if not s.volatility_min <= self.volatility <= s.volatility_max:
            logger.debug(
                f"[{self.id}] volatility {self.volatility:.2f}% outside "
                f"[{s.volatility_min}%, {s.volatility_max}%], trading anyway"
            )

        pivot_lows = [float(lows[i]) for i in find_pivot_lows(lows, s.pivot_n)]
        pivot_highs = [float(highs[i]) for i in find_pivot_highs(highs, s.pivot_n)]

        self.buy_levels, self.sell_levels = build_levels(
            pivot_lows[-s.grid_levels :],
            pivot_highs[-s.grid_levels :],
            price,
            s.grid_levels,
            s.level_spacing,
        )
        self.buy_triggered = [False] * len(self.buy_levels)
        self.sell_triggered = [False] * len(self.sell_levels)

        logger.debug(
            f"[{self.id}] grid at {price:,.0f}: "
            f"buys={[round(p) for p in self.buy_levels]} "
            f"sells={[round(p) for p in self.sell_levels]}"
        )
        return True

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    async def decide(
        self, window: MarketWindow, portfolio: PortfolioState
    ) -> List[Action]:
        self._tick += 1
        price = window.price
        if price is None:
            return []

        if self._needs_recalc() and not self.recalculate(window):
            return []

        s = self.settings
        position = portfolio.positions.get(self.symbol)
        held = position.quantity if position else 0.0

        # 1. Hard stop
        stop_price = self.buy_levels[0] * (1 - s.stop_loss_percent / 100)
        if price < stop_price:
            if held > 0:
                return [
                    Action(
                        kind=ActionKind.SELL,
                        size=1.0,
                        unit=SizeUnit.PERCENT,
                        reasoning=f"Stop loss: {price:,.0f} < {stop_price:,.0f}",
                    )
                ]
            return []

        # 2. Take profit
        if position is not None and held > 0 and position.avg_price > 0:
            gain_pct = (price - position.avg_price) / position.avg_price * 100
            if gain_pct >= s.take_profit_percent:
                return [
                    Action(
                        kind=ActionKind.REDUCE,
                        size=0.5,
                        unit=SizeUnit.PERCENT,
                        reasoning=f"Take profit: +{gain_pct:.1f}% >= {s.take_profit_percent}%",
                    )
                ]

        actions = self._buy_signals(price, portfolio.balance)
        actions.extend(self._sell_signals(price, held))
        return actions

    def _buy_signals(self, price: float, balance: float) -> List[Action]:
        s = self.settings
        actions = []
        for i, level in enumerate(self.buy_levels):
            if self.buy_triggered[i] or price > level:
                continue
            if (
                self._last_buy_tick is not None
                and self._tick - self._last_buy_tick < s.buy_cooldown_ticks
            ):
                continue

            self.buy_triggered[i] = True
            if balance / s.grid_levels < s.min_notional:
                logger.debug(f"[{self.id}] buy L{i + 1} skipped, balance {balance:,.2f}")
                continue

            self._last_buy_tick = self._tick
            actions.append(
                Action(
                    kind=ActionKind.BUY,
                    size=1.0 / s.grid_levels,
                    unit=SizeUnit.PERCENT,
                    reasoning=f"Grid buy L{i + 1} (level {level:,.0f}, price {price:,.0f})",
                )
            )
        return actions

    def _sell_signals(self, price: float, held: float) -> List[Action]:
        actions = []
        remaining_qty = held
        for i, level in enumerate(self.sell_levels):
            if self.sell_triggered[i] or price < level:
                continue
            if remaining_qty * price < self.settings.min_notional:
                continue

            remaining_levels = self.sell_triggered.count(False)
            qty = remaining_qty / remaining_levels
            remaining_qty -= qty
            self.sell_triggered[i] = True
            actions.append(
                Action(
                    kind=ActionKind.SELL,
                    size=qty,
                    unit=SizeUnit.QUANTITY,
                    reasoning=(
                        f"Grid sell H{i + 1} (level {level:,.0f}, price {price:,.0f}, "
                        f"1/{remaining_levels})"
                    ),
                )
            )
        return actions

    def describe(self) -> Dict[str, Any]:
        return {
            **super().describe(),
            "grid_levels": self.settings.grid_levels,
            "buy_levels": [round(p, 2) for p in self.buy_levels],
            "sell_levels": [round(p, 2) for p in self.sell_levels],
            "volatility_pct": self.volatility,
        }
