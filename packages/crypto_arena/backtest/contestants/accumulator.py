# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Fixed-interval accumulation (DCA) contestant.

Buys a fixed notional, or a fraction of the current balance, every
`interval_minutes` of simulated time regardless of price. The first
tick with a visible price buys.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from crypto_arena.backtest.config import (
    AccumulatorSettings,
    Action,
    ActionKind,
    SizeUnit,
)
from crypto_arena.backtest.contestants.base import Contestant
from crypto_arena.backtest.data_source import MarketWindow
from crypto_arena.portfolio.ledger import PortfolioState


class AccumulatorContestant(Contestant):
    """Benchmark accumulator."""

    kind = "accumulator"

    def __init__(
        self,
        contestant_id: str,
        name: str,
        symbol: str,
        settings: AccumulatorSettings,
        initial_capital: float,
    ):
        super().__init__(contestant_id, name, symbol)
        self.percentage = settings.percentage
        self.invest_amount = settings.invest_amount or initial_capital / 20
        self.interval = timedelta(minutes=settings.interval_minutes)
        self._last_invest: Optional[datetime] = None

    async def decide(
        self, window: MarketWindow, portfolio: PortfolioState
    ) -> List[Action]:
        if window.price is None:
            return []

        now = window.as_of
        if self._last_invest is not None and now - self._last_invest < self.interval:
            return []

        # A rejected buy still waits a full interval
        self._last_invest = now

        if self.percentage is not None:
            return [
                Action(
                    kind=ActionKind.BUY,
                    size=self.percentage,
                    unit=SizeUnit.PERCENT,
                    confidence=100.0,
                    reasoning=f"DCA recurring investment ({self.percentage:.0%} of balance)",
                )
            ]

        return [
            Action(
                kind=ActionKind.BUY,
                size=self.invest_amount,
                unit=SizeUnit.NOTIONAL,
                confidence=100.0,
                reasoning=f"DCA recurring investment ({self.invest_amount:,.2f})",
            )
        ]

    def describe(self) -> Dict[str, Any]:
        return {
            **super().describe(),
            "invest_amount": None if self.percentage is not None else self.invest_amount,
            "percentage": self.percentage,
            "interval_minutes": int(self.interval.total_seconds() // 60),
        }
