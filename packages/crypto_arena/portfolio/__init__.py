# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Portfolio accounting shared by the backtest arena and live trading.
"""

from crypto_arena.portfolio.ledger import (
    PortfolioLedger,
    PortfolioState,
    Position,
    Trade,
    TradeSide,
)
from crypto_arena.portfolio.live import LivePortfolio, TradeOutcome

__all__ = [
    "PortfolioLedger",
    "PortfolioState",
    "Position",
    "Trade",
    "TradeSide",
    "LivePortfolio",
    "TradeOutcome",
]
