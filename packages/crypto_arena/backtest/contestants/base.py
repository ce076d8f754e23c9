# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Contestant decision contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from crypto_arena.backtest.config import Action
from crypto_arena.backtest.data_source import MarketWindow
from crypto_arena.portfolio.ledger import PortfolioState


class Contestant(ABC):
    """
    One strategy instance in a backtest.

    Configuration is bound at construction. `decide` receives the
    no-lookahead window and a deep-copied snapshot of the contestant's
    own portfolio, and returns actions in the order they should apply.
    Implementations must not mutate their inputs; internal state (e.g.
    the last investment time) is their own business.
    """

    kind: str = "contestant"

    def __init__(self, contestant_id: str, name: str, symbol: str):
        self.id = contestant_id
        self.name = name
        self.symbol = symbol

    @abstractmethod
    async def decide(
        self, window: MarketWindow, portfolio: PortfolioState
    ) -> List[Action]:
        """Zero or more actions for this tick."""

    def describe(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "type": self.kind}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id}, name={self.name})"
