# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Language-model agent contestant.

Builds a decision payload whose breadth depends on the intelligence
level, asks the decision oracle, and maps the reply to an action.
Oracle failures degrade to an implicit hold carrying the error kind.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List

from loguru import logger

from crypto_arena.backtest.config import (
    Action,
    ActionKind,
    ModelAgentSettings,
    SizeUnit,
)
from crypto_arena.backtest.contestants import prompts
from crypto_arena.backtest.contestants.base import Contestant
from crypto_arena.backtest.data_source import MarketWindow
from crypto_arena.backtest.oracle import DecisionContext, DecisionOracle, OracleDecision
from crypto_arena.errors import DecisionOracleError
from crypto_arena.portfolio.ledger import PortfolioState


class ModelAgentContestant(Contestant):
    """
    Oracle-backed contestant.

    Decision mapping:
        BUY     buy `percentage` of balance (holds under min_notional)
        SELL    sell `percentage` of the position
        REDUCE  reduce the position by `percentage`
        WAIT    hold
    """

    kind = "model-agent"

    def __init__(
        self,
        contestant_id: str,
        name: str,
        symbol: str,
        settings: ModelAgentSettings,
        oracle: DecisionOracle,
    ):
        super().__init__(contestant_id, name, symbol)
        self.settings = settings
        self.oracle = oracle
        self.lookback = timedelta(minutes=settings.lookback_minutes)

    @property
    def level(self) -> str:
        return self.settings.level

    def build_context(
        self, window: MarketWindow, portfolio: PortfolioState
    ) -> DecisionContext:
        """Render the payload for this tick's window."""
        frame = window.to_frame(window.since(self.lookback))
        level = self.level

        if level == "indicator":
            prompt, market = prompts.build_indicator(self.symbol, frame, portfolio)
        elif level == "strategy":
            prompt, market = prompts.build_strategy(
                self.symbol,
                frame,
                portfolio,
                full_frame=window.to_frame() if self.settings.include_daily else None,
                include_daily=self.settings.include_daily,
            )
        elif level == "scalper":
            prompt, market = prompts.build_scalper(self.symbol, frame, portfolio)
        else:
            prompt, market = prompts.build_lite(self.symbol, frame, portfolio)

        return DecisionContext(
            contestant_id=self.id,
            symbol=self.symbol,
            timestamp=window.as_of,
            intelligence_level=level,
            system_prompt=prompts.system_prompt(self.settings),
            prompt=prompt,
            market=market,
        )

    async def decide(
        self, window: MarketWindow, portfolio: PortfolioState
    ) -> List[Action]:
        if not window.since(self.lookback):
            return [Action.hold(reasoning="No market data in lookback window")]

        context = self.build_context(window, portfolio)
        try:
            decision = await self.oracle.infer(context, self.level)
        except DecisionOracleError as e:
            logger.debug(f"[{self.id}] oracle failed at {window.as_of}: {e}")
            return [Action.hold(reasoning=str(e), error=e.kind)]

        return [self._to_action(decision, portfolio)]

    def _to_action(
        self, decision: OracleDecision, portfolio: PortfolioState
    ) -> Action:
        common = dict(confidence=decision.confidence, reasoning=decision.reasoning)
        pct = decision.percentage

        if decision.action == "BUY" and pct > 0:
            if portfolio.balance * pct <= self.settings.min_notional:
                return Action.hold(
                    reasoning=f"Buy under minimum notional: {decision.reasoning}"
                )
            return Action(kind=ActionKind.BUY, size=pct, unit=SizeUnit.PERCENT, **common)

        if decision.action in ("SELL", "REDUCE") and pct > 0:
            if portfolio.position_quantity(self.symbol) <= 0:
                return Action.hold(reasoning=f"Nothing to sell: {decision.reasoning}")
            kind = ActionKind.SELL if decision.action == "SELL" else ActionKind.REDUCE
            return Action(kind=kind, size=pct, unit=SizeUnit.PERCENT, **common)

        return Action(kind=ActionKind.HOLD, **common)

    def describe(self) -> Dict[str, Any]:
        return {
            **super().describe(),
            "intelligence_level": self.level,
            "custom_prompt": bool(self.settings.system_prompt),
            "include_daily": self.settings.include_daily,
        }
