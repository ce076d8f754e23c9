# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Build contestants from validated configs.
"""

from __future__ import annotations

from typing import Optional

from loguru import logger

from crypto_arena.backtest.config import (
    AccumulatorConfig,
    BacktestRequest,
    ContestantConfig,
    GridConfig,
    ModelAgentConfig,
)
from crypto_arena.backtest.contestants.accumulator import AccumulatorContestant
from crypto_arena.backtest.contestants.base import Contestant
from crypto_arena.backtest.contestants.grid import GridContestant
from crypto_arena.backtest.contestants.model_agent import ModelAgentContestant
from crypto_arena.backtest.oracle import DecisionOracle, HeuristicOracle

SIMULATED_SUFFIX = " (simulated)"


def build_contestant(
    config: ContestantConfig,
    request: BacktestRequest,
    oracle: Optional[DecisionOracle] = None,
) -> Contestant:
    """
    Instantiate the contestant variant for a config.

    Model agents without an oracle fall back to HeuristicOracle and
    get "(simulated)" appended to their name.
    """
    if isinstance(config, AccumulatorConfig):
        return AccumulatorContestant(
            config.id,
            config.display_name,
            request.symbol,
            config.settings,
            initial_capital=request.initial_capital,
        )

    if isinstance(config, GridConfig):
        return GridContestant(
            config.id, config.display_name, request.symbol, config.settings
        )

    if isinstance(config, ModelAgentConfig):
        name = config.display_name
        if oracle is None:
            logger.warning(
                f"No decision oracle configured, {config.id} uses the heuristic fallback"
            )
            oracle = HeuristicOracle()
            name += SIMULATED_SUFFIX
        return ModelAgentContestant(
            config.id, name, request.symbol, config.settings, oracle
        )

    raise TypeError(f"Unsupported contestant config: {type(config).__name__}")
