# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Contestant variants: accumulator, model agent, pivot grid.
"""

from crypto_arena.backtest.contestants.accumulator import AccumulatorContestant
from crypto_arena.backtest.contestants.base import Contestant
from crypto_arena.backtest.contestants.grid import GridContestant
from crypto_arena.backtest.contestants.model_agent import ModelAgentContestant
from crypto_arena.backtest.contestants.registry import build_contestant

__all__ = [
    "Contestant",
    "AccumulatorContestant",
    "GridContestant",
    "ModelAgentContestant",
    "build_contestant",
]
