# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Crypto Arena backtests - deterministic multi-contestant replay.

This module provides the backtest engine that:
- Replays historical bars on a fixed-step simulated clock
- Runs accumulator, grid and model-agent contestants side by side
- Keeps one isolated portfolio ledger per contestant
- Compiles equity curves, trades and decision logs

Usage:
    python -m crypto_arena.backtest.run --request request.json
"""

from crypto_arena.backtest.config import Action, BacktestRequest, Bar
from crypto_arena.backtest.clock import SimulationClock
from crypto_arena.backtest.data_source import DuckDBBarSource, InMemoryBarSource
from crypto_arena.backtest.engine import BacktestEngine, RunState
from crypto_arena.backtest.results import BacktestResult
from crypto_arena.backtest.run_log import RunLog

__all__ = [
    "Action",
    "BacktestRequest",
    "Bar",
    "SimulationClock",
    "DuckDBBarSource",
    "InMemoryBarSource",
    "BacktestEngine",
    "RunState",
    "BacktestResult",
    "RunLog",
]
