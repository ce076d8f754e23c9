# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Root pytest configuration for Crypto Arena tests.

Provides:
- Synthetic bar generators (flat, linear, custom price paths)
- In-memory bar source fixtures
- Settings without oracle credentials
- Fake decision oracles
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

import pytest

from crypto_arena.backtest.config import Bar
from crypto_arena.backtest.data_source import InMemoryBarSource
from crypto_arena.backtest.oracle import DecisionContext, OracleDecision
from crypto_arena.errors import DecisionOracleUnavailable
from crypto_arena.settings import ArenaSettings

SYMBOL = "BTCUSDT"
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")


# =============================================================================
# Synthetic Bar Generators
# =============================================================================


def make_bars(
    prices: Sequence[float],
    start: datetime = T0,
    minutes: int = 1,
    spread_pct: float = 0.1,
) -> List[Bar]:
    """
    Build bars from a close-price path.

    Args:
        prices: Close price per bar
        start: Timestamp of the first bar
        minutes: Spacing between bars
        spread_pct: High/low distance from close in percent
    """
    bars = []
    prev = prices[0]
    for i, close in enumerate(prices):
        spread = close * spread_pct / 100
        bars.append(
            Bar(
                timestamp=start + timedelta(minutes=i * minutes),
                open=prev,
                high=max(prev, close) + spread,
                low=min(prev, close) - spread,
                close=close,
                volume=100.0 + i % 7,
            )
        )
        prev = close
    return bars


def flat_bars(
    price: float,
    start: datetime,
    end: datetime,
    minutes: int = 1,
) -> List[Bar]:
    """Constant-price bars covering [start, end] inclusive."""
    count = int((end - start) / timedelta(minutes=minutes)) + 1
    return make_bars([price] * count, start=start, minutes=minutes, spread_pct=0.0)


def path_bars(
    price_at: Callable[[int], float],
    start: datetime,
    end: datetime,
    minutes: int = 1,
) -> List[Bar]:
    """Bars covering [start, end] whose close is price_at(bar index)."""
    count = int((end - start) / timedelta(minutes=minutes)) + 1
    return make_bars([price_at(i) for i in range(count)], start=start, minutes=minutes)


def make_source(bars: Sequence[Bar], symbol: str = SYMBOL, interval: str = "1m"):
    source = InMemoryBarSource()
    source.add(symbol, interval, bars)
    return source


# =============================================================================
# Fake Oracles
# =============================================================================


class ScriptedOracle:
    """Returns queued decisions in order, then WAIT."""

    def __init__(self, decisions: Optional[List[OracleDecision]] = None):
        self.decisions = list(decisions or [])
        self.contexts: List[DecisionContext] = []

    async def infer(self, context: DecisionContext, intelligence_level: str) -> OracleDecision:
        self.contexts.append(context)
        if self.decisions:
            return self.decisions.pop(0)
        return OracleDecision(action="WAIT", reasoning="nothing queued")


class SlowOracle:
    """Never answers within any realistic timeout."""

    def __init__(self, delay: float = 10.0):
        self.delay = delay
        self.calls = 0

    async def infer(self, context: DecisionContext, intelligence_level: str) -> OracleDecision:
        self.calls += 1
        await asyncio.sleep(self.delay)
        return OracleDecision(action="BUY", percentage=0.5)


class BrokenOracle:
    """Always unavailable."""

    async def infer(self, context: DecisionContext, intelligence_level: str) -> OracleDecision:
        raise DecisionOracleUnavailable("backend down")


# =============================================================================
# Common Fixtures
# =============================================================================


@pytest.fixture
def settings() -> ArenaSettings:
    """Settings with no oracle credentials and a short decision timeout."""
    return ArenaSettings(
        _env_file=None,
        minimax_api_key=None,
        decision_timeout_seconds=5.0,
    )


@pytest.fixture
def three_day_source():
    """Flat 1m bars at 40,000 from one day before T0 through T0 + 3 days."""
    return make_source(flat_bars(40_000.0, T0 - timedelta(days=1), T0 + timedelta(days=3)))
