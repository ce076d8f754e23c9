# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Technical indicators over close-price series.

Vectorized pandas implementations used to build decision payloads for
model agents and to aggregate bars for the grid contestant.

Example
-------
>>> closes = pd.Series([100.0, 101.5, 99.8, 102.2])
>>> latest = indicator_snapshot(closes)
>>> latest.rsi
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd


def sma(close: pd.Series, period: int) -> pd.Series:
    """
    Simple moving average.

    Uses whatever history exists while fewer than `period` values are
    available, so early values are never NaN.
    """
    return close.rolling(window=period, min_periods=1).mean()


def ema(close: pd.Series, period: int) -> pd.Series:
    """Exponential moving average (span = period)."""
    return close.ewm(span=period, adjust=False).mean()


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """
    Relative Strength Index with Wilder smoothing.

    RSI = 100 - (100 / (1 + RS)), RS = avg gain / avg loss

    Neutral 50 until `period` changes are available; 100 when there
    are no losses in the smoothing window.
    """
    delta = close.diff()

    gain = delta.where(delta > 0, 0.0)
    loss = (-delta).where(delta < 0, 0.0)

    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False).mean()

    rs = avg_gain / avg_loss.replace(0, np.nan)
    result = 100 - (100 / (1 + rs))
    result = result.where(avg_loss != 0, 100.0)
    result.iloc[: period + 1] = 50.0
    return result


def macd(
    close: pd.Series,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> pd.DataFrame:
    """
    MACD line, signal line and histogram.

    Returns
    -------
    pd.DataFrame
        Columns: macd, signal, histogram
    """
    macd_line = ema(close, fast) - ema(close, slow)
    signal_line = macd_line.ewm(span=signal, adjust=False).mean()
    return pd.DataFrame(
        {
            "macd": macd_line,
            "signal": signal_line,
            "histogram": macd_line - signal_line,
        }
    )


def macd_cross(frame: pd.DataFrame) -> str:
    """
    Detect a crossover on the last bar of a macd() frame.

    Returns "bullish" when MACD crossed above the signal line,
    "bearish" when it crossed below, otherwise "neutral".
    """
    if len(frame) < 2:
        return "neutral"
    prev, curr = frame.iloc[-2], frame.iloc[-1]
    if prev["macd"] <= prev["signal"] and curr["macd"] > curr["signal"]:
        return "bullish"
    if prev["macd"] >= prev["signal"] and curr["macd"] < curr["signal"]:
        return "bearish"
    return "neutral"


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Latest indicator values for one close series."""

    rsi: float
    sma7: float
    sma25: float
    sma50: float
    macd: float
    macd_signal: float
    macd_histogram: float
    macd_trend: str

    @property
    def rsi_state(self) -> str:
        if self.rsi < 30:
            return "oversold"
        if self.rsi > 70:
            return "overbought"
        return "neutral"

    @property
    def ma_alignment(self) -> str:
        if self.sma7 > self.sma25 > self.sma50:
            return "bullish"
        if self.sma7 < self.sma25 < self.sma50:
            return "bearish"
        return "mixed"

    def to_dict(self) -> Dict[str, float]:
        return {
            "rsi": round(self.rsi, 2),
            "sma7": round(self.sma7, 2),
            "sma25": round(self.sma25, 2),
            "sma50": round(self.sma50, 2),
            "macd": round(self.macd, 4),
            "macd_signal": round(self.macd_signal, 4),
            "macd_histogram": round(self.macd_histogram, 4),
            "macd_trend": self.macd_trend,
            "rsi_state": self.rsi_state,
            "ma_alignment": self.ma_alignment,
        }


def indicator_snapshot(close: pd.Series) -> IndicatorSnapshot:
    """Compute the latest RSI(14), SMA(7/25/50) and MACD(12,26,9)."""
    if close.empty:
        raise ValueError("close series is empty")

    macd_frame = macd(close)
    last = macd_frame.iloc[-1]
    return IndicatorSnapshot(
        rsi=float(rsi(close).iloc[-1]),
        sma7=float(sma(close, 7).iloc[-1]),
        sma25=float(sma(close, 25).iloc[-1]),
        sma50=float(sma(close, 50).iloc[-1]),
        macd=float(last["macd"]),
        macd_signal=float(last["signal"]),
        macd_histogram=float(last["histogram"]),
        macd_trend=macd_cross(macd_frame),
    )


def indicator_history(
    close: pd.Series,
    every: int = 60,
    count: int = 24,
    min_history: int = 50,
) -> List[Dict[str, float]]:
    """
    Indicator values sampled every `every` bars, newest last.

    Samples are taken backwards from the last bar; samples with fewer
    than `min_history` prior bars are skipped.
    """
    if close.empty:
        return []

    rsi_series = rsi(close)
    sma7, sma25, sma50 = sma(close, 7), sma(close, 25), sma(close, 50)
    hist = macd(close)["histogram"]

    positions = list(range(len(close) - 1, -1, -every))[:count]
    rows = []
    for pos in reversed(positions):
        if pos < min_history:
            continue
        rows.append(
            {
                "timestamp": close.index[pos],
                "price": round(float(close.iloc[pos]), 2),
                "rsi": round(float(rsi_series.iloc[pos]), 1),
                "sma7": round(float(sma7.iloc[pos]), 2),
                "sma25": round(float(sma25.iloc[pos]), 2),
                "sma50": round(float(sma50.iloc[pos]), 2),
                "macd_histogram": round(float(hist.iloc[pos]), 4),
            }
        )
    return rows


def sample_every(frame: pd.DataFrame, every: int, count: int) -> pd.DataFrame:
    """Every `every`-th row counted back from the last one, at most `count` rows."""
    if frame.empty:
        return frame
    positions = list(range(len(frame) - 1, -1, -every))[:count]
    return frame.iloc[sorted(positions)]


def resample_ohlcv(df: pd.DataFrame, rule: str) -> pd.DataFrame:
    """
    Aggregate OHLCV bars to a coarser interval.

    open=first, high=max, low=min, close=last, volume=sum. Empty
    buckets are dropped.
    """
    if df.empty:
        return df
    agg = df.resample(rule, label="left", closed="left").agg(
        {
            "open": "first",
            "high": "max",
            "low": "min",
            "close": "last",
            "volume": "sum",
        }
    )
    return agg.dropna(subset=["close"])


def window_volatility(highs: Sequence[float], lows: Sequence[float]) -> float:
    """(highest - lowest) / lowest in percent; 0 for empty or zero-low input."""
    if len(highs) == 0 or len(lows) == 0:
        return 0.0
    lowest = float(np.min(lows))
    if lowest == 0:
        return 0.0
    return (float(np.max(highs)) - lowest) / lowest * 100.0
