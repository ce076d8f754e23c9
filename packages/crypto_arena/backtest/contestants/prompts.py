# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Prompt templates and payload builders per intelligence level.

Each builder returns (prompt, market) where `market` carries the same
numbers in structured form for oracles that do not read text.

Levels:
- lite: hourly-sampled closes and a 24h summary
- indicator: lite + RSI/SMA/MACD now and their hourly history
- strategy: hourly indicators + rule-based signal score (+ daily trend)
- scalper: indicator data + range position and unrealized P&L
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from crypto_arena.backtest.config import ModelAgentSettings
from crypto_arena.backtest.indicators import (
    IndicatorSnapshot,
    indicator_history,
    indicator_snapshot,
    resample_ohlcv,
    sample_every,
    sma,
)
from crypto_arena.portfolio.ledger import PortfolioState

_RESPONSE_FORMAT = """Reply in JSON only:
{
  "decision": "BUY" | "SELL" | "WAIT",
  "percentage": 0.0-1.0,
  "reasoning": "%s",
  "confidence": 0-100
}"""

SYSTEM_PROMPTS: Dict[str, str] = {
    "lite": (
        "You are a crypto trader. Decide based on the price data.\n"
        + _RESPONSE_FORMAT % "short rationale (under 50 words)"
    ),
    "indicator": (
        "You are a crypto trader. Judge the trend from price data and technical "
        "indicators and make a trading decision.\n\n"
        "You receive:\n"
        "1. Current price and 24h price action\n"
        "2. RSI(14): strength, 0-100\n"
        "3. SMA(7/25/50): trend direction\n"
        "4. MACD: histogram and cross signals\n"
        "5. Indicator history over the last 24h\n"
        "6. Account: quote balance, position, total equity\n\n"
        "Decide buy/sell/wait and the position fraction yourself. Goal: maximize profit.\n"
        + _RESPONSE_FORMAT % "analysis and rationale (under 100 words)"
    ),
    "strategy": (
        "You are a chief quant strategist swing trading with multi-timeframe "
        "analysis. Reason strictly in this order:\n"
        "1. Trend: combine daily and hourly indicators (up, down or sideways).\n"
        "2. Position: where price sits in the 24h range and against the averages.\n"
        "3. Signal: RSI extremes, MACD crosses, moving-average alignment.\n"
        "4. Action: buy, sell or wait, with a sensible position fraction.\n\n"
        "Trade with clear trends, fade only confirmed extremes, avoid churning "
        "in ranges.\n"
        + _RESPONSE_FORMAT % "trend -> position -> signal -> action (under 100 words)"
    ),
    "scalper": (
        "You are a high-frequency swing trader capturing small moves.\n"
        "- Take profits early (2-3% unrealized gain is enough to reduce)\n"
        "- Buy dips in tranches, do not chase\n"
        "- Typical sizing: 25% probes, 50% core position\n"
        "- Stay active; many small wins add up\n\n"
        "Example: RSI above 70 near the 24h high with momentum fading ->\n"
        '{"decision": "SELL", "percentage": 0.5, "reasoning": "Overbought at '
        'resistance, take half off", "confidence": 90}\n'
        + _RESPONSE_FORMAT % "analysis and rationale (under 100 words)"
    ),
}

BREVITY_SUFFIX = "\n\nKeep the reasoning field under 100 words."


def system_prompt(settings: ModelAgentSettings) -> str:
    """Custom prompts win over level templates."""
    if settings.system_prompt:
        return settings.system_prompt + BREVITY_SUFFIX
    return SYSTEM_PROMPTS.get(settings.level, SYSTEM_PROMPTS["lite"])


# ----------------------------------------------------------------------
# Shared pieces
# ----------------------------------------------------------------------


def _fmt_time(ts: pd.Timestamp) -> str:
    return ts.strftime("%m-%d %H:%M")


def market_summary(frame: pd.DataFrame) -> Dict[str, float]:
    """24h-style summary of the lookback frame."""
    first_open = float(frame["open"].iloc[0])
    last_close = float(frame["close"].iloc[-1])
    change = (last_close - first_open) / first_open * 100 if first_open else 0.0
    return {
        "price": last_close,
        "change_24h_pct": round(change, 3),
        "high_24h": float(frame["high"].max()),
        "low_24h": float(frame["low"].min()),
        "volume_24h": float(frame["volume"].sum()),
    }


def _price_csv(frame: pd.DataFrame, every: int, count: int, volume: bool = True) -> str:
    sampled = sample_every(frame, every, count)
    header = "T(UTC),P,V" if volume else "T(UTC),P"
    lines = [header]
    for ts, row in sampled.iterrows():
        close = round(float(row["close"]))
        if volume:
            lines.append(f"{_fmt_time(ts)},{close},{round(float(row['volume']))}")
        else:
            lines.append(f"{_fmt_time(ts)},{close}")
    return "\n".join(lines)


def _history_csv(history: List[Dict[str, Any]]) -> str:
    lines = ["T(UTC),P,RSI,SMA7,SMA25,SMA50,MACD_H"]
    for h in history:
        lines.append(
            f"{_fmt_time(h['timestamp'])},{round(h['price'])},{round(h['rsi'])},"
            f"{round(h['sma7'])},{round(h['sma25'])},{round(h['sma50'])},"
            f"{h['macd_histogram']:.2f}"
        )
    return "\n".join(lines)


def _account(symbol: str, portfolio: PortfolioState) -> Dict[str, float]:
    position = portfolio.positions.get(symbol)
    return {
        "balance": portfolio.balance,
        "quantity": position.quantity if position else 0.0,
        "avg_price": position.avg_price if position else 0.0,
        "total_equity": portfolio.total_equity,
    }


def _account_line(symbol: str, account: Dict[str, float]) -> str:
    return (
        f"Quote: {round(account['balance'])}, {symbol}: {account['quantity']:.4f} "
        f"(Entry: {round(account['avg_price'])}), Total: {round(account['total_equity'])}"
    )


def _indicator_block(snap: IndicatorSnapshot) -> str:
    sign = "+" if snap.macd_histogram > 0 else ""
    return (
        f"RSI(14): {round(snap.rsi)} ({snap.rsi_state})\n"
        f"SMA: 7={round(snap.sma7)}, 25={round(snap.sma25)}, 50={round(snap.sma50)} "
        f"({snap.ma_alignment})\n"
        f"MACD: {'bullish' if snap.macd_histogram > 0 else 'bearish'} "
        f"(histogram {sign}{snap.macd_histogram:.2f})"
    )


def strategy_signal(snap: IndicatorSnapshot) -> Tuple[float, List[str], str, int]:
    """
    Rule-based signal score on a 0-10 scale, 5 neutral.

    Returns (score, triggered signals, advice, strength).
    """
    score = 5.0
    signals: List[str] = []

    if snap.rsi < 30:
        score += 2
        signals.append("RSI oversold")
    elif snap.rsi < 40:
        score += 1
        signals.append("RSI low")
    elif snap.rsi > 70:
        score -= 2
        signals.append("RSI overbought")
    elif snap.rsi > 60:
        score -= 1
        signals.append("RSI high")

    if snap.ma_alignment == "bullish":
        score += 1
        signals.append("MAs bullish stack")
    elif snap.ma_alignment == "bearish":
        score -= 1
        signals.append("MAs bearish stack")

    if snap.macd_trend == "bullish":
        score += 1
        signals.append("MACD golden cross")
    elif snap.macd_trend == "bearish":
        score -= 1
        signals.append("MACD death cross")
    elif snap.macd_histogram > 0:
        score += 0.5
    else:
        score -= 0.5

    if score >= 8:
        advice, strength = "strong buy", min(10, round(score))
    elif score >= 6:
        advice, strength = "buy", round(score)
    elif score <= 2:
        advice, strength = "strong sell", min(10, round(10 - score))
    elif score <= 4:
        advice, strength = "sell", round(10 - score)
    else:
        advice, strength = "wait", 5

    return score, signals, advice, strength


# ----------------------------------------------------------------------
# Builders
# ----------------------------------------------------------------------


def build_lite(
    symbol: str, frame: pd.DataFrame, portfolio: PortfolioState
) -> Tuple[str, Dict[str, Any]]:
    summary = market_summary(frame)
    account = _account(symbol, portfolio)
    prompt = (
        f"[{symbol} 24h]\n"
        f"Change: {summary['change_24h_pct']:.1f}%, High: {summary['high_24h']}, "
        f"Low: {summary['low_24h']}, Volume: {round(summary['volume_24h'])}\n\n"
        f"[Market Data (CSV)]\n{_price_csv(frame, 60, 24)}\n\n"
        f"[Account]\n{_account_line(symbol, account)}"
    )
    return prompt, {**summary, "account": account}


def build_indicator(
    symbol: str, frame: pd.DataFrame, portfolio: PortfolioState
) -> Tuple[str, Dict[str, Any]]:
    summary = market_summary(frame)
    account = _account(symbol, portfolio)
    snap = indicator_snapshot(frame["close"])
    history = indicator_history(frame["close"], every=60, count=24)
    prompt = (
        f"[{symbol} 24h]\n"
        f"Change: {summary['change_24h_pct']:.1f}%, High: {round(summary['high_24h'])}, "
        f"Low: {round(summary['low_24h'])}, Volume: {round(summary['volume_24h'])}\n\n"
        f"[Indicators]\n{_indicator_block(snap)}\n\n"
        f"[Price Data (CSV)]\n{_price_csv(frame, 60, 24)}\n\n"
        f"[Indicator History (CSV)]\n{_history_csv(history)}\n\n"
        f"[Account]\n{_account_line(symbol, account)}"
    )
    market = {
        **summary,
        "indicators": snap.to_dict(),
        "indicator_history": [
            {**h, "timestamp": h["timestamp"].isoformat()} for h in history
        ],
        "account": account,
    }
    return prompt, market


def daily_trend(full_frame: pd.DataFrame, price: float, min_days: int = 5) -> Dict[str, Any]:
    """Price against the 5-day average of daily closes, if enough days exist."""
    daily = resample_ohlcv(full_frame, "1D")
    if len(daily) < min_days:
        return {}
    day_sma = float(sma(daily["close"], 5).iloc[-1])
    return {
        "daily_sma5": day_sma,
        "daily_trend": "up" if price > day_sma else "down",
        "days": len(daily),
    }


def build_strategy(
    symbol: str,
    frame: pd.DataFrame,
    portfolio: PortfolioState,
    full_frame: Optional[pd.DataFrame],
    include_daily: bool,
) -> Tuple[str, Dict[str, Any]]:
    summary = market_summary(frame)
    account = _account(symbol, portfolio)
    snap = indicator_snapshot(frame["close"])
    score, signals, advice, strength = strategy_signal(snap)
    price = summary["price"]

    daily = {}
    if include_daily and full_frame is not None:
        daily = daily_trend(full_frame, price)
    daily_section = ""
    if daily:
        daily_section = (
            f"\n[Daily View] daily trend {daily['daily_trend']} "
            f"(5-day avg: {round(daily['daily_sma5'])})\n"
        )

    change = summary["change_24h_pct"]
    prompt = (
        f"[{symbol} Multi-Timeframe]\n"
        f"Price: {round(price)} | 24h: {'+' if change > 0 else ''}{change:.1f}%\n\n"
        f"[Hourly Indicators]\n"
        f"RSI(14): {round(snap.rsi)}/100 | SMA: {round(snap.sma7)}/{round(snap.sma25)}/"
        f"{round(snap.sma50)} | MACD: {snap.macd_histogram:.2f}\n\n"
        f"[Last 12h Prices]\n{_price_csv(frame, 120, 12, volume=False)}\n"
        f"{daily_section}\n"
        f"[Strategy Signal]\n"
        f"Triggers: {', '.join(signals) or 'none'}\n"
        f"Score: {round(score)}/10 -> {advice} (strength {strength}/10)\n\n"
        f"[Account]\n{_account_line(symbol, account)}"
    )
    market = {
        **summary,
        "indicators": snap.to_dict(),
        "signal": {
            "score": score,
            "signals": signals,
            "advice": advice,
            "strength": strength,
        },
        "daily": daily,
        "account": account,
    }
    return prompt, market


def build_scalper(
    symbol: str, frame: pd.DataFrame, portfolio: PortfolioState
) -> Tuple[str, Dict[str, Any]]:
    indicator_prompt, market = build_indicator(symbol, frame, portfolio)
    account = market["account"]
    price = market["price"]
    low, high = market["low_24h"], market["high_24h"]

    avg = account["avg_price"]
    unrealized_pct = (price - avg) / avg * 100 if avg > 0 else 0.0
    range_pct = (price - low) / (high - low) * 100 if high > low else 50.0

    prompt = (
        f"{indicator_prompt}\n\n"
        f"[Position]\n"
        f"24h range: {round(low)} - {round(high)} | position in range: {range_pct:.1f}%\n"
        f"Cost: {round(avg)} | Unrealized: {'+' if unrealized_pct > 0 else ''}"
        f"{unrealized_pct:.2f}%\n\n"
        f"[Angles to consider]\n"
        f"- Are we in profit or loss, and by how much?\n"
        f"- Where is price relative to the 24h high/low?\n"
        f"- Are RSI, moving averages or MACD at extremes?\n"
        f"- Does recent volatility leave room for a trade?"
    )
    market = {
        **market,
        "range_position_pct": round(range_pct, 2),
        "unrealized_pnl_pct": round(unrealized_pct, 3),
    }
    return prompt, market
