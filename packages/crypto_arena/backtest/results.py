# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Result aggregation.

Pure, post-hoc folding of per-tick equity snapshots, ledger trades and
the run log into per-contestant reports and a run summary. Nothing
here mutates ledgers or engine state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from crypto_arena.backtest.run_log import LogEntry, RunLog
from crypto_arena.portfolio.ledger import PortfolioLedger, Trade

MINUTES_PER_YEAR = 365 * 24 * 60


@dataclass(frozen=True)
class EquitySnapshot:
    """Raw per-tick valuation recorded by the step loop."""

    timestamp: datetime
    equity: float
    balance: float
    positions_value: float
    price: float


@dataclass(frozen=True)
class EquityPoint:
    """One point of an equity curve."""

    timestamp: datetime
    equity: float
    balance: float
    positions_value: float
    price: float
    drawdown: float  # fraction below running peak, >= 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "equity": self.equity,
            "balance": self.balance,
            "positions_value": self.positions_value,
            "price": self.price,
            "drawdown": self.drawdown,
        }


@dataclass
class ContestantResult:
    """Report for one contestant."""

    contestant_id: str
    name: str
    kind: str
    equity_curve: List[EquityPoint]
    trades: List[Trade]
    logs: List[LogEntry]
    summary: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.contestant_id,
            "name": self.name,
            "type": self.kind,
            "equity_curve": [p.to_dict() for p in self.equity_curve],
            "trades": [t.to_dict() for t in self.trades],
            "logs": [e.to_dict() for e in self.logs],
            "summary": self.summary,
        }


@dataclass
class BacktestResult:
    """Final result of a backtest run."""

    status: str
    contestants: List[ContestantResult] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    run_logs: List[LogEntry] = field(default_factory=list)

    def get(self, contestant_id: str) -> Optional[ContestantResult]:
        for result in self.contestants:
            if result.contestant_id == contestant_id:
                return result
        return None

    @property
    def leaderboard(self) -> List[Dict[str, Any]]:
        return self.summary.get("leaderboard", [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "contestants": [c.to_dict() for c in self.contestants],
            "summary": self.summary,
            "run_logs": [e.to_dict() for e in self.run_logs],
        }


# ----------------------------------------------------------------------
# Folding
# ----------------------------------------------------------------------


def build_equity_curve(snapshots: Sequence[EquitySnapshot]) -> List[EquityPoint]:
    """Attach running-peak drawdown to each snapshot."""
    curve = []
    peak = float("-inf")
    for snap in snapshots:
        peak = max(peak, snap.equity)
        drawdown = (peak - snap.equity) / peak if peak > 0 else 0.0
        curve.append(
            EquityPoint(
                timestamp=snap.timestamp,
                equity=snap.equity,
                balance=snap.balance,
                positions_value=snap.positions_value,
                price=snap.price,
                drawdown=drawdown,
            )
        )
    return curve


def sharpe_ratio(equities: Sequence[float], step_minutes: int) -> Optional[float]:
    """Annualized Sharpe from per-tick returns (zero risk-free rate)."""
    if len(equities) < 3:
        return None

    values = np.asarray(equities, dtype=float)
    returns = np.diff(values) / values[:-1]
    periods = MINUTES_PER_YEAR / step_minutes

    std = np.std(returns)
    if std == 0:
        return 0.0
    return float(np.mean(returns) * periods / (std * np.sqrt(periods)))


def summarize(
    initial_capital: float,
    curve: Sequence[EquityPoint],
    trades: Sequence[Trade],
    realized_pnl: float,
    step_minutes: int,
) -> Dict[str, Any]:
    """Summary statistics for one contestant."""
    final_equity = curve[-1].equity if curve else initial_capital
    closing = [t for t in trades if t.realized_pnl is not None]
    winners = [t for t in closing if t.realized_pnl > 0]

    return {
        "initial_capital": initial_capital,
        "final_equity": final_equity,
        "total_return": (final_equity - initial_capital) / initial_capital,
        "trade_count": len(trades),
        "buy_count": sum(1 for t in trades if t.side == "buy"),
        "sell_count": len(closing),
        "realized_pnl": realized_pnl,
        "total_fees": sum(t.fee for t in trades),
        "max_drawdown": max((p.drawdown for p in curve), default=0.0),
        "sharpe_ratio": sharpe_ratio([p.equity for p in curve], step_minutes),
        "win_rate": len(winners) / len(closing) if closing else 0.0,
    }


def compile_result(
    status: str,
    contestants: Sequence[Any],
    ledgers: Mapping[str, PortfolioLedger],
    snapshots: Mapping[str, Sequence[EquitySnapshot]],
    run_log: RunLog,
    step_minutes: int,
    ticks: int,
    cancelled: bool = False,
    error: Optional[Dict[str, Any]] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> BacktestResult:
    """
    Compile the final BacktestResult.

    `contestants` is in registration order; the leaderboard ranks by
    final equity and keeps registration order on ties.
    """
    results = []
    for contestant in contestants:
        ledger = ledgers[contestant.id]
        curve = build_equity_curve(snapshots.get(contestant.id, []))
        trades = ledger.trades
        results.append(
            ContestantResult(
                contestant_id=contestant.id,
                name=contestant.name,
                kind=contestant.kind,
                equity_curve=curve,
                trades=trades,
                logs=run_log.for_contestant(contestant.id),
                summary=summarize(
                    ledger.initial_capital,
                    curve,
                    trades,
                    ledger.realized_pnl,
                    step_minutes,
                ),
            )
        )

    ranked = sorted(results, key=lambda r: -r.summary["final_equity"])
    leaderboard = [
        {
            "rank": i + 1,
            "id": r.contestant_id,
            "name": r.name,
            "final_equity": r.summary["final_equity"],
            "total_return": r.summary["total_return"],
            "trade_count": r.summary["trade_count"],
        }
        for i, r in enumerate(ranked)
    ]

    summary: Dict[str, Any] = {
        **(meta or {}),
        "status": status,
        "ticks": ticks,
        "cancelled": cancelled,
        "partial": cancelled,
        "warnings": len(run_log.warnings()),
        "leaderboard": leaderboard,
    }
    if error is not None:
        summary["error"] = error

    return BacktestResult(
        status=status,
        contestants=results,
        summary=summary,
        run_logs=[e for e in run_log.entries if e.contestant_id is None],
    )
