# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Backtest step loop.

The orchestration layer that:
- Validates the request and resolves contestants
- Loads bars once for [start - warmup, end]
- Advances a fixed-step simulated clock
- Runs every contestant's decide concurrently per tick
- Applies actions to each contestant's own ledger
- Records equity snapshots and the run log
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from loguru import logger

from crypto_arena.backtest.clock import SimulationClock
from crypto_arena.backtest.config import Action, ActionKind, BacktestRequest, SizeUnit
from crypto_arena.backtest.contestants import Contestant, build_contestant
from crypto_arena.backtest.data_source import BarSeries, MarketWindowSource
from crypto_arena.backtest.oracle import ChatCompletionOracle, DecisionOracle
from crypto_arena.backtest.results import BacktestResult, EquitySnapshot, compile_result
from crypto_arena.backtest.run_log import ERROR, INFO, WARNING, RunLog
from crypto_arena.errors import (
    ArenaError,
    ConfigValidationError,
    DataGapError,
    InvalidActionError,
    LedgerError,
)
from crypto_arena.portfolio import ledger_math
from crypto_arena.portfolio.ledger import PortfolioLedger, Trade
from crypto_arena.settings import ArenaSettings, get_settings


class RunState(Enum):
    """Lifecycle of one backtest run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# (level, kind, message, data) waiting to be written in registration order
_Pending = Tuple[str, str, str, Dict[str, Any]]


class BacktestEngine:
    """
    Step loop for one backtest run.

    Orchestrates the run:
    1. Validate request, build contestants and one ledger each
    2. Load bars and initialize the clock
    3. For each tick:
       - Build the no-lookahead window
       - Mark ledgers and gather decisions (each bounded by a timeout)
       - Apply actions in emission order
       - Mark to market and snapshot equity
       - Write run log entries in registration order
    4. Compile the BacktestResult

    Usage:
        engine = BacktestEngine(request, source=DuckDBBarSource("market.db"))
        queue = engine.run_log.subscribe()

        result = await engine.run()
        print(result.leaderboard)
    """

    def __init__(
        self,
        request: Union[BacktestRequest, Dict[str, Any]],
        source: MarketWindowSource,
        oracle: Optional[DecisionOracle] = None,
        settings: Optional[ArenaSettings] = None,
        run_id: str = "run",
    ):
        """
        Initialize backtest engine.

        Args:
            request: BacktestRequest or its wire dict (validated in run())
            source: Bar source for the requested symbol and interval
            oracle: Decision oracle for model agents; when omitted a chat
                completion oracle is built from settings if credentials
                exist, otherwise model agents use the heuristic fallback
            settings: Arena settings (defaults to get_settings())
            run_id: Identifier carried by the run log
        """
        self._raw_request = request
        self.source = source
        self.settings = settings or get_settings()
        self.run_id = run_id
        self.run_log = RunLog(run_id)

        self._oracle = oracle
        self._owns_oracle = False

        self.request: Optional[BacktestRequest] = None
        self.contestants: List[Contestant] = []
        self.ledgers: Dict[str, PortfolioLedger] = {}
        self.clock: Optional[SimulationClock] = None

        self._snapshots: Dict[str, List[EquitySnapshot]] = {}
        self._state = RunState.IDLE
        self._ticks = 0
        self._cancel_requested = False
        self._cancelled = False
        self._error: Optional[ArenaError] = None

        # Callbacks
        self._on_tick: Optional[Callable] = None
        self._on_trade: Optional[Callable] = None

    def set_callbacks(
        self,
        on_tick: Optional[Callable] = None,
        on_trade: Optional[Callable] = None,
    ) -> None:
        """
        Set progress callbacks.

        Args:
            on_tick: Called as on_tick(timestamp, progress, equities)
            on_trade: Called as on_trade(contestant_id, trade)
        """
        self._on_tick = on_tick
        self._on_trade = on_trade

    def cancel(self) -> None:
        """Request cancellation; honoured at the next tick boundary."""
        self._cancel_requested = True

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> BacktestResult:
        """
        Run the backtest to completion.

        Run-fatal errors (ConfigValidationError, DataGapError) do not
        raise; they produce a FAILED result carrying the error.

        Returns:
            BacktestResult
        """
        if self._state != RunState.IDLE:
            raise RuntimeError(f"BacktestEngine {self.run_id} already ran")

        self._state = RunState.RUNNING
        try:
            series = self._prepare()
            await self._loop(series)
        except (ConfigValidationError, DataGapError) as e:
            self._fail(e)
        finally:
            await self._close_oracle()
            if self._state == RunState.RUNNING:
                # Unexpected exception escaping the loop
                self._state = RunState.FAILED
            self._finish_log()

        result = self._compile()
        logger.info(
            f"Backtest {self.run_id} {self._state.value}: {self._ticks} ticks"
            + (" (cancelled)" if self._cancelled else "")
        )
        return result

    def _prepare(self) -> BarSeries:
        """Validate, build contestants and load bars."""
        request = self._raw_request
        if not isinstance(request, BacktestRequest):
            request = BacktestRequest.from_dict(request)
        self.request = request

        oracle = self._oracle
        if oracle is None and self.settings.has_oracle_credentials:
            oracle = ChatCompletionOracle.from_settings(self.settings)
            self._oracle = oracle
            self._owns_oracle = True

        for config in request.contestants:
            contestant = build_contestant(config, request, oracle)
            self.contestants.append(contestant)
            self.ledgers[contestant.id] = PortfolioLedger(
                request.initial_capital, owner=contestant.id
            )
            self._snapshots[contestant.id] = []

        load_start = request.start - timedelta(minutes=request.warmup_minutes)
        bars = self.source.bars(request.symbol, request.interval, load_start, request.end)
        series = BarSeries(request.symbol, bars)
        if series.count_between(request.start, request.end) == 0:
            raise DataGapError(request.symbol, request.interval, request.start, request.end)

        self.clock = SimulationClock(request.start, request.end, request.step_minutes)

        logger.info(
            f"BacktestEngine {self.run_id}: {request.symbol} {request.interval} "
            f"{request.start.isoformat()} -> {request.end.isoformat()}, "
            f"{len(self.contestants)} contestants, {len(series)} bars, "
            f"{self.clock.total_ticks} ticks"
        )
        self.run_log.append(
            request.start,
            None,
            INFO,
            "run_started",
            f"{len(self.contestants)} contestants on {request.symbol}",
            contestants=[c.describe() for c in self.contestants],
            bars=len(series),
        )
        return series

    async def _loop(self, series: BarSeries) -> None:
        request = self.request
        timeout = request.decision_timeout_seconds or self.settings.decision_timeout_seconds

        for now in self.clock.iterate():
            if self._cancel_requested:
                self._cancelled = True
                break

            if series.last_timestamp is not None and now > series.last_timestamp:
                logger.info(f"Bars exhausted at {series.last_timestamp.isoformat()}")
                break

            window = series.window_at(now)
            price = window.price
            if price is None:
                logger.debug(f"No visible bars at {now.isoformat()}, skipping tick")
                continue

            await self._process_tick(now, window, price, timeout)

            if self._ticks % 500 == 0:
                logger.info(f"Progress: {self.progress:.1%} ({self._ticks} ticks)")

        if self._cancelled and self._ticks == 0:
            self._fail(ArenaError("Backtest cancelled before the first tick"))
        elif self._ticks == 0:
            self._fail(
                DataGapError(request.symbol, request.interval, request.start, request.end)
            )
        else:
            self._state = RunState.COMPLETED

    async def _process_tick(
        self, now: datetime, window: Any, price: float, timeout: float
    ) -> None:
        """
        Process a single tick.

        Steps:
        1. Mark ledgers at the tick price
        2. Gather decisions
        3. Apply actions per contestant
        4. Mark to market and snapshot equity
        5. Write run log entries in registration order
        """
        prices = {self.request.symbol: price}

        # 1. Mark
        for ledger in self.ledgers.values():
            ledger.mark_to_market(prices)

        # 2. Decide
        decisions = await asyncio.gather(
            *(self._decide(c, window, timeout) for c in self.contestants)
        )

        # 3. Apply
        pending: Dict[str, List[_Pending]] = {}
        for contestant, (actions, entries) in zip(self.contestants, decisions):
            ledger = self.ledgers[contestant.id]
            for action in actions:
                entries.extend(self._apply(contestant, ledger, action, price, now))
            pending[contestant.id] = entries

        # 4. Snapshot
        equities = {}
        for contestant in self.contestants:
            ledger = self.ledgers[contestant.id]
            equity = ledger.mark_to_market(prices)
            self._snapshots[contestant.id].append(
                EquitySnapshot(
                    timestamp=now,
                    equity=equity,
                    balance=ledger.balance,
                    positions_value=equity - ledger.balance,
                    price=price,
                )
            )
            equities[contestant.id] = equity

        # 5. Log
        for contestant in self.contestants:
            for level, kind, message, data in pending[contestant.id]:
                self.run_log.append(now, contestant.id, level, kind, message, **data)

        self._ticks += 1
        if self._on_tick:
            self._on_tick(now, self.progress, equities)

    async def _decide(
        self, contestant: Contestant, window: Any, timeout: float
    ) -> Tuple[List[Action], List[_Pending]]:
        """Run one decide call; failures become an implicit hold."""
        snapshot = self.ledgers[contestant.id].snapshot()
        try:
            actions = await asyncio.wait_for(contestant.decide(window, snapshot), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{contestant.id}] decision timed out after {timeout}s")
            actions = [
                Action.hold(
                    reasoning=f"Decision timed out after {timeout}s",
                    error="DecisionOracleTimeout",
                )
            ]
        except Exception as e:
            logger.exception(f"[{contestant.id}] decide failed")
            hold = Action.hold(reasoning=str(e), error=type(e).__name__)
            return [], [
                (ERROR, hold.error, f"decide failed: {e}", {"action": hold.to_dict()})
            ]

        if not actions:
            return [], [(INFO, "decision", "no action", {})]

        entries: List[_Pending] = []
        for action in actions:
            data = {"action": action.to_dict()}
            if action.error:
                logger.warning(f"[{contestant.id}] {action.error}: {action.reasoning}")
                entries.append((WARNING, action.error, f"hold: {action.reasoning}", data))
            elif action.is_hold:
                entries.append((INFO, "decision", f"hold: {action.reasoning}", data))
        actions = [a for a in actions if not a.is_hold]
        return actions, entries

    def _apply(
        self,
        contestant: Contestant,
        ledger: PortfolioLedger,
        action: Action,
        price: float,
        now: datetime,
    ) -> List[_Pending]:
        """Apply one non-hold action; ledger errors drop the action."""
        symbol = self.request.symbol
        fee_rate = self.request.fee_rate
        try:
            if action.kind == ActionKind.BUY:
                trade = self._buy(ledger, symbol, action, price, fee_rate, now)
            elif action.kind in (ActionKind.SELL, ActionKind.REDUCE):
                trade = self._sell(ledger, symbol, action, price, fee_rate, now)
            else:
                raise InvalidActionError(f"unsupported action kind {action.kind}")
        except LedgerError as e:
            logger.warning(f"[{contestant.id}] {action.kind.value} rejected: {e}")
            return [
                (
                    WARNING,
                    e.kind,
                    f"{action.kind.value} rejected: {e}",
                    {"action": action.to_dict()},
                )
            ]

        logger.debug(
            f"[{contestant.id}] {trade.side} {trade.quantity:.6f} {symbol} @ {price:,.2f}"
        )
        if self._on_trade:
            self._on_trade(contestant.id, trade)
        return [
            (
                INFO,
                "trade",
                f"{trade.side} {trade.quantity:.6f} @ {price:,.2f}",
                {"action": action.to_dict(), "trade": trade.to_dict()},
            )
        ]

    @staticmethod
    def _buy(
        ledger: PortfolioLedger,
        symbol: str,
        action: Action,
        price: float,
        fee_rate: float,
        now: datetime,
    ) -> Trade:
        kwargs = dict(fee_rate=fee_rate, timestamp=now, notes=action.reasoning)
        if action.unit == SizeUnit.QUANTITY:
            return ledger.buy(symbol, price, quantity=action.size, **kwargs)
        if action.unit == SizeUnit.PERCENT:
            amount = ledger_math.percent_buy_amount(ledger.balance, action.size, fee_rate)
            return ledger.buy(symbol, price, amount=amount, **kwargs)
        return ledger.buy(symbol, price, amount=action.size, **kwargs)

    @staticmethod
    def _sell(
        ledger: PortfolioLedger,
        symbol: str,
        action: Action,
        price: float,
        fee_rate: float,
        now: datetime,
    ) -> Trade:
        if action.unit == SizeUnit.PERCENT:
            if not 0 < action.size <= 1:
                raise InvalidActionError(f"sell percentage out of range: {action.size}")
            held = ledger.held(symbol)
            # Full exits sell the exact held quantity
            quantity = held if action.size >= 1 else held * action.size
        elif action.unit == SizeUnit.QUANTITY:
            quantity = action.size
        else:
            quantity = ledger_math.fill_quantity(action.size, price)
        return ledger.sell(
            symbol,
            quantity,
            price,
            fee_rate=fee_rate,
            timestamp=now,
            notes=action.reasoning,
        )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _fail(self, error: ArenaError) -> None:
        self._state = RunState.FAILED
        self._error = error
        logger.error(f"Backtest {self.run_id} failed: {error.kind}: {error}")

    def _finish_log(self) -> None:
        if self._error is not None:
            self.run_log.append(
                self.clock.now if self.clock else None,
                None,
                ERROR,
                self._error.kind,
                str(self._error),
            )
        elif self._state == RunState.COMPLETED:
            self.run_log.append(
                self.clock.now,
                None,
                WARNING if self._cancelled else INFO,
                "run_cancelled" if self._cancelled else "run_completed",
                f"{self._ticks} ticks processed",
            )
        self.run_log.close()

    async def _close_oracle(self) -> None:
        if self._owns_oracle and self._oracle is not None:
            await self._oracle.aclose()

    def _compile(self) -> BacktestResult:
        error = None
        if self._error is not None:
            error = {"kind": self._error.kind, "message": str(self._error)}
            if isinstance(self._error, ConfigValidationError):
                error["errors"] = self._error.errors

        meta: Dict[str, Any] = {"run_id": self.run_id}
        if self.request is not None:
            meta.update(
                symbol=self.request.symbol,
                interval=self.request.interval,
                start=self.request.start.isoformat(),
                end=self.request.end.isoformat(),
                step_minutes=self.request.step_minutes,
            )

        return compile_result(
            status=self._state.value,
            contestants=self.contestants,
            ledgers=self.ledgers,
            snapshots=self._snapshots,
            run_log=self.run_log,
            step_minutes=self.request.step_minutes if self.request else 1,
            ticks=self._ticks,
            cancelled=self._cancelled,
            error=error,
            meta=meta,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def error(self) -> Optional[ArenaError]:
        return self._error

    @property
    def ticks(self) -> int:
        return self._ticks

    @property
    def progress(self) -> float:
        """Run progress as fraction (0.0 to 1.0)."""
        if self.clock is None:
            return 0.0
        return self.clock.progress

    @property
    def is_running(self) -> bool:
        return self._state == RunState.RUNNING

    def __repr__(self) -> str:
        return (
            f"BacktestEngine(run_id={self.run_id}, state={self._state.value}, "
            f"ticks={self._ticks}, contestants={len(self.contestants)})"
        )
