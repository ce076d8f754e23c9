# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""Tests for crypto_arena.backtest.engine."""

import asyncio
import json
import math
from datetime import timedelta

import pytest

from crypto_arena.backtest import engine as engine_module
from crypto_arena.backtest.contestants import Contestant
from crypto_arena.backtest.engine import BacktestEngine, RunState
from crypto_arena.backtest.oracle import OracleDecision
from crypto_arena.backtest.run_log import ERROR, INFO, WARNING
from crypto_arena.portfolio import ledger_math

from tests.conftest import (
    SYMBOL,
    T0,
    BrokenOracle,
    ScriptedOracle,
    SlowOracle,
    flat_bars,
    make_source,
    path_bars,
)


def make_request(hours=72, step=60, contestants=None, **overrides):
    request = {
        "start": T0.isoformat(),
        "end": (T0 + timedelta(hours=hours)).isoformat(),
        "symbol": SYMBOL,
        "stepMinutes": step,
        "initialCapital": 10_000,
        "feeRate": 0.001,
        "contestants": contestants or ["dca-bot"],
    }
    request.update(overrides)
    return request


def run(engine):
    return asyncio.run(engine.run())


def wavy_source(days=3):
    """Oscillating 1m bars from one day before T0."""
    return make_source(
        path_bars(
            lambda i: 40_000.0 + 600 * math.sin(i / 50) + 2 * i,
            T0 - timedelta(days=1),
            T0 + timedelta(days=days),
        )
    )


class TestAccumulatorRun:
    """Accumulator end-to-end."""

    def test_three_daily_buys(self, three_day_source, settings):
        """Interval 1440 over 3 days stepped hourly buys exactly 3 times."""
        request = make_request(
            contestants=[
                {
                    "id": "dca",
                    "type": "accumulator",
                    "settings": {"investAmount": 1_000, "intervalMinutes": 1440},
                }
            ]
        )
        engine = BacktestEngine(request, three_day_source, settings=settings)
        result = run(engine)

        dca = result.get("dca")
        fees = 3 * 1_000 * 0.001
        assert result.status == "completed"
        assert engine.state == RunState.COMPLETED
        assert len(dca.trades) == 3
        assert engine.ledgers["dca"].balance == pytest.approx(10_000 - 3 * 1_000 - fees)
        assert len(dca.equity_curve) == 72
        assert dca.summary["final_equity"] == pytest.approx(10_000 - fees)
        assert [t.timestamp for t in dca.trades] == [
            T0 + timedelta(hours=1),
            T0 + timedelta(days=1, hours=1),
            T0 + timedelta(days=2, hours=1),
        ]

    def test_rejected_buy_is_logged_not_fatal(self, three_day_source, settings):
        request = make_request(
            hours=3,
            contestants=[
                {"id": "dca", "type": "dca", "settings": {"investAmount": 50_000}}
            ],
        )
        result = run(BacktestEngine(request, three_day_source, settings=settings))

        assert result.status == "completed"
        assert result.get("dca").trades == []
        kinds = [e.kind for e in result.get("dca").logs if e.level == WARNING]
        assert kinds == ["InsufficientBalanceError"]


class TestDeterminism:
    """Replays of deterministic contestants are identical."""

    def test_replay_is_byte_identical(self, settings):
        request = make_request(hours=48, step=15, contestants=["dca-bot", "grid-bot"])

        first = run(BacktestEngine(request, wavy_source(), settings=settings)).to_dict()
        second = run(BacktestEngine(request, wavy_source(), settings=settings)).to_dict()

        for a, b in zip(first["contestants"], second["contestants"]):
            assert json.dumps(a["equity_curve"]) == json.dumps(b["equity_curve"])
            assert json.dumps(a["trades"]) == json.dumps(b["trades"])

    def test_equity_identity_every_tick(self, settings):
        request = make_request(hours=48, step=15, contestants=["dca-bot", "grid-bot"])
        engine = BacktestEngine(request, wavy_source(), settings=settings)
        violations = []

        def on_tick(timestamp, progress, equities):
            for cid, ledger in engine.ledgers.items():
                marked = ledger.balance + sum(
                    p.quantity * p.current_price for p in ledger.positions.values()
                )
                if not math.isclose(equities[cid], marked, rel_tol=1e-12):
                    violations.append((timestamp, cid))

        engine.set_callbacks(on_tick=on_tick)
        result = run(engine)

        assert result.status == "completed"
        assert violations == []


class TestModelAgentRun:
    """Model agents inside the step loop."""

    def test_timeouts_degrade_to_holds(self, three_day_source, settings):
        """An oracle that always times out yields 0 trades and 3 timeout warnings."""
        request = make_request(
            hours=0.75,
            step=15,
            contestants=["llm-lite"],
            decisionTimeoutSeconds=0.2,
        )
        engine = BacktestEngine(request, three_day_source, oracle=SlowOracle(), settings=settings)
        result = run(engine)

        agent = result.get("llm-lite")
        warnings = [e for e in result.get("llm-lite").logs if e.level == WARNING]
        assert result.status == "completed"
        assert result.summary["ticks"] == 3
        assert agent.trades == []
        assert len(warnings) == 3
        assert {e.kind for e in warnings} == {"DecisionOracleTimeout"}
        assert result.summary["warnings"] == 3

    def test_oracle_failure_is_isolated(self, three_day_source, settings):
        request = make_request(hours=2, contestants=["dca-bot", "llm-indicator"])
        engine = BacktestEngine(request, three_day_source, oracle=BrokenOracle(), settings=settings)
        result = run(engine)

        assert result.status == "completed"
        assert len(result.get("dca-bot").trades) == 1
        kinds = {e.kind for e in result.get("llm-indicator").logs if e.level == WARNING}
        assert kinds == {"DecisionOracleUnavailable"}

    def test_buy_then_full_sell(self, three_day_source, settings):
        oracle = ScriptedOracle(
            [
                OracleDecision(action="BUY", percentage=0.5),
                OracleDecision(action="SELL", percentage=1.0),
            ]
        )
        request = make_request(hours=3, contestants=["llm-lite"])
        engine = BacktestEngine(request, three_day_source, oracle=oracle, settings=settings)
        result = run(engine)

        buy, sell = result.get("llm-lite").trades
        expected_amount = ledger_math.percent_buy_amount(10_000, 0.5, 0.001)
        assert buy.total == pytest.approx(expected_amount)
        assert sell.quantity == buy.quantity
        assert engine.ledgers["llm-lite"].position(SYMBOL) is None

    def test_wait_decisions_are_logged_holds(self, three_day_source, settings):
        request = make_request(hours=3, contestants=["dca-bot", "llm-lite"])
        engine = BacktestEngine(request, three_day_source, oracle=ScriptedOracle(), settings=settings)
        result = run(engine)

        holds = [e for e in result.get("llm-lite").logs if e.kind == "decision"]
        assert result.status == "completed"
        assert result.summary["ticks"] == 3
        assert len(holds) == 3
        assert all(e.level == INFO for e in holds)
        assert holds[0].data["action"]["kind"] == "hold"

    def test_no_lookahead(self, settings):
        """Each decision sees the tick's close, never a later one."""
        bars = path_bars(lambda i: 1_000.0 + i, T0 - timedelta(days=1), T0 + timedelta(hours=4))
        oracle = ScriptedOracle()
        request = make_request(hours=4, contestants=["llm-lite"])
        run(BacktestEngine(request, make_source(bars), oracle=oracle, settings=settings))

        by_time = {b.timestamp: b.close for b in bars}
        assert len(oracle.contexts) == 4
        for context in oracle.contexts:
            assert context.market["price"] == by_time[context.timestamp]

    def test_mixed_bare_and_full_contestants(self, settings):
        request = make_request(
            hours=6,
            contestants=[
                "dca-bot",
                {"id": "agent", "type": "model-agent", "settings": {"intelligenceLevel": "scalper"}},
                {"id": "grid", "type": "grid", "name": "My Grid"},
            ],
        )
        engine = BacktestEngine(request, wavy_source(days=1), settings=settings)
        result = run(engine)

        assert result.status == "completed"
        assert [c.contestant_id for c in result.contestants] == ["dca-bot", "agent", "grid"]
        assert result.get("agent").name.endswith("(simulated)")
        assert result.get("grid").name == "My Grid"
        assert all(len(c.equity_curve) == 6 for c in result.contestants)


class ExplodingContestant(Contestant):
    """Raises from every decide call."""

    kind = "exploding"

    async def decide(self, window, portfolio):
        raise RuntimeError("strategy bug")


class TestContestantIsolation:
    """Unexpected contestant exceptions stay inside that contestant's tick."""

    def test_exploding_contestant_does_not_stop_run(self, three_day_source, settings, monkeypatch):
        build = engine_module.build_contestant

        def build_with_exploder(config, request, oracle=None):
            if config.id == "boom":
                return ExplodingContestant(config.id, "Boom", request.symbol)
            return build(config, request, oracle)

        monkeypatch.setattr(engine_module, "build_contestant", build_with_exploder)
        request = make_request(hours=3, contestants=["dca-bot", {"id": "boom", "type": "grid"}])
        engine = BacktestEngine(request, three_day_source, settings=settings)
        result = run(engine)

        errors = [e for e in result.get("boom").logs if e.level == ERROR]
        assert result.status == "completed"
        assert result.summary["ticks"] == 3
        assert len(result.get("dca-bot").trades) == 1
        assert len(errors) == 3
        assert {e.kind for e in errors} == {"RuntimeError"}
        assert result.get("boom").trades == []
        assert len(result.get("boom").equity_curve) == 3


class TestTermination:
    """Run states and failure modes."""

    def test_invalid_request_fails_before_ticking(self, three_day_source, settings):
        engine = BacktestEngine({"symbol": SYMBOL}, three_day_source, settings=settings)
        result = run(engine)

        assert result.status == "failed"
        assert engine.state == RunState.FAILED
        assert engine.ticks == 0
        assert result.summary["error"]["kind"] == "ConfigValidationError"
        assert result.summary["error"]["errors"]

    def test_no_bars_in_range_fails(self, settings):
        bars = flat_bars(100.0, T0 - timedelta(days=1), T0 - timedelta(hours=1))
        engine = BacktestEngine(make_request(hours=4), make_source(bars), settings=settings)
        result = run(engine)

        assert result.status == "failed"
        assert result.summary["error"]["kind"] == "DataGapError"
        assert result.contestants[0].equity_curve == []

    def test_step_longer_than_range_is_config_error(self, three_day_source, settings):
        engine = BacktestEngine(
            make_request(hours=0.5, step=60), three_day_source, settings=settings
        )
        result = run(engine)

        assert result.status == "failed"
        assert result.summary["error"]["kind"] == "ConfigValidationError"

    def test_unknown_symbol_fails(self, three_day_source, settings):
        engine = BacktestEngine(
            make_request(hours=4, symbol="ETHUSDT"), three_day_source, settings=settings
        )
        assert run(engine).summary["error"]["kind"] == "DataGapError"

    def test_stops_when_bars_run_out(self, settings):
        bars = flat_bars(100.0, T0 - timedelta(days=1), T0 + timedelta(hours=1))
        engine = BacktestEngine(
            make_request(hours=3, step=15), make_source(bars), settings=settings
        )
        result = run(engine)

        assert result.status == "completed"
        assert result.summary["ticks"] == 4

    def test_cancel_after_ticks_is_partial(self, three_day_source, settings):
        engine = BacktestEngine(make_request(hours=24), three_day_source, settings=settings)

        def on_tick(timestamp, progress, equities):
            if engine.ticks == 2:
                engine.cancel()

        engine.set_callbacks(on_tick=on_tick)
        result = run(engine)

        assert result.status == "completed"
        assert result.summary["cancelled"] is True
        assert result.summary["ticks"] == 2
        assert len(result.get("dca-bot").equity_curve) == 2

    def test_cancel_before_first_tick_fails(self, three_day_source, settings):
        engine = BacktestEngine(make_request(hours=24), three_day_source, settings=settings)
        engine.cancel()
        result = run(engine)

        assert result.status == "failed"
        assert engine.ticks == 0

    def test_engine_runs_once(self, three_day_source, settings):
        engine = BacktestEngine(make_request(hours=1), three_day_source, settings=settings)
        run(engine)
        with pytest.raises(RuntimeError):
            run(engine)


class TestObservers:
    """Callbacks and run log subscription."""

    def test_on_trade_callback(self, three_day_source, settings):
        trades = []
        engine = BacktestEngine(make_request(hours=2), three_day_source, settings=settings)
        engine.set_callbacks(on_trade=lambda cid, trade: trades.append((cid, trade.side)))
        run(engine)

        assert trades == [("dca-bot", "buy")]

    def test_subscriber_sees_whole_run(self, three_day_source, settings):
        async def scenario():
            engine = BacktestEngine(
                make_request(hours=2, contestants=["dca-bot", "grid-bot"]),
                three_day_source,
                settings=settings,
            )
            queue = engine.run_log.subscribe()
            await engine.run()

            entries = []
            while True:
                entry = await queue.get()
                if entry is None:
                    return engine, entries
                entries.append(entry)

        engine, entries = asyncio.run(scenario())

        assert entries[0].kind == "run_started"
        assert entries[-1].kind == "run_completed"
        assert [e.seq for e in entries] == list(range(1, len(entries) + 1))
        assert len(entries) == len(engine.run_log)

        # Same-tick entries follow registration order
        tick_one = [e.contestant_id for e in entries if e.timestamp == T0 + timedelta(hours=1)]
        tick_one = [cid for cid in tick_one if cid is not None]
        assert tick_one == sorted(tick_one, key=["dca-bot", "grid-bot"].index)
