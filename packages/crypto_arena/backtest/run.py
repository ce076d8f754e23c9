# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
CLI entrypoint for crypto arena backtests.

Model agents call the chat completion oracle when MINIMAX_API_KEY is
set (in the environment or .env); otherwise they run on the heuristic
fallback and are marked "(simulated)".

Usage:
    python -m crypto_arena.backtest.run --request request.json
    python -m crypto_arena.backtest.run --symbol BTCUSDT --start 2024-01-01 --end 2024-01-08
    python -m crypto_arena.backtest.run --request request.json --output result.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from loguru import logger

# Load .env file for MINIMAX_API_KEY
load_dotenv()

from crypto_arena.backtest.data_source import DuckDBBarSource
from crypto_arena.backtest.engine import BacktestEngine
from crypto_arena.backtest.results import BacktestResult
from crypto_arena.settings import ArenaSettings, get_settings


def setup_logging(verbose: bool = False, settings: ArenaSettings = None) -> None:
    """Configure logging."""
    logger.remove()

    level = "DEBUG" if verbose else (settings.log_level if settings else "INFO")
    format_str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(sys.stderr, format=format_str, level=level, colorize=True)

    if settings and settings.log_file:
        logger.add(settings.log_file, format=format_str, level="DEBUG", rotation="10 MB")


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Crypto Arena - Multi-contestant backtest",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run a request file
    python -m crypto_arena.backtest.run --request request.json

    # Build the request from flags
    python -m crypto_arena.backtest.run --symbol BTCUSDT \\
        --start 2024-01-01 --end 2024-01-08 --contestants dca-bot,grid-bot,llm-indicator

    # Save results to JSON
    python -m crypto_arena.backtest.run --request request.json --output result.json
        """,
    )

    parser.add_argument(
        "--request",
        type=str,
        default=None,
        help="Path to a backtest request JSON file",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the DuckDB kline store (default: DATABASE_PATH setting)",
    )

    # Request overrides
    parser.add_argument("--symbol", type=str, default=None, help="Symbol, e.g. BTCUSDT")
    parser.add_argument("--start", type=str, default=None, help="Start time (ISO 8601)")
    parser.add_argument("--end", type=str, default=None, help="End time (ISO 8601)")
    parser.add_argument(
        "--step", type=int, default=None, help="Minutes per tick (default: 15)"
    )
    parser.add_argument(
        "--capital", type=float, default=None, help="Initial capital per contestant"
    )
    parser.add_argument(
        "--contestants",
        type=str,
        default=None,
        help="Comma-separated bare contestant ids (e.g. dca-bot,llm-strategy)",
    )

    # Output
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Path to save results JSON (optional)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args(argv)


def build_request(args: argparse.Namespace, settings: ArenaSettings) -> Dict[str, Any]:
    """Merge the request file (if any) with flag overrides."""
    request: Dict[str, Any] = {}
    if args.request:
        request = json.loads(Path(args.request).read_text())

    request.setdefault("interval", settings.default_interval)
    request.setdefault("stepMinutes", settings.default_step_minutes)
    request.setdefault("initialCapital", settings.default_initial_capital)
    request.setdefault("feeRate", settings.default_fee_rate)

    overrides = {
        "symbol": args.symbol,
        "start": args.start,
        "end": args.end,
        "stepMinutes": args.step,
        "initialCapital": args.capital,
    }
    for key, value in overrides.items():
        if value is not None:
            request[key] = value

    if args.contestants:
        request["contestants"] = [c.strip() for c in args.contestants.split(",") if c.strip()]

    return request


def print_result(result: BacktestResult) -> None:
    """Print backtest results."""
    summary = result.summary

    print("\n" + "=" * 60)
    print("BACKTEST RESULTS")
    print("=" * 60)

    print(f"\nStatus: {result.status}" + (" (cancelled, partial)" if summary.get("cancelled") else ""))
    if "symbol" in summary:
        print(f"   {summary['symbol']} {summary['interval']}: {summary['start']} to {summary['end']}")
    print(f"   Ticks: {summary.get('ticks', 0):,}")
    print(f"   Warnings: {summary.get('warnings', 0):,}")

    if "error" in summary:
        print(f"\nError: {summary['error']['kind']}: {summary['error']['message']}")

    if result.leaderboard:
        print("\nLeaderboard:")
        for row in result.leaderboard:
            print(
                f"   {row['rank']}. {row['name']:<28} "
                f"${row['final_equity']:>12,.2f} "
                f"{row['total_return']:>8.2%} "
                f"{row['trade_count']:>5} trades"
            )

    print("\n" + "=" * 60)


def save_results(result: BacktestResult, output_path: str) -> None:
    """Save results to JSON file."""
    path = Path(output_path)
    path.write_text(json.dumps(result.to_dict(), indent=2))
    print(f"\nResults saved to: {path}")


async def run_backtest(request: Dict[str, Any], db_path: str) -> BacktestResult:
    """Run the backtest."""
    engine = BacktestEngine(request, source=DuckDBBarSource(db_path))

    last_progress = [0.0]

    def on_tick(timestamp, progress, equities):
        if progress - last_progress[0] >= 0.10:
            best = max(equities.values()) if equities else 0.0
            print(f"   Progress: {progress:.0%} | {timestamp.isoformat()} | best equity ${best:,.2f}")
            last_progress[0] = progress

    engine.set_callbacks(on_tick=on_tick)

    print("\nStarting backtest...\n")
    return await engine.run()


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(args.verbose, settings)

    try:
        request = build_request(args, settings)
        result = asyncio.run(run_backtest(request, args.db or settings.database_path))
        print_result(result)

        if args.output:
            save_results(result, args.output)

        return 0 if result.status == "completed" else 1

    except KeyboardInterrupt:
        print("\n\nBacktest interrupted by user")
        return 1
    except Exception as e:
        logger.exception(f"Backtest failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
