# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Market bar sources for the backtest.

Sources return ascending, timestamp-deduplicated bars for a
symbol/interval/time range and never write to their store:
- InMemoryBarSource for tests and pre-loaded frames
- DuckDBBarSource for the kline store

BarSeries turns a loaded bar list into per-tick MarketWindows that
contain nothing dated after the tick.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

import pandas as pd
from loguru import logger

from crypto_arena.backtest.config import Bar
from crypto_arena.errors import DataGapError

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]


class MarketWindowSource(Protocol):
    """Ordered historical bars for a symbol/interval/range."""

    def bars(
        self, symbol: str, interval: str, start: datetime, end: datetime
    ) -> List[Bar]:
        """Bars with start <= timestamp <= end; DataGapError if none."""
        ...


def _to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def bars_from_frame(df: pd.DataFrame) -> List[Bar]:
    """
    Convert an OHLCV DataFrame to sorted, deduplicated Bars.

    Accepts a DatetimeIndex or a `timestamp` column (datetimes or epoch
    milliseconds). Later rows win on duplicate timestamps.
    """
    if df is None or df.empty:
        return []

    frame = df.copy()
    frame.columns = [str(c).lower() for c in frame.columns]

    if "timestamp" in frame.columns:
        ts = frame["timestamp"]
        if pd.api.types.is_numeric_dtype(ts):
            frame["timestamp"] = pd.to_datetime(ts, unit="ms", utc=True)
        else:
            frame["timestamp"] = pd.to_datetime(ts, utc=True)
        frame = frame.set_index("timestamp")
    else:
        frame.index = pd.to_datetime(frame.index, utc=True)

    missing = [c for c in ["open", "high", "low", "close"] if c not in frame.columns]
    if missing:
        raise ValueError(f"Missing OHLC columns: {missing}")
    if "volume" not in frame.columns:
        frame["volume"] = 0.0

    frame = frame[~frame.index.duplicated(keep="last")].sort_index()

    return [
        Bar(
            timestamp=ts.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for ts, row in zip(frame.index, frame[OHLCV_COLUMNS].itertuples(index=False))
    ]


def _dedupe_sorted(bars: Iterable[Bar]) -> List[Bar]:
    by_ts: Dict[datetime, Bar] = {}
    for bar in bars:
        by_ts[bar.timestamp] = bar
    return [by_ts[ts] for ts in sorted(by_ts)]


class InMemoryBarSource:
    """
    Bars held in memory, keyed by (symbol, interval).

    Usage:
        source = InMemoryBarSource()
        source.add("BTCUSDT", "1m", bars)
        window = source.bars("BTCUSDT", "1m", start, end)
    """

    def __init__(self) -> None:
        self._series: Dict[Tuple[str, str], List[Bar]] = {}

    def add(
        self,
        symbol: str,
        interval: str,
        data: Union[pd.DataFrame, Sequence[Bar]],
    ) -> None:
        """Add bars or an OHLCV frame; merged with existing bars."""
        if isinstance(data, pd.DataFrame):
            new = bars_from_frame(data)
        else:
            new = [replace(b, timestamp=_to_utc(b.timestamp)) for b in data]
        key = (symbol, interval)
        self._series[key] = _dedupe_sorted(self._series.get(key, []) + new)

    def bars(
        self, symbol: str, interval: str, start: datetime, end: datetime
    ) -> List[Bar]:
        start, end = _to_utc(start), _to_utc(end)
        selected = [
            b for b in self._series.get((symbol, interval), []) if start <= b.timestamp <= end
        ]
        if not selected:
            raise DataGapError(symbol, interval, start, end)
        return selected


class DuckDBBarSource:
    """
    Read-only source over a DuckDB `klines` table.

    Expected columns: symbol, interval, timestamp (epoch ms), open, high,
    low, close, volume.
    """

    QUERY = """
        SELECT timestamp, open, high, low, close, volume
        FROM {table}
        WHERE symbol = ? AND interval = ? AND timestamp BETWEEN ? AND ?
        ORDER BY timestamp
    """

    def __init__(self, db_path: Union[str, Path], table: str = "klines"):
        self.db_path = str(db_path)
        self.table = table

    def bars(
        self, symbol: str, interval: str, start: datetime, end: datetime
    ) -> List[Bar]:
        import duckdb

        start, end = _to_utc(start), _to_utc(end)
        start_ms = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)

        conn = duckdb.connect(self.db_path, read_only=True)
        try:
            df = conn.execute(
                self.QUERY.format(table=self.table),
                [symbol, interval, start_ms, end_ms],
            ).fetchdf()
        finally:
            conn.close()

        bars = bars_from_frame(df)
        if not bars:
            raise DataGapError(symbol, interval, start, end)

        logger.info(
            f"Loaded {len(bars)} {interval} bars for {symbol} from DuckDB "
            f"({bars[0].timestamp} to {bars[-1].timestamp})"
        )
        return bars

    def __repr__(self) -> str:
        return f"DuckDBBarSource(db={self.db_path}, table={self.table})"


@dataclass(frozen=True)
class MarketWindow:
    """
    Bars visible at one tick: everything with timestamp <= as_of.

    `history` may be the whole loaded series shared across ticks; only
    the first `end` bars are visible. Immutable; contestants may keep
    references across ticks.
    """

    symbol: str
    as_of: datetime
    history: Tuple[Bar, ...]
    end: Optional[int] = None
    timestamps: Optional[Tuple[datetime, ...]] = None

    @property
    def _stop(self) -> int:
        return len(self.history) if self.end is None else self.end

    def __len__(self) -> int:
        return self._stop

    @property
    def bars(self) -> Tuple[Bar, ...]:
        return self.history[: self._stop]

    @property
    def last(self) -> Optional[Bar]:
        stop = self._stop
        return self.history[stop - 1] if stop else None

    @property
    def price(self) -> Optional[float]:
        """Latest visible close."""
        last = self.last
        return last.close if last else None

    def closes(self) -> List[float]:
        return [b.close for b in self.bars]

    def tail(self, n: int) -> Tuple[Bar, ...]:
        stop = self._stop
        return self.history[max(0, stop - n) : stop] if n > 0 else ()

    def since(self, lookback: timedelta) -> Tuple[Bar, ...]:
        """Bars within lookback of as_of."""
        stop = self._stop
        timestamps = self.timestamps
        if timestamps is None:
            timestamps = [b.timestamp for b in self.history[:stop]]
        idx = bisect_right(timestamps, self.as_of - lookback, 0, stop)
        return self.history[idx:stop]

    def to_frame(self, bars: Optional[Sequence[Bar]] = None) -> pd.DataFrame:
        """OHLCV DataFrame indexed by timestamp."""
        rows = self.bars if bars is None else bars
        if not rows:
            return pd.DataFrame(columns=OHLCV_COLUMNS)
        df = pd.DataFrame(
            [[b.open, b.high, b.low, b.close, b.volume] for b in rows],
            columns=OHLCV_COLUMNS,
            index=pd.DatetimeIndex([b.timestamp for b in rows], name="timestamp"),
        )
        return df


class BarSeries:
    """Loaded bars for one run, sliced per tick without lookahead."""

    def __init__(self, symbol: str, bars: Sequence[Bar]):
        self.symbol = symbol
        self._bars = tuple(bars)
        self._timestamps = tuple(b.timestamp for b in self._bars)

    def __len__(self) -> int:
        return len(self._bars)

    @property
    def first_timestamp(self) -> Optional[datetime]:
        return self._timestamps[0] if self._timestamps else None

    @property
    def last_timestamp(self) -> Optional[datetime]:
        return self._timestamps[-1] if self._timestamps else None

    def count_between(self, start: datetime, end: datetime) -> int:
        """Number of bars with start <= timestamp <= end."""
        lo = bisect_right(self._timestamps, start - timedelta(microseconds=1))
        hi = bisect_right(self._timestamps, end)
        return max(0, hi - lo)

    def window_at(self, as_of: datetime) -> MarketWindow:
        """Shares the loaded tuples; no per-tick copy."""
        idx = bisect_right(self._timestamps, as_of)
        return MarketWindow(
            symbol=self.symbol,
            as_of=as_of,
            history=self._bars,
            end=idx,
            timestamps=self._timestamps,
        )
