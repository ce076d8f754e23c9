# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Simulation clock for the backtest step loop.

Provides a clock abstraction that:
- Steps through simulated time in fixed increments
- Never revisits or goes back in time
- Tracks simulation progress
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, Optional

from loguru import logger


@dataclass(frozen=True)
class TimeRange:
    """A closed range of datetimes."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def __contains__(self, t: datetime) -> bool:
        return self.start <= t <= self.end

    def __repr__(self) -> str:
        return f"TimeRange({self.start.isoformat()} to {self.end.isoformat()})"


class SimulationClock:
    """
    Fixed-step simulated clock.

    The first tick is start + step; the last tick is the latest
    start + k * step that does not pass end.

    Usage:
        clock = SimulationClock(start, end, step_minutes=15)

        for now in clock.iterate():
            print(f"Tick {clock.tick_index}: {now}")
    """

    def __init__(self, start: datetime, end: datetime, step_minutes: int):
        """
        Initialize simulation clock.

        Args:
            start: Simulation start (not itself a tick)
            end: Simulation end (inclusive)
            step_minutes: Minutes advanced per tick
        """
        if step_minutes <= 0:
            raise ValueError("step_minutes must be positive")
        if end <= start:
            raise ValueError("end must be after start")

        self._range = TimeRange(start, end)
        self._step = timedelta(minutes=step_minutes)
        self._current: Optional[datetime] = None
        self._ticks = 0

        logger.debug(
            f"SimulationClock initialized: {self.total_ticks} ticks of "
            f"{step_minutes}m over {self._range}"
        )

    @property
    def now(self) -> Optional[datetime]:
        """Current simulated time, None before the first tick."""
        return self._current

    @property
    def step(self) -> timedelta:
        return self._step

    @property
    def range(self) -> TimeRange:
        return self._range

    @property
    def tick_index(self) -> int:
        """Number of ticks issued so far."""
        return self._ticks

    @property
    def total_ticks(self) -> int:
        """Ticks the clock issues if run to the end."""
        return int(self._range.duration / self._step)

    @property
    def progress(self) -> float:
        """Simulation progress as fraction (0.0 to 1.0)."""
        if self.total_ticks == 0:
            return 1.0
        return min(1.0, self._ticks / self.total_ticks)

    @property
    def exhausted(self) -> bool:
        """True once the next advance would pass end."""
        return self._next_time() > self._range.end

    def _next_time(self) -> datetime:
        base = self._current if self._current is not None else self._range.start
        return base + self._step

    def advance(self) -> bool:
        """
        Advance one step.

        Returns:
            True if advanced, False if the next step would pass end
        """
        next_time = self._next_time()
        if next_time > self._range.end:
            return False
        self._current = next_time
        self._ticks += 1
        return True

    def iterate(self) -> Iterator[datetime]:
        """Yield each tick time in order."""
        while self.advance():
            yield self._current

    def reset(self) -> None:
        self._current = None
        self._ticks = 0

    def __repr__(self) -> str:
        current = self._current.isoformat() if self._current else "not started"
        return (
            f"SimulationClock(current={current}, progress={self.progress:.1%}, "
            f"step={self._step})"
        )
