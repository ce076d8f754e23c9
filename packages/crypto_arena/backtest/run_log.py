# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Run-scoped structured log.

One RunLog per backtest run. Entries are append-only with strictly
increasing sequence numbers; the step loop is the only writer.
Subscribers receive every entry on their own asyncio.Queue followed by
a None sentinel when the run closes the log.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from loguru import logger

INFO = "info"
WARNING = "warning"
ERROR = "error"


@dataclass(frozen=True)
class LogEntry:
    """One structured log record."""

    seq: int
    timestamp: Optional[datetime]  # simulated tick time
    contestant_id: Optional[str]  # None for run-level entries
    level: str
    kind: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "contestant_id": self.contestant_id,
            "level": self.level,
            "kind": self.kind,
            "message": self.message,
            "data": self.data,
        }


class RunLog:
    """
    Append-only log owned by a single run.

    Usage:
        log = RunLog("run-1")
        queue = log.subscribe()

        log.append(ts, "dca-bot", INFO, "tick", "buy 0.01 @ 42,000")
        entry = await queue.get()
    """

    def __init__(self, run_id: str = "run"):
        self.run_id = run_id
        self._entries: List[LogEntry] = []
        self._subscribers: List[asyncio.Queue] = []
        self._closed = False

    def append(
        self,
        timestamp: Optional[datetime],
        contestant_id: Optional[str],
        level: str,
        kind: str,
        message: str,
        **data: Any,
    ) -> LogEntry:
        if self._closed:
            raise RuntimeError(f"RunLog {self.run_id} is closed")

        entry = LogEntry(
            seq=len(self._entries) + 1,
            timestamp=timestamp,
            contestant_id=contestant_id,
            level=level,
            kind=kind,
            message=message,
            data=data,
        )
        self._entries.append(entry)

        for queue in self._subscribers:
            queue.put_nowait(entry)
        return entry

    def subscribe(self) -> asyncio.Queue:
        """
        Live feed of entries appended from now on.

        Already-closed logs return a queue holding only the sentinel.
        """
        queue: asyncio.Queue = asyncio.Queue()
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return queue

    def close(self) -> None:
        """End of run: notify subscribers and stop accepting entries."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)
        self._subscribers.clear()
        logger.debug(f"RunLog {self.run_id} closed with {len(self._entries)} entries")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def entries(self) -> Tuple[LogEntry, ...]:
        return tuple(self._entries)

    def for_contestant(self, contestant_id: str) -> List[LogEntry]:
        return [e for e in self._entries if e.contestant_id == contestant_id]

    def by_kind(self, kind: str) -> List[LogEntry]:
        return [e for e in self._entries if e.kind == kind]

    def warnings(self) -> List[LogEntry]:
        return [e for e in self._entries if e.level in (WARNING, ERROR)]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(list(self._entries))

    def __repr__(self) -> str:
        return f"RunLog(run_id={self.run_id}, entries={len(self._entries)}, closed={self._closed})"
