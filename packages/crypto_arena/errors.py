# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Error taxonomy for the arena.

Run-fatal errors (raised before the first tick):
- ConfigValidationError
- DataGapError

Action-level errors (action dropped, tick continues):
- InsufficientBalanceError
- InsufficientPositionError
- InvalidActionError

Decision-level errors (contestant degrades to an implicit hold):
- DecisionOracleTimeout
- DecisionOracleUnavailable
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ArenaError(Exception):
    """Base class for all arena errors."""

    @property
    def kind(self) -> str:
        """Error kind as recorded in run logs."""
        return type(self).__name__


class ConfigValidationError(ArenaError):
    """Backtest request or contestant config is malformed."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class DataGapError(ArenaError):
    """The requested range has no bar coverage at all."""

    def __init__(self, symbol: str, interval: str, start: Any, end: Any):
        super().__init__(
            f"No {interval} bars for {symbol} between {start} and {end}"
        )
        self.symbol = symbol
        self.interval = interval
        self.start = start
        self.end = end


class LedgerError(ArenaError):
    """An individual trade request cannot be applied to a ledger."""


class InsufficientBalanceError(LedgerError):
    """A buy would drive the balance negative."""

    def __init__(self, required: float, available: float):
        super().__init__(
            f"Insufficient balance: need {required:,.2f}, have {available:,.2f}"
        )
        self.required = required
        self.available = available


class InsufficientPositionError(LedgerError):
    """A sell asks for more than the held quantity."""

    def __init__(self, symbol: str, requested: float, held: float):
        super().__init__(
            f"Insufficient position in {symbol}: need {requested:.8f}, have {held:.8f}"
        )
        self.symbol = symbol
        self.requested = requested
        self.held = held


class InvalidActionError(LedgerError):
    """Non-positive size or price, or an ambiguous sizing request."""


class DecisionOracleError(ArenaError):
    """A decision oracle call failed."""


class DecisionOracleTimeout(DecisionOracleError):
    """The decision call did not resolve within its timeout."""


class DecisionOracleUnavailable(DecisionOracleError):
    """Transport failure, HTTP error or unparseable oracle response."""
