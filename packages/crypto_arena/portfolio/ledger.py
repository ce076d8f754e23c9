# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Per-contestant portfolio ledger.

Pure accounting for one contestant:
- Tracks balance and long positions
- Applies proportional fees
- Maintains quantity-weighted cost basis
- Records an append-only trade history

No I/O and no logging: the step loop records outcomes.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from crypto_arena.errors import (
    InsufficientBalanceError,
    InsufficientPositionError,
    InvalidActionError,
)
from crypto_arena.portfolio import ledger_math


class TradeSide(Enum):
    """Trade side."""

    BUY = "buy"
    SELL = "sell"


@dataclass
class Position:
    """A long position in a single symbol."""

    symbol: str
    quantity: float
    avg_price: float
    current_price: float = 0.0
    opened_at: Optional[datetime] = None

    @property
    def market_value(self) -> float:
        """Current market value of position."""
        return self.quantity * self.current_price

    @property
    def cost_basis(self) -> float:
        """Total cost basis."""
        return self.quantity * self.avg_price

    @property
    def unrealized_pnl(self) -> float:
        """Unrealized profit/loss at the last marked price."""
        return ledger_math.unrealized_pnl(
            self.avg_price, self.current_price, self.quantity
        )

    @property
    def unrealized_pnl_pct(self) -> float:
        """Unrealized P&L as a fraction of cost basis."""
        if self.cost_basis == 0:
            return 0.0
        return self.unrealized_pnl / self.cost_basis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "quantity": self.quantity,
            "avg_price": self.avg_price,
            "current_price": self.current_price,
            "unrealized_pnl": self.unrealized_pnl,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
        }


@dataclass(frozen=True)
class Trade:
    """A completed, immutable trade record."""

    trade_id: str
    symbol: str
    side: str
    quantity: float
    price: float
    fee: float
    total: float
    timestamp: Optional[datetime]
    realized_pnl: Optional[float] = None  # Set on sells
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "price": self.price,
            "fee": self.fee,
            "total": self.total,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "realized_pnl": self.realized_pnl,
            "notes": self.notes,
        }


@dataclass
class PortfolioState:
    """Snapshot of a ledger. Handed to contestants as a deep copy."""

    initial_capital: float
    balance: float
    total_equity: float
    realized_pnl: float = 0.0
    positions: Dict[str, Position] = field(default_factory=dict)
    trades: List[Trade] = field(default_factory=list)

    def position_quantity(self, symbol: str) -> float:
        """Held quantity, 0.0 when flat."""
        position = self.positions.get(symbol)
        return position.quantity if position else 0.0

    @property
    def positions_value(self) -> float:
        return sum(p.market_value for p in self.positions.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initial_capital": self.initial_capital,
            "balance": self.balance,
            "total_equity": self.total_equity,
            "realized_pnl": self.realized_pnl,
            "positions": {s: p.to_dict() for s, p in self.positions.items()},
            "trade_count": len(self.trades),
        }


class PortfolioLedger:
    """
    Balance, positions and trade history for one contestant.

    Usage:
        ledger = PortfolioLedger(initial_capital=10_000, owner="dca-bot")

        ledger.buy("BTCUSDT", 40_000.0, amount=500.0, fee_rate=0.001)
        ledger.sell("BTCUSDT", 0.005, 42_000.0, fee_rate=0.001)

        equity = ledger.mark_to_market({"BTCUSDT": 41_000.0})
    """

    def __init__(self, initial_capital: float, owner: str = "ledger"):
        if initial_capital <= 0:
            raise InvalidActionError(
                f"initial_capital must be positive, got {initial_capital}"
            )

        self.initial_capital = initial_capital
        self.owner = owner
        self.balance = initial_capital
        self.realized_pnl = 0.0

        self._positions: Dict[str, Position] = {}
        self._trades: List[Trade] = []
        self._trade_seq = 0

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def buy(
        self,
        symbol: str,
        price: float,
        *,
        amount: Optional[float] = None,
        quantity: Optional[float] = None,
        fee_rate: float = 0.0,
        timestamp: Optional[datetime] = None,
        notes: str = "",
    ) -> Trade:
        """
        Buy by notional amount or by quantity.

        Args:
            symbol: Symbol to buy
            price: Fill price
            amount: Notional to spend (quantity = amount / price)
            quantity: Quantity to buy
            fee_rate: Proportional fee rate
            timestamp: Simulation time of the fill
            notes: Free text carried on the trade

        Returns:
            The recorded Trade

        Raises:
            InvalidActionError: sizing is missing, ambiguous or non-positive
            InsufficientBalanceError: cost plus fee exceeds balance
        """
        self._check_price(price)
        if (amount is None) == (quantity is None):
            raise InvalidActionError("buy needs exactly one of amount or quantity")

        if amount is not None:
            if amount <= 0:
                raise InvalidActionError(f"buy amount must be positive, got {amount}")
            qty = ledger_math.fill_quantity(amount, price)
        else:
            if quantity <= 0:
                raise InvalidActionError(
                    f"buy quantity must be positive, got {quantity}"
                )
            qty = quantity

        value = ledger_math.trade_value(price, qty)
        fee = ledger_math.trade_fee(price, qty, fee_rate)
        required = value + fee
        if required > self.balance:
            raise InsufficientBalanceError(required, self.balance)

        self.balance -= required
        self._add_to_position(symbol, qty, price, timestamp)

        return self._record(
            symbol, TradeSide.BUY, qty, price, fee, value, timestamp, None, notes
        )

    def sell(
        self,
        symbol: str,
        quantity: float,
        price: float,
        *,
        fee_rate: float = 0.0,
        timestamp: Optional[datetime] = None,
        notes: str = "",
    ) -> Trade:
        """
        Sell part or all of a position.

        Raises:
            InvalidActionError: non-positive quantity or price
            InsufficientPositionError: quantity exceeds the held quantity
        """
        self._check_price(price)
        if quantity <= 0:
            raise InvalidActionError(f"sell quantity must be positive, got {quantity}")

        position = self._positions.get(symbol)
        held = position.quantity if position else 0.0
        if position is None or quantity > held:
            raise InsufficientPositionError(symbol, quantity, held)

        value = ledger_math.trade_value(price, quantity)
        fee = ledger_math.trade_fee(price, quantity, fee_rate)
        pnl = ledger_math.realized_pnl(position.avg_price, price, quantity, fee)

        self.balance += ledger_math.sell_proceeds(price, quantity, fee)
        self.realized_pnl += pnl

        position.quantity -= quantity
        position.current_price = price
        if ledger_math.is_dust(position.quantity):
            del self._positions[symbol]

        return self._record(
            symbol, TradeSide.SELL, quantity, price, fee, value, timestamp, pnl, notes
        )

    def _add_to_position(
        self,
        symbol: str,
        quantity: float,
        price: float,
        timestamp: Optional[datetime],
    ) -> None:
        """Add to or create a position."""
        if symbol in self._positions:
            pos = self._positions[symbol]
            pos.avg_price = ledger_math.weighted_average_price(
                pos.quantity, pos.avg_price, quantity, price
            )
            pos.quantity += quantity
            pos.current_price = price
        else:
            self._positions[symbol] = Position(
                symbol=symbol,
                quantity=quantity,
                avg_price=price,
                current_price=price,
                opened_at=timestamp,
            )

    def _record(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        price: float,
        fee: float,
        value: float,
        timestamp: Optional[datetime],
        pnl: Optional[float],
        notes: str,
    ) -> Trade:
        self._trade_seq += 1
        trade = Trade(
            trade_id=f"{self.owner}-{self._trade_seq}",
            symbol=symbol,
            side=side.value,
            quantity=quantity,
            price=price,
            fee=fee,
            total=value,
            timestamp=timestamp,
            realized_pnl=pnl,
            notes=notes,
        )
        self._trades.append(trade)
        return trade

    @staticmethod
    def _check_price(price: float) -> None:
        if price <= 0:
            raise InvalidActionError(f"price must be positive, got {price}")

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    def mark_to_market(self, prices: Mapping[str, float]) -> float:
        """
        Update current prices on every position and return total equity.

        Positions without a price in the map keep their last mark.
        """
        for symbol, position in self._positions.items():
            if symbol in prices:
                position.current_price = prices[symbol]
        return self.total_equity

    @property
    def total_equity(self) -> float:
        """Balance plus marked value of all positions."""
        return ledger_math.total_equity(
            self.balance,
            ((p.quantity, p.current_price) for p in self._positions.values()),
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def position(self, symbol: str) -> Optional[Position]:
        """Get position for a symbol."""
        return self._positions.get(symbol)

    def held(self, symbol: str) -> float:
        """Held quantity, 0.0 when flat."""
        position = self._positions.get(symbol)
        return position.quantity if position else 0.0

    @property
    def positions(self) -> Dict[str, Position]:
        return dict(self._positions)

    @property
    def trades(self) -> List[Trade]:
        return list(self._trades)

    @property
    def trade_count(self) -> int:
        return len(self._trades)

    def snapshot(self) -> PortfolioState:
        """Deep-copied state; callers may do anything with it."""
        return PortfolioState(
            initial_capital=self.initial_capital,
            balance=self.balance,
            total_equity=self.total_equity,
            realized_pnl=self.realized_pnl,
            positions=copy.deepcopy(self._positions),
            trades=list(self._trades),
        )

    def __repr__(self) -> str:
        return (
            f"PortfolioLedger(owner={self.owner}, balance={self.balance:,.2f}, "
            f"positions={len(self._positions)}, trades={len(self._trades)})"
        )
