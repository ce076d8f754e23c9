# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Cost-basis and equity formulas.

Shared by the backtest PortfolioLedger and the LivePortfolio so that
simulated and live accounting can never drift apart.
"""

from __future__ import annotations

from typing import Iterable, Tuple

# Remaining quantity at or below this is treated as a closed position
DUST_QUANTITY = 1e-12


def fill_quantity(amount: float, price: float) -> float:
    """Quantity bought by spending a notional amount at price."""
    return amount / price


def trade_value(price: float, quantity: float) -> float:
    """Gross value of a fill."""
    return price * quantity


def trade_fee(price: float, quantity: float, fee_rate: float) -> float:
    """Proportional fee charged on the gross value."""
    return trade_value(price, quantity) * fee_rate


def weighted_average_price(
    held_quantity: float,
    held_avg_price: float,
    fill_qty: float,
    fill_price: float,
) -> float:
    """
    Quantity-weighted cost basis after adding a fill.

    avg = (held_qty * held_avg + fill_qty * fill_price) / (held_qty + fill_qty)
    """
    total_qty = held_quantity + fill_qty
    return (held_quantity * held_avg_price + fill_qty * fill_price) / total_qty


def realized_pnl(avg_price: float, price: float, quantity: float, fee: float) -> float:
    """P&L realized by selling quantity at price, net of the sell fee."""
    return (price - avg_price) * quantity - fee


def unrealized_pnl(avg_price: float, current_price: float, quantity: float) -> float:
    """Mark-to-market P&L of an open position."""
    return (current_price - avg_price) * quantity


def sell_proceeds(price: float, quantity: float, fee: float) -> float:
    """Cash credited by a sell: returned cost basis plus realized P&L."""
    return trade_value(price, quantity) - fee


def percent_buy_amount(balance: float, percentage: float, fee_rate: float) -> float:
    """
    Notional to spend so that notional plus fee equals percentage of balance.

    Keeps a 100% buy affordable after fees.
    """
    return balance * percentage / (1.0 + fee_rate)


def total_equity(balance: float, holdings: Iterable[Tuple[float, float]]) -> float:
    """balance + sum(quantity * price) over (quantity, price) holdings."""
    return balance + sum(quantity * price for quantity, price in holdings)


def is_dust(quantity: float) -> bool:
    """True when a remaining quantity should close the position."""
    return quantity <= DUST_QUANTITY
