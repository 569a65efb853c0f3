"""
PnL Calculator — per-fill and per-position profit/loss arithmetic.

Pure functions shared by the position tracker (realized PnL on each closing
fill, weighted average prices) and by reporting (per-position metrics).
Profit factor is only meaningful across positions and lives in the
aggregators.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from .interfaces import IPnLCalculator

ZERO = Decimal('0')


def weighted_average(
    avg_price: Decimal,
    quantity: Decimal,
    fill_price: Decimal,
    fill_quantity: Decimal,
) -> Decimal:
    """new_avg = (old_avg * old_qty + price * size) / (old_qty + size)"""
    total = quantity + fill_quantity
    if total <= ZERO:
        return avg_price
    return (avg_price * quantity + fill_price * fill_quantity) / total


def closing_pnl(
    direction_sign: int,
    entry_price: Decimal,
    exit_price: Decimal,
    quantity: Decimal,
) -> Decimal:
    """
    Realized PnL for closing ``quantity`` of a position.

    Long (+1):  (exit - entry) * qty
    Short (-1): (entry - exit) * qty
    """
    return (exit_price - entry_price) * quantity * direction_sign


def split_commission(commission: int, part: Decimal, whole: Decimal) -> int:
    """
    Share of a fixed-point commission attributable to ``part`` of a fill.

    Callers give the remainder (commission - share) to the other part, so
    the split never loses a unit.
    """
    if whole <= ZERO:
        return commission
    share = Decimal(commission) * part / whole
    return int(share.to_integral_value(rounding=ROUND_HALF_UP))


def unrealized_pnl(position, mark_price: Decimal) -> Decimal:
    """Mark-to-market PnL on the still-open quantity of a position."""
    if position.quantity <= ZERO:
        return ZERO
    return closing_pnl(
        position.direction.sign, position.entry_price, Decimal(str(mark_price)), position.quantity
    )


@dataclass
class PositionMetrics:
    """Derived per-position figures for reporting."""
    realized_pnl: Decimal
    total_fees: Decimal
    net_pnl: Decimal
    return_on_notional: Optional[Decimal]
    holding_duration: Optional[timedelta]
    fee_drag: Optional[Decimal]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'realized_pnl': float(self.realized_pnl),
            'total_fees': float(self.total_fees),
            'net_pnl': float(self.net_pnl),
            'return_on_notional': (
                float(self.return_on_notional) if self.return_on_notional is not None else None
            ),
            'holding_seconds': (
                self.holding_duration.total_seconds() if self.holding_duration is not None else None
            ),
            'fee_drag': float(self.fee_drag) if self.fee_drag is not None else None,
        }


class PnLCalculator(IPnLCalculator):
    """Computes PositionMetrics from a reconstructed position."""

    def calculate(self, position) -> PositionMetrics:
        realized = position.realized_pnl
        fees = position.total_fees

        peak_notional = position.peak_quantity * position.entry_price
        return_on_notional = realized / peak_notional if peak_notional > ZERO else None

        holding = None
        if position.closed_at is not None:
            holding = position.closed_at - position.opened_at

        # Fee drag is undefined when nothing was gained or lost
        fee_drag = fees / abs(realized) if realized != ZERO else None

        return PositionMetrics(
            realized_pnl=realized,
            total_fees=fees,
            net_pnl=realized - fees,
            return_on_notional=return_on_notional,
            holding_duration=holding,
            fee_drag=fee_drag,
        )


def calculate_position_metrics(position) -> PositionMetrics:
    """Convenience function using the default calculator."""
    return PnLCalculator().calculate(position)
