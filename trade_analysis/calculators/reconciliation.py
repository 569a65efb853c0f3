"""
Reconciliation of reconstructed open positions against exchange-reported ones.

The reconstruction stays the source of truth; this only reports where the
imported history and the exchange disagree, e.g. when fills are missing.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

ZERO = Decimal('0')


@dataclass
class PositionReconciliation:
    symbol: str
    display_symbol: str
    reconstructed_quantity: Decimal  # signed
    exchange_quantity: Decimal       # signed
    reconstructed_entry_price: Optional[Decimal] = None
    exchange_entry_price: Optional[Decimal] = None

    @property
    def quantity_difference(self) -> Decimal:
        return self.exchange_quantity - self.reconstructed_quantity

    @property
    def matched(self) -> bool:
        return self.quantity_difference == ZERO

    def to_dict(self) -> Dict[str, Any]:
        def as_float(value):
            return float(value) if value is not None else None

        return {
            'symbol': self.symbol,
            'display_symbol': self.display_symbol,
            'reconstructed_quantity': float(self.reconstructed_quantity),
            'exchange_quantity': float(self.exchange_quantity),
            'quantity_difference': float(self.quantity_difference),
            'reconstructed_entry_price': as_float(self.reconstructed_entry_price),
            'exchange_entry_price': as_float(self.exchange_entry_price),
            'matched': self.matched,
        }


def reconcile_open_positions(positions: Iterable, exchange_positions: Iterable) -> List[PositionReconciliation]:
    """
    One row per symbol open on either side, sorted by symbol.

    Hedge-mode accounts can report a long and a short on the same symbol;
    their quantities are netted and no single entry price is reported.
    """
    rows: Dict[str, PositionReconciliation] = {}

    for position in positions:
        if not position.is_open:
            continue
        rows[position.symbol] = PositionReconciliation(
            symbol=position.symbol,
            display_symbol=position.display_symbol,
            reconstructed_quantity=position.signed_quantity,
            exchange_quantity=ZERO,
            reconstructed_entry_price=position.entry_price,
        )

    reported: Dict[str, int] = {}
    for exchange_position in exchange_positions:
        if exchange_position.quantity == ZERO:
            continue
        row = rows.get(exchange_position.symbol)
        if row is None:
            row = rows[exchange_position.symbol] = PositionReconciliation(
                symbol=exchange_position.symbol,
                display_symbol=exchange_position.display_symbol,
                reconstructed_quantity=ZERO,
                exchange_quantity=ZERO,
            )
        row.exchange_quantity += exchange_position.quantity
        reported[exchange_position.symbol] = reported.get(exchange_position.symbol, 0) + 1
        row.exchange_entry_price = (
            exchange_position.avg_entry_price if reported[exchange_position.symbol] == 1 else None
        )

    return [rows[symbol] for symbol in sorted(rows)]
