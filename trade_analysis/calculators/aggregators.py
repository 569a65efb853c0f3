"""
Aggregators for reconstructed positions.

Follows Single Responsibility Principle (SRP):
Each aggregator has one job - roll positions up along one dimension.
All outputs are projections recomputed from the position list on demand.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from itertools import groupby
from typing import Any, Dict, Iterable, List, Optional

from .interfaces import IAggregator
from .pnl_calculator import unrealized_pnl

ZERO = Decimal('0')
INFINITY = Decimal('Infinity')


def _as_float(value: Decimal):
    if value.is_infinite():
        return "Infinity"
    return float(value)


@dataclass
class StatsSummary:
    """Aggregate performance over a set of positions."""
    total_positions: int = 0
    open_positions: int = 0
    closed_positions: int = 0
    wins: int = 0
    losses: int = 0
    breakeven: int = 0
    win_rate: Decimal = ZERO
    gross_profit: Decimal = ZERO
    gross_loss: Decimal = ZERO
    profit_factor: Decimal = ZERO
    average_win: Decimal = ZERO
    average_loss: Decimal = ZERO
    largest_win: Decimal = ZERO
    largest_loss: Decimal = ZERO
    total_realized_pnl: Decimal = ZERO
    total_fees: Decimal = ZERO
    net_pnl: Decimal = ZERO
    max_drawdown: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with float values for JSON."""
        return {
            'total_positions': self.total_positions,
            'open_positions': self.open_positions,
            'closed_positions': self.closed_positions,
            'wins': self.wins,
            'losses': self.losses,
            'breakeven': self.breakeven,
            'win_rate_percent': round(float(self.win_rate) * 100, 2),
            'gross_profit': float(self.gross_profit),
            'gross_loss': float(self.gross_loss),
            'profit_factor': _as_float(self.profit_factor),
            'average_win': float(self.average_win),
            'average_loss': float(self.average_loss),
            'largest_win': float(self.largest_win),
            'largest_loss': float(self.largest_loss),
            'total_realized_pnl': float(self.total_realized_pnl),
            'total_fees': float(self.total_fees),
            'net_pnl': float(self.net_pnl),
            'max_drawdown': float(self.max_drawdown),
        }


def profit_factor(gross_profit: Decimal, gross_loss: Decimal) -> Decimal:
    """
    Gross profit / gross loss.

    Infinite when there are profits and no losses, zero when there is
    neither.
    """
    if gross_loss > ZERO:
        return gross_profit / gross_loss
    if gross_profit > ZERO:
        return INFINITY
    return ZERO


def summarize(positions: Iterable) -> StatsSummary:
    """Build a StatsSummary; open positions are counted but not scored."""
    positions = list(positions)
    closed = [p for p in positions if not p.is_open]

    winners = [p.realized_pnl for p in closed if p.realized_pnl > ZERO]
    losers = [-p.realized_pnl for p in closed if p.realized_pnl < ZERO]

    gross_profit = sum(winners, ZERO)
    gross_loss = sum(losers, ZERO)
    decided = len(winners) + len(losers)

    total_realized = sum((p.realized_pnl for p in positions), ZERO)
    total_fees = sum((p.total_fees for p in positions), ZERO)

    curve = build_equity_curve(closed)

    return StatsSummary(
        total_positions=len(positions),
        open_positions=len(positions) - len(closed),
        closed_positions=len(closed),
        wins=len(winners),
        losses=len(losers),
        breakeven=len(closed) - decided,
        win_rate=Decimal(len(winners)) / Decimal(decided) if decided else ZERO,
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        profit_factor=profit_factor(gross_profit, gross_loss),
        average_win=gross_profit / len(winners) if winners else ZERO,
        average_loss=gross_loss / len(losers) if losers else ZERO,
        largest_win=max(winners, default=ZERO),
        largest_loss=max(losers, default=ZERO),
        total_realized_pnl=total_realized,
        total_fees=total_fees,
        net_pnl=total_realized - total_fees,
        max_drawdown=max_drawdown(curve.points),
    )


@dataclass
class MonthlyBucket:
    month: str  # YYYY-MM, UTC
    positions_closed: int = 0
    realized_pnl: Decimal = ZERO
    wins: int = 0
    losses: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'positions_closed': self.positions_closed,
            'realized_pnl': float(self.realized_pnl),
            'wins': self.wins,
            'losses': self.losses,
        }


class MonthlyAggregator(IAggregator):
    """
    Buckets closed positions by the UTC calendar month they closed in.

    Useful for monthly PnL bar charts.
    """

    def __init__(self):
        self._buckets: Dict[str, MonthlyBucket] = {}

    def add_position(self, position) -> None:
        if position.is_open:
            return
        month = position.closed_at.astimezone(timezone.utc).strftime('%Y-%m')
        bucket = self._buckets.get(month)
        if bucket is None:
            bucket = self._buckets[month] = MonthlyBucket(month=month)

        bucket.positions_closed += 1
        bucket.realized_pnl += position.realized_pnl
        if position.realized_pnl > ZERO:
            bucket.wins += 1
        elif position.realized_pnl < ZERO:
            bucket.losses += 1

    def get_results(self) -> List[MonthlyBucket]:
        """Buckets in chronological order."""
        return [self._buckets[month] for month in sorted(self._buckets)]


def monthly_buckets(positions: Iterable) -> List[MonthlyBucket]:
    aggregator = MonthlyAggregator()
    for position in positions:
        aggregator.add_position(position)
    return aggregator.get_results()


class SymbolAggregator(IAggregator):
    """
    Per-symbol breakdown of realized PnL.

    Useful for "which markets made or lost money" tables.
    """

    def __init__(self):
        self._rows: Dict[str, Dict[str, Any]] = defaultdict(lambda: {
            'positions': 0,
            'wins': 0,
            'losses': 0,
            'realized_pnl': ZERO,
            'total_fees': ZERO,
        })

    def add_position(self, position) -> None:
        row = self._rows[position.display_symbol]
        row['positions'] += 1
        row['total_fees'] += position.total_fees
        if position.is_open:
            return
        row['realized_pnl'] += position.realized_pnl
        if position.realized_pnl > ZERO:
            row['wins'] += 1
        elif position.realized_pnl < ZERO:
            row['losses'] += 1

    def get_results(self) -> List[Dict[str, Any]]:
        """Rows sorted by absolute realized PnL."""
        results = []
        for symbol, row in self._rows.items():
            results.append({
                'symbol': symbol,
                'positions': row['positions'],
                'wins': row['wins'],
                'losses': row['losses'],
                'realized_pnl': float(row['realized_pnl']),
                'total_fees': float(row['total_fees']),
                'net_pnl': float(row['realized_pnl'] - row['total_fees']),
            })
        results.sort(key=lambda x: abs(x['realized_pnl']), reverse=True)
        return results


@dataclass
class EquityPoint:
    timestamp: datetime
    value: Decimal
    provisional: bool = False
    symbol: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'value': float(self.value),
            'provisional': self.provisional,
            'symbol': self.symbol or None,
        }


@dataclass
class EquityCurve:
    points: List[EquityPoint] = field(default_factory=list)
    provisional: List[EquityPoint] = field(default_factory=list)

    @property
    def final_value(self) -> Decimal:
        return self.points[-1].value if self.points else ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'points': [p.to_dict() for p in self.points],
            'provisional': [p.to_dict() for p in self.provisional],
        }


def build_equity_curve(
    positions: Iterable,
    mark_prices: Optional[Dict[str, Decimal]] = None,
    as_of: Optional[datetime] = None,
) -> EquityCurve:
    """
    Cumulative realized PnL, one point per closed position.

    Every point carries the total over all closes up to and including its
    timestamp, so positions closed at the same instant share one value.

    Open positions with a mark price (keyed by raw symbol) add a provisional
    point at realized-to-date plus their unrealized PnL; those points never
    feed the cumulative series.
    """
    positions = list(positions)
    closed = sorted((p for p in positions if not p.is_open), key=lambda p: p.closed_at)

    curve = EquityCurve()
    cumulative = ZERO
    for closed_at, group in groupby(closed, key=lambda p: p.closed_at):
        group = list(group)
        cumulative += sum((p.realized_pnl for p in group), ZERO)
        for _ in group:
            curve.points.append(EquityPoint(timestamp=closed_at, value=cumulative))

    for position in positions:
        if not position.is_open:
            continue
        mark = (mark_prices or {}).get(position.symbol)
        if mark is None:
            continue
        # Partial closes on the open position are already realized
        value = cumulative + position.realized_pnl + unrealized_pnl(position, mark)
        curve.provisional.append(EquityPoint(
            timestamp=as_of or position.last_activity,
            value=value,
            provisional=True,
            symbol=position.symbol,
        ))

    return curve


def max_drawdown(points: List[EquityPoint]) -> Decimal:
    """Largest peak-to-trough fall of the realized equity series (from zero)."""
    peak = ZERO
    drawdown = ZERO
    for point in points:
        if point.value > peak:
            peak = point.value
        drawdown = max(drawdown, peak - point.value)
    return drawdown
