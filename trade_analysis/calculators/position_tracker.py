"""
Position Tracker — flat-to-flat position reconstruction engine.

Pure logic, no Django dependencies. Replays one symbol's executions in
timestamp order, tracking signed exposure with a weighted average entry
price. A position opens when exposure leaves zero and is finalized the
instant it returns to exactly zero; a fill that crosses zero closes the
current position and opens an opposite one with the residual quantity.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from src.exchanges.models import Exchange, Side, UnifiedExecution, from_fixed_point

from .errors import DataIntegrityError, StateInvariantError
from .interfaces import IPositionTracker
from .pnl_calculator import closing_pnl, split_commission, weighted_average

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


class Direction(Enum):
    LONG = 'Long'
    SHORT = 'Short'

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @classmethod
    def from_side(cls, side: Side) -> 'Direction':
        return cls.LONG if side is Side.BUY else cls.SHORT


class FillRole(Enum):
    OPEN = 'OPEN'
    INCREASE = 'INCREASE'
    REDUCE = 'REDUCE'
    CLOSE = 'CLOSE'
    FUNDING = 'FUNDING'


@dataclass
class PositionFill:
    """The part of an execution absorbed by one position."""
    execution: UnifiedExecution
    quantity: Decimal     # absorbed quantity (0 for funding)
    commission: int       # fixed-point share of the execution's commission
    role: FillRole
    realized_pnl: Decimal = ZERO

    @property
    def fee(self) -> Decimal:
        return from_fixed_point(self.commission)

    @property
    def is_partial(self) -> bool:
        """True when the execution was split across two positions."""
        return self.role is not FillRole.FUNDING and self.quantity != self.execution.quantity


@dataclass
class Position:
    """A contiguous, direction-fixed holding period on one symbol."""
    symbol: str
    display_symbol: str
    exchange: Exchange
    direction: Direction
    opened_at: datetime
    entry_price: Decimal = ZERO
    quantity: Decimal = ZERO
    peak_quantity: Decimal = ZERO
    closed_at: Optional[datetime] = None
    exit_price: Optional[Decimal] = None
    closed_quantity: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    total_fees: Decimal = ZERO
    funding_fees: Decimal = ZERO
    exchange_reported_pnl: Optional[Decimal] = None
    fills: List[PositionFill] = field(default_factory=list)
    finalized: bool = False

    @property
    def is_open(self) -> bool:
        return not self.finalized

    @property
    def net_pnl(self) -> Decimal:
        return self.realized_pnl - self.total_fees

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity * self.direction.sign

    @property
    def execution_ids(self) -> List[str]:
        return [f.execution.exec_id for f in self.fills]

    @property
    def last_activity(self) -> datetime:
        return self.fills[-1].execution.timestamp if self.fills else self.opened_at

    def ensure_mutable(self) -> None:
        if self.finalized:
            raise StateInvariantError(
                f"{self.symbol} position opened {self.opened_at.isoformat()} is already finalized"
            )

    def finalize(self, closed_at: datetime) -> None:
        """Freeze the position once its quantity is back to exactly zero."""
        self.ensure_mutable()
        if self.quantity != ZERO:
            raise StateInvariantError(
                f"{self.symbol} position cannot close with {self.quantity} still open"
            )
        self.closed_at = closed_at
        self.finalized = True


@dataclass
class ReconstructionWarning:
    """A skipped execution, reported back to the caller."""
    exec_id: str
    symbol: str
    reason: str
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'exec_id': self.exec_id,
            'symbol': self.symbol,
            'reason': self.reason,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass
class ReconstructionResult:
    positions: List[Position] = field(default_factory=list)
    unattributed: List[UnifiedExecution] = field(default_factory=list)
    warnings: List[ReconstructionWarning] = field(default_factory=list)

    @property
    def closed_positions(self) -> List[Position]:
        return [p for p in self.positions if not p.is_open]

    @property
    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.is_open]

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def extend(self, other: 'ReconstructionResult') -> None:
        self.positions.extend(other.positions)
        self.unattributed.extend(other.unattributed)
        self.warnings.extend(other.warnings)


@dataclass
class _SymbolState:
    """Per-run accumulator; never shared between runs."""
    symbol: Optional[str] = None
    position: Optional[Position] = None
    last_timestamp: Optional[datetime] = None
    seen_ids: Set[str] = field(default_factory=set)
    result: ReconstructionResult = field(default_factory=ReconstructionResult)


class PositionTracker(IPositionTracker):
    """
    Reconstructs positions for a single symbol.

    Executions must already be sorted by timestamp (ties in input order).
    Malformed executions are skipped with a warning; invariant violations
    raise StateInvariantError.
    """

    def process_executions(self, executions: Iterable[UnifiedExecution]) -> ReconstructionResult:
        state = _SymbolState()

        for execution in executions:
            try:
                self._validate(execution, state)
            except DataIntegrityError as e:
                self._record_warning(e, state)
                continue
            self._process_execution(execution, state)

        return state.result

    def _validate(self, execution: UnifiedExecution, state: _SymbolState) -> None:
        if state.symbol is None:
            state.symbol = execution.symbol
        elif execution.symbol != state.symbol:
            raise DataIntegrityError(
                execution, f"symbol {execution.symbol} in {state.symbol} stream"
            )

        if execution.timestamp is None:
            raise DataIntegrityError(execution, "missing timestamp")
        if state.last_timestamp is not None and execution.timestamp < state.last_timestamp:
            raise DataIntegrityError(
                execution,
                f"out of order: {execution.timestamp.isoformat()} "
                f"before {state.last_timestamp.isoformat()}",
            )
        if execution.exec_id in state.seen_ids:
            raise DataIntegrityError(execution, "duplicate execution id")

        if execution.is_trade:
            if execution.quantity is None or execution.quantity <= ZERO:
                raise DataIntegrityError(execution, f"non-positive quantity {execution.quantity}")
            if execution.price is None or execution.price <= ZERO:
                raise DataIntegrityError(execution, "missing price on trade fill")

    def _record_warning(self, error: DataIntegrityError, state: _SymbolState) -> None:
        execution = error.execution
        logger.warning(f"Skipped execution {execution.exec_id} on {execution.symbol}: {error.reason}")
        state.result.warnings.append(ReconstructionWarning(
            exec_id=execution.exec_id,
            symbol=execution.symbol,
            reason=error.reason,
            timestamp=execution.timestamp,
        ))

    def _process_execution(self, execution: UnifiedExecution, state: _SymbolState) -> None:
        state.seen_ids.add(execution.exec_id)
        state.last_timestamp = execution.timestamp

        if execution.is_trade:
            self._handle_trade(execution, state)
        else:
            self._handle_funding(execution, state)

    def _handle_trade(self, execution: UnifiedExecution, state: _SymbolState) -> None:
        pos = state.position

        if pos is None:
            self._open_position(execution, execution.quantity, execution.commission, state)
            return

        if Direction.from_side(execution.side) is pos.direction:
            self._increase(pos, execution)
            return

        if execution.quantity <= pos.quantity:
            self._reduce(pos, execution, execution.quantity, execution.commission, state)
            return

        # Over-fill: close what is open, then open the opposite side with
        # the residual at the same price.
        closed_qty = pos.quantity
        residual = execution.quantity - closed_qty
        closing_commission = split_commission(execution.commission, closed_qty, execution.quantity)
        self._reduce(pos, execution, closed_qty, closing_commission, state)
        self._open_position(
            execution, residual, execution.commission - closing_commission, state
        )

    def _open_position(
        self,
        execution: UnifiedExecution,
        quantity: Decimal,
        commission: int,
        state: _SymbolState,
    ) -> Position:
        pos = Position(
            symbol=execution.symbol,
            display_symbol=execution.display_symbol or execution.symbol,
            exchange=execution.exchange,
            direction=Direction.from_side(execution.side),
            opened_at=execution.timestamp,
            entry_price=execution.price,
            quantity=quantity,
            peak_quantity=quantity,
        )
        fill = PositionFill(execution, quantity, commission, FillRole.OPEN)
        pos.fills.append(fill)
        pos.total_fees += fill.fee

        state.position = pos
        state.result.positions.append(pos)
        return pos

    def _increase(self, pos: Position, execution: UnifiedExecution) -> None:
        pos.ensure_mutable()
        pos.entry_price = weighted_average(
            pos.entry_price, pos.quantity, execution.price, execution.quantity
        )
        pos.quantity += execution.quantity
        pos.peak_quantity = max(pos.peak_quantity, pos.quantity)

        fill = PositionFill(execution, execution.quantity, execution.commission, FillRole.INCREASE)
        pos.fills.append(fill)
        pos.total_fees += fill.fee

    def _reduce(
        self,
        pos: Position,
        execution: UnifiedExecution,
        quantity: Decimal,
        commission: int,
        state: _SymbolState,
    ) -> None:
        pos.ensure_mutable()
        if quantity > pos.quantity:
            raise StateInvariantError(
                f"{pos.symbol}: closing {quantity} exceeds open quantity {pos.quantity}"
            )

        realized = closing_pnl(pos.direction.sign, pos.entry_price, execution.price, quantity)
        pos.realized_pnl += realized
        pos.exit_price = weighted_average(
            pos.exit_price or ZERO, pos.closed_quantity, execution.price, quantity
        )
        pos.closed_quantity += quantity
        pos.quantity -= quantity

        reported = execution.extras.exchange_realized_pnl
        if reported is not None:
            pos.exchange_reported_pnl = (pos.exchange_reported_pnl or ZERO) + reported

        role = FillRole.CLOSE if pos.quantity == ZERO else FillRole.REDUCE
        fill = PositionFill(execution, quantity, commission, role, realized)
        pos.fills.append(fill)
        pos.total_fees += fill.fee

        if pos.quantity == ZERO:
            pos.finalize(execution.timestamp)
            state.position = None

    def _handle_funding(self, execution: UnifiedExecution, state: _SymbolState) -> None:
        """Funding and other non-trade rows only attach fees to the open position."""
        pos = state.position
        if pos is None:
            state.result.unattributed.append(execution)
            return

        pos.ensure_mutable()
        fill = PositionFill(execution, ZERO, execution.commission, FillRole.FUNDING)
        pos.fills.append(fill)
        pos.total_fees += fill.fee
        pos.funding_fees += fill.fee


def group_by_symbol(
    executions: Iterable[UnifiedExecution],
) -> Dict[Tuple[Exchange, str], List[UnifiedExecution]]:
    """Split an account stream into per-(exchange, symbol) streams, preserving order."""
    groups: Dict[Tuple[Exchange, str], List[UnifiedExecution]] = OrderedDict()
    for execution in executions:
        groups.setdefault((execution.exchange, execution.symbol), []).append(execution)
    return groups


def reconstruct_positions(
    executions: Iterable[UnifiedExecution],
    tracker: Optional[IPositionTracker] = None,
) -> ReconstructionResult:
    """
    Reconstruct positions for a whole account.

    Each symbol is replayed independently; positions come back ordered by
    open time (symbol order breaks ties).
    """
    tracker = tracker or PositionTracker()
    result = ReconstructionResult()

    for (exchange, symbol), stream in group_by_symbol(executions).items():
        symbol_result = tracker.process_executions(stream)
        logger.debug(
            f"{exchange.value}:{symbol}: {len(stream)} executions -> "
            f"{len(symbol_result.positions)} positions, {len(symbol_result.warnings)} warnings"
        )
        result.extend(symbol_result)

    result.positions.sort(key=lambda p: p.opened_at)
    return result


def replay_position(position: Position) -> Position:
    """
    Rebuild a position purely from its own fills.

    Split executions are replayed as their absorbed slice, so the rebuilt
    summary fields must match the original exactly.
    """
    executions = []
    for fill in position.fills:
        if fill.role is FillRole.FUNDING:
            executions.append(fill.execution)
        else:
            executions.append(replace(
                fill.execution, quantity=fill.quantity, commission=fill.commission
            ))

    result = PositionTracker().process_executions(executions)
    if len(result.positions) != 1 or result.warnings:
        raise StateInvariantError(
            f"{position.symbol} position opened {position.opened_at.isoformat()} "
            f"does not replay to a single position"
        )
    return result.positions[0]
