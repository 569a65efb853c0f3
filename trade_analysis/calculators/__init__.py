"""
Calculators module — position reconstruction and PnL components.

Pure Python, no Django dependencies:
- PositionTracker: flat-to-flat position reconstruction per symbol
- PnLCalculator: per-fill and per-position PnL arithmetic
- Aggregators: stats summary, monthly buckets, equity curve, per-symbol rows
- Reconciliation: reconstructed vs exchange-reported open positions
"""

from .errors import ReconstructionError, DataIntegrityError, StateInvariantError
from .position_tracker import (
    Direction,
    FillRole,
    Position,
    PositionFill,
    PositionTracker,
    ReconstructionResult,
    ReconstructionWarning,
    reconstruct_positions,
    replay_position,
)
from .pnl_calculator import PnLCalculator, PositionMetrics, calculate_position_metrics
from .aggregators import (
    EquityCurve,
    EquityPoint,
    MonthlyAggregator,
    MonthlyBucket,
    StatsSummary,
    SymbolAggregator,
    build_equity_curve,
    monthly_buckets,
    summarize,
)
from .interfaces import IPositionTracker, IPnLCalculator, IAggregator
from .wallet_ledger import annotate_running_balance
from .reconciliation import PositionReconciliation, reconcile_open_positions

__all__ = [
    'ReconstructionError',
    'DataIntegrityError',
    'StateInvariantError',
    'Direction',
    'FillRole',
    'Position',
    'PositionFill',
    'PositionTracker',
    'ReconstructionResult',
    'ReconstructionWarning',
    'reconstruct_positions',
    'replay_position',
    'PnLCalculator',
    'PositionMetrics',
    'calculate_position_metrics',
    'EquityCurve',
    'EquityPoint',
    'MonthlyAggregator',
    'MonthlyBucket',
    'StatsSummary',
    'SymbolAggregator',
    'build_equity_curve',
    'monthly_buckets',
    'summarize',
    'IPositionTracker',
    'IPnLCalculator',
    'IAggregator',
    'annotate_running_balance',
    'PositionReconciliation',
    'reconcile_open_positions',
]
