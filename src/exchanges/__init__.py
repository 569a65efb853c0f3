from .models import (
    AccountSummary,
    Exchange,
    ExchangePosition,
    ExecType,
    ExecutionExtras,
    Side,
    TransactType,
    UnifiedExecution,
    UnifiedOrder,
    WalletTransaction,
    BalancedTransaction,
    FIXED_POINT_SCALE,
    format_symbol,
    from_fixed_point,
    to_fixed_point,
)

__all__ = [
    "AccountSummary",
    "Exchange",
    "ExchangePosition",
    "ExecType",
    "ExecutionExtras",
    "Side",
    "TransactType",
    "UnifiedExecution",
    "UnifiedOrder",
    "WalletTransaction",
    "BalancedTransaction",
    "FIXED_POINT_SCALE",
    "format_symbol",
    "from_fixed_point",
    "to_fixed_point",
]
