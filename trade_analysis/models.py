"""
Django models for exchange account history and analysis runs.

Executions and wallet transactions are stored as imported; positions and
every aggregate are recomputed from them on demand.
"""

from typing import List

from django.db import models
from django.utils import timezone

from src.exchanges.models import (
    AccountSummary,
    Exchange,
    ExchangePosition,
    ExecType,
    ExecutionExtras,
    Side,
    TransactType,
    UnifiedExecution,
    UnifiedOrder,
    WalletTransaction as WalletTransactionDTO,
)


EXCHANGE_CHOICES = [(e.value, e.name.title()) for e in Exchange]


class ExchangeAccount(models.Model):
    """A tracked account on one exchange."""

    exchange = models.CharField(max_length=16, choices=EXCHANGE_CHOICES, db_index=True)
    name = models.CharField(max_length=100)
    created_at = models.DateTimeField(auto_now_add=True)
    last_updated = models.DateTimeField(auto_now=True)

    # Date range of imported execution data
    data_start_date = models.DateField(null=True, blank=True)
    data_end_date = models.DateField(null=True, blank=True)

    # Cached from the latest successful analysis run
    realized_pnl = models.DecimalField(max_digits=30, decimal_places=8, null=True, blank=True)

    class Meta:
        ordering = ['-last_updated']
        constraints = [
            models.UniqueConstraint(fields=['exchange', 'name'], name='unique_exchange_account')
        ]

    def __str__(self):
        return f"{self.name} ({self.exchange})"

    @property
    def exchange_enum(self) -> Exchange:
        return Exchange(self.exchange)


class Execution(models.Model):
    """One fill imported from an exchange, in the unified representation."""

    SIDE_CHOICES = [(s.value, s.value) for s in Side]
    EXEC_TYPE_CHOICES = [(t.value, t.value) for t in ExecType]

    account = models.ForeignKey(
        ExchangeAccount, on_delete=models.CASCADE, related_name='executions'
    )

    exec_id = models.CharField(max_length=64)
    order_id = models.CharField(max_length=64, blank=True)
    symbol = models.CharField(max_length=40, db_index=True)
    display_symbol = models.CharField(max_length=40, blank=True)

    side = models.CharField(max_length=4, choices=SIDE_CHOICES)
    quantity = models.DecimalField(max_digits=30, decimal_places=10)
    price = models.DecimalField(max_digits=30, decimal_places=10, null=True, blank=True)
    exec_type = models.CharField(max_length=16, choices=EXEC_TYPE_CHOICES, default=ExecType.TRADE.value)
    order_type = models.CharField(max_length=20, blank=True)
    order_status = models.CharField(max_length=20, blank=True)

    # Fixed-point, 1e-8 units
    cost = models.BigIntegerField(default=0)
    commission = models.BigIntegerField(default=0)

    timestamp = models.DateTimeField(db_index=True)
    text = models.TextField(blank=True)
    extras = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['account', 'timestamp'], name='execution_account_ts_idx'),
            models.Index(fields=['account', 'symbol'], name='execution_account_symbol_idx'),
        ]
        # Execution ids are only unique per exchange symbol
        constraints = [
            models.UniqueConstraint(
                fields=['account', 'symbol', 'exec_id'],
                name='unique_account_symbol_execution'
            )
        ]

    def __str__(self):
        return f"{self.side} {self.quantity} {self.symbol} @ {self.price}"

    def to_unified(self) -> UnifiedExecution:
        return UnifiedExecution(
            exec_id=self.exec_id,
            order_id=self.order_id,
            symbol=self.symbol,
            display_symbol=self.display_symbol,
            side=Side(self.side),
            quantity=self.quantity,
            price=self.price,
            exec_type=ExecType(self.exec_type),
            order_type=self.order_type,
            order_status=self.order_status,
            cost=self.cost,
            commission=self.commission,
            timestamp=self.timestamp,
            text=self.text,
            exchange=self.account.exchange_enum,
            extras=ExecutionExtras.from_dict(self.extras),
        )

    @classmethod
    def from_unified(cls, account: ExchangeAccount, execution: UnifiedExecution) -> 'Execution':
        return cls(
            account=account,
            exec_id=execution.exec_id,
            order_id=execution.order_id,
            symbol=execution.symbol,
            display_symbol=execution.display_symbol,
            side=execution.side.value,
            quantity=execution.quantity,
            price=execution.price,
            exec_type=execution.exec_type.value,
            order_type=execution.order_type,
            order_status=execution.order_status,
            cost=execution.cost,
            commission=execution.commission,
            timestamp=execution.timestamp,
            text=execution.text,
            extras=execution.extras.to_dict(),
        )


class WalletTransaction(models.Model):
    """Wallet history entry (funding, realized PnL, transfers...)."""

    TRANSACT_TYPE_CHOICES = [(t.value, t.value) for t in TransactType]

    account = models.ForeignKey(
        ExchangeAccount, on_delete=models.CASCADE, related_name='wallet_transactions'
    )
    transact_id = models.CharField(max_length=64)
    transact_type = models.CharField(max_length=20, choices=TRANSACT_TYPE_CHOICES, db_index=True)
    amount = models.BigIntegerField(default=0)
    fee = models.BigIntegerField(default=0)
    currency = models.CharField(max_length=16, blank=True)
    status = models.CharField(max_length=20, blank=True)
    timestamp = models.DateTimeField(db_index=True)
    text = models.TextField(blank=True)

    class Meta:
        ordering = ['timestamp', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['account', 'transact_id'],
                name='unique_account_transaction'
            )
        ]

    def __str__(self):
        return f"{self.transact_type} {self.amount}"

    def to_unified(self) -> WalletTransactionDTO:
        return WalletTransactionDTO(
            transact_id=self.transact_id,
            transact_type=TransactType(self.transact_type),
            amount=self.amount,
            fee=self.fee,
            currency=self.currency,
            status=self.status,
            timestamp=self.timestamp,
            text=self.text,
            exchange=self.account.exchange_enum,
        )

    @classmethod
    def from_unified(cls, account: ExchangeAccount, tx: WalletTransactionDTO) -> 'WalletTransaction':
        return cls(
            account=account,
            transact_id=tx.transact_id,
            transact_type=tx.transact_type.value,
            amount=tx.amount,
            fee=tx.fee,
            currency=tx.currency,
            status=tx.status,
            timestamp=tx.timestamp,
            text=tx.text,
        )


class Order(models.Model):
    """One order from the exchange's order history."""

    SIDE_CHOICES = [(s.value, s.value) for s in Side]

    account = models.ForeignKey(
        ExchangeAccount, on_delete=models.CASCADE, related_name='orders'
    )

    order_id = models.CharField(max_length=64)
    symbol = models.CharField(max_length=40)
    display_symbol = models.CharField(max_length=40, blank=True)
    side = models.CharField(max_length=4, choices=SIDE_CHOICES)
    order_type = models.CharField(max_length=20, blank=True)
    status = models.CharField(max_length=24, blank=True, db_index=True)

    quantity = models.DecimalField(max_digits=30, decimal_places=10)
    filled_quantity = models.DecimalField(max_digits=30, decimal_places=10, default=0)
    price = models.DecimalField(max_digits=30, decimal_places=10, null=True, blank=True)
    stop_price = models.DecimalField(max_digits=30, decimal_places=10, null=True, blank=True)
    avg_price = models.DecimalField(max_digits=30, decimal_places=10, null=True, blank=True)

    timestamp = models.DateTimeField()
    text = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['account', 'timestamp'], name='order_account_ts_idx'),
            models.Index(fields=['account', 'symbol'], name='order_account_symbol_idx'),
        ]
        constraints = [
            models.UniqueConstraint(fields=['account', 'order_id'], name='unique_account_order')
        ]

    def __str__(self):
        return f"{self.side} {self.quantity} {self.symbol} [{self.status}]"

    @classmethod
    def from_unified(cls, account: ExchangeAccount, order: UnifiedOrder) -> 'Order':
        return cls(
            account=account,
            order_id=order.order_id,
            symbol=order.symbol,
            display_symbol=order.display_symbol,
            side=order.side.value,
            order_type=order.order_type,
            status=order.status,
            quantity=order.quantity,
            filled_quantity=order.filled_quantity,
            price=order.price,
            stop_price=order.stop_price,
            avg_price=order.avg_price,
            timestamp=order.timestamp,
            text=order.text,
        )


class AccountSnapshot(models.Model):
    """
    Balances and open positions as reported by the exchange at one moment.

    Kept alongside the imported history so reconstructed open positions can
    be reconciled against what the exchange says is open.
    """

    account = models.ForeignKey(
        ExchangeAccount, on_delete=models.CASCADE, related_name='snapshots'
    )
    captured_at = models.DateTimeField(default=timezone.now)
    currency = models.CharField(max_length=16, blank=True)

    wallet_balance = models.DecimalField(max_digits=30, decimal_places=8, default=0)
    margin_balance = models.DecimalField(max_digits=30, decimal_places=8, null=True, blank=True)
    available_margin = models.DecimalField(max_digits=30, decimal_places=8, null=True, blank=True)
    unrealized_pnl = models.DecimalField(max_digits=30, decimal_places=8, null=True, blank=True)
    realized_pnl = models.DecimalField(max_digits=30, decimal_places=8, null=True, blank=True)

    # ExchangePosition.to_dict() rows
    positions = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-captured_at', '-id']

    def __str__(self):
        return f"Snapshot {self.account} @ {self.captured_at}"

    def exchange_positions(self) -> List[ExchangePosition]:
        return [ExchangePosition.from_dict(row) for row in self.positions]

    @classmethod
    def from_unified(cls, account: ExchangeAccount, summary: AccountSummary) -> 'AccountSnapshot':
        return cls(
            account=account,
            captured_at=summary.captured_at,
            currency=summary.currency,
            wallet_balance=summary.wallet_balance,
            margin_balance=summary.margin_balance,
            available_margin=summary.available_margin,
            unrealized_pnl=summary.unrealized_pnl,
            realized_pnl=summary.realized_pnl,
            positions=[p.to_dict() for p in summary.positions],
        )


class AnalysisRun(models.Model):
    """
    Record of each reconstruction run performed on an account.

    Stores the outcome (clean, partial with warnings, or failed) and
    the summary statistics it produced.
    """

    STATUS_RUNNING = 'RUNNING'
    STATUS_SUCCESS = 'SUCCESS'
    STATUS_PARTIAL = 'PARTIAL'
    STATUS_FAILED = 'FAILED'
    STATUS_CHOICES = [
        (STATUS_RUNNING, 'Running'),
        (STATUS_SUCCESS, 'Success'),
        (STATUS_PARTIAL, 'Partial success'),
        (STATUS_FAILED, 'Failed'),
    ]

    account = models.ForeignKey(
        ExchangeAccount, on_delete=models.CASCADE, related_name='analysis_runs'
    )
    started_at = models.DateTimeField(default=timezone.now)
    finished_at = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_RUNNING)

    executions_count = models.IntegerField(default=0)
    positions_count = models.IntegerField(default=0)
    open_positions_count = models.IntegerField(default=0)
    unattributed_count = models.IntegerField(default=0)

    warnings = models.JSONField(default=list, blank=True)
    error = models.TextField(blank=True)
    summary = models.JSONField(default=dict, blank=True)
    # Serialized positions of the run, empty for failed runs
    positions = models.JSONField(default=list, blank=True)

    # Performance metrics
    realized_pnl = models.DecimalField(max_digits=30, decimal_places=8, null=True, blank=True)
    win_rate_percent = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    profit_factor = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    max_drawdown = models.DecimalField(max_digits=30, decimal_places=8, null=True, blank=True)

    class Meta:
        ordering = ['-started_at']

    def __str__(self):
        return f"Analysis {self.account} @ {self.started_at} [{self.status}]"
