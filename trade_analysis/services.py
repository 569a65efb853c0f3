"""
Database services for trade analysis.

Handles importing exchange history (executions, orders, wallet
transactions and account snapshots) and running position reconstruction
against the Django ORM.
"""

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from django.db import DatabaseError, transaction
from django.db.models import Max, Min
from django.utils import timezone

from src.exchanges.models import (
    AccountSummary,
    UnifiedExecution,
    UnifiedOrder,
    WalletTransaction as WalletTransactionDTO,
)
from src.exchanges.normalizers import (
    normalize_account_summary,
    normalize_executions,
    normalize_orders,
    sort_executions,
)
from src.interfaces.execution_source import IExecutionSource

from .calculators import (
    IPositionTracker,
    PositionTracker,
    ReconstructionResult,
    SymbolAggregator,
    monthly_buckets,
    reconstruct_positions,
    summarize,
)
from .models import (
    AccountSnapshot, AnalysisRun, ExchangeAccount, Execution, Order, WalletTransaction,
)
from .serializers import PositionSerializer

logger = logging.getLogger(__name__)


# account_id -> lock held while that account is being reconstructed
_account_locks: Dict[int, threading.Lock] = {}
_lock = threading.Lock()


class ReconstructionInProgress(Exception):
    """Raised when a non-blocking run finds the account already busy."""


def _get_account_lock(account_id: int) -> threading.Lock:
    with _lock:
        return _account_locks.setdefault(account_id, threading.Lock())


@contextmanager
def account_lock(account_id: int, blocking: bool = True):
    """
    Hold the account's reconstruction lock for the duration of the block.

    The thread lock serializes runs inside this process; the account row,
    locked with SELECT ... FOR UPDATE inside a transaction, serializes them
    across worker processes. The block runs inside that transaction.
    """
    lock = _get_account_lock(account_id)
    if not lock.acquire(blocking=blocking):
        raise ReconstructionInProgress(f"Account {account_id} is already being reconstructed")
    try:
        with transaction.atomic():
            try:
                ExchangeAccount.objects.select_for_update(nowait=not blocking).get(pk=account_id)
            except DatabaseError as e:
                raise ReconstructionInProgress(
                    f"Account {account_id} is already being reconstructed"
                ) from e
            yield
    finally:
        lock.release()


def _quantize(value: Optional[Decimal], places: str, max_digits: Optional[int] = None) -> Optional[Decimal]:
    """
    Round for a DecimalField; non-finite values become None.

    With max_digits, values beyond the column's range are clamped to it.
    """
    if value is None or not value.is_finite():
        return None
    step = Decimal(places)
    value = value.quantize(step, rounding=ROUND_HALF_UP)
    if max_digits is not None:
        limit = Decimal(10) ** (max_digits + step.as_tuple().exponent) - step
        if abs(value) > limit:
            logger.warning(f"Clamped {value} to the stored range of +/-{limit}")
            value = limit.copy_sign(value)
    return value


class ImportService:
    """
    Persists normalized exchange data.

    Imports are idempotent: rows already stored (same account, symbol and
    execution id) are ignored by the unique constraint.
    """

    def save_executions(
        self,
        account: ExchangeAccount,
        executions: Iterable[UnifiedExecution],
        batch_size: int = 1000
    ) -> int:
        """
        Save executions in batches, in timestamp order.

        Returns the number of new executions inserted.
        """
        executions = sort_executions(executions)
        if not executions:
            return 0

        before = account.executions.count()
        for start in range(0, len(executions), batch_size):
            batch = [
                Execution.from_unified(account, e)
                for e in executions[start:start + batch_size]
            ]
            with transaction.atomic():
                Execution.objects.bulk_create(batch, ignore_conflicts=True)

        inserted = account.executions.count() - before
        logger.info(f"Saved {inserted} executions for {account} (from {len(executions)} provided)")
        return inserted

    def save_wallet_transactions(
        self,
        account: ExchangeAccount,
        transactions: Iterable[WalletTransactionDTO],
        batch_size: int = 1000
    ) -> int:
        """Save wallet history in batches. Returns the number of new rows."""
        transactions = sorted(transactions, key=lambda t: (t.timestamp, t.transact_id))
        if not transactions:
            return 0

        before = account.wallet_transactions.count()
        for start in range(0, len(transactions), batch_size):
            batch = [
                WalletTransaction.from_unified(account, tx)
                for tx in transactions[start:start + batch_size]
            ]
            with transaction.atomic():
                WalletTransaction.objects.bulk_create(batch, ignore_conflicts=True)

        inserted = account.wallet_transactions.count() - before
        logger.info(f"Saved {inserted} wallet transactions for {account}")
        return inserted

    def save_orders(
        self,
        account: ExchangeAccount,
        orders: Iterable[UnifiedOrder],
        batch_size: int = 1000
    ) -> int:
        """Save order history in batches. Returns the number of new orders."""
        orders = sorted(orders, key=lambda o: (o.timestamp, o.order_id))
        if not orders:
            return 0

        before = account.orders.count()
        for start in range(0, len(orders), batch_size):
            batch = [Order.from_unified(account, o) for o in orders[start:start + batch_size]]
            with transaction.atomic():
                Order.objects.bulk_create(batch, ignore_conflicts=True)

        inserted = account.orders.count() - before
        logger.info(f"Saved {inserted} orders for {account} (from {len(orders)} provided)")
        return inserted

    def save_account_summary(self, account: ExchangeAccount, summary: AccountSummary) -> AccountSnapshot:
        snapshot = AccountSnapshot.from_unified(account, summary)
        snapshot.save()
        logger.info(
            f"Stored snapshot for {account}: {summary.wallet_balance} {summary.currency}, "
            f"{len(summary.positions)} open positions"
        )
        return snapshot

    def import_raw_executions(self, account: ExchangeAccount, rows: Iterable[dict]) -> int:
        """Normalize exchange-native rows for the account's exchange and save them."""
        executions = normalize_executions(account.exchange_enum, rows)
        inserted = self.save_executions(account, executions)
        self.update_date_range(account)
        return inserted

    def import_raw_orders(self, account: ExchangeAccount, rows: Iterable[dict]) -> int:
        return self.save_orders(account, normalize_orders(account.exchange_enum, rows))

    def import_account_summary(self, account: ExchangeAccount, payload: dict) -> AccountSnapshot:
        """Normalize an exchange-native account payload; raises ValueError if invalid."""
        summary = normalize_account_summary(account.exchange_enum, payload)
        return self.save_account_summary(account, summary)

    def refresh(
        self,
        account: ExchangeAccount,
        source: IExecutionSource,
        force_refresh: bool = False
    ) -> Dict[str, int]:
        """
        Pull history from an execution source.

        Accounts that already hold executions are served from the database
        unless force_refresh is set.
        """
        if not force_refresh and account.executions.exists():
            logger.info(f"Using stored executions for {account}, skipping fetch")
            return {'fetched': False, 'executions': 0, 'wallet_transactions': 0, 'orders': 0}

        executions = source.fetch_executions(account)
        wallet_transactions = source.fetch_wallet_transactions(account)
        orders = source.fetch_orders(account)
        summary = source.fetch_account_summary(account)

        inserted = self.save_executions(account, executions)
        inserted_tx = self.save_wallet_transactions(account, wallet_transactions)
        inserted_orders = self.save_orders(account, orders)
        if summary is not None:
            self.save_account_summary(account, summary)
        self.update_date_range(account)

        return {
            'fetched': True,
            'executions': inserted,
            'wallet_transactions': inserted_tx,
            'orders': inserted_orders,
        }

    def update_date_range(self, account: ExchangeAccount) -> None:
        """Update the account's date range from the stored executions."""
        dates = account.executions.aggregate(min_date=Min('timestamp'), max_date=Max('timestamp'))
        if dates['min_date']:
            account.data_start_date = dates['min_date'].date()
            account.data_end_date = dates['max_date'].date()
            account.save(update_fields=['data_start_date', 'data_end_date', 'last_updated'])


class ReconstructionService:
    """
    Rebuilds positions for an account from its stored executions.

    Every run starts from the database; at most one run per account is
    active at a time, across threads and worker processes.
    """

    def __init__(self, tracker: Optional[IPositionTracker] = None):
        self.tracker = tracker or PositionTracker()

    def load_executions(self, account: ExchangeAccount) -> List[UnifiedExecution]:
        """
        Stored executions in replay order.

        Ties on timestamp are broken by exchange execution id, never by the
        order rows happened to be imported in.
        """
        rows = account.executions.select_related('account').order_by('timestamp', 'id')
        return sort_executions(row.to_unified() for row in rows)

    def _reconstruct(self, account: ExchangeAccount) -> Tuple[List[UnifiedExecution], ReconstructionResult]:
        executions = self.load_executions(account)
        return executions, reconstruct_positions(executions, tracker=self.tracker)

    def reconstruct(self, account: ExchangeAccount, blocking: bool = True) -> ReconstructionResult:
        with account_lock(account.pk, blocking=blocking):
            _, result = self._reconstruct(account)
        return result

    def run_analysis(self, account: ExchangeAccount, blocking: bool = True) -> AnalysisRun:
        """
        Reconstruct positions and record the outcome as an AnalysisRun.

        Skipped executions mark the run PARTIAL. Any other failure marks it
        FAILED and is re-raised once the FAILED run has been committed.
        """
        failure = None
        with account_lock(account.pk, blocking=blocking):
            run = AnalysisRun.objects.create(account=account)
            try:
                # Savepoint, so a database error leaves the run writable
                with transaction.atomic():
                    executions, result = self._reconstruct(account)
                    self._record_result(run, executions, result)
            except Exception as e:
                logger.exception(f"Reconstruction failed for {account}: {e}")
                run.status = AnalysisRun.STATUS_FAILED
                run.error = str(e)
                run.finished_at = timezone.now()
                run.save(update_fields=['status', 'error', 'finished_at'])
                failure = e
            else:
                account.realized_pnl = run.realized_pnl
                account.save(update_fields=['realized_pnl', 'last_updated'])

        if failure is not None:
            raise failure
        return run

    def _record_result(
        self,
        run: AnalysisRun,
        executions: List[UnifiedExecution],
        result: ReconstructionResult
    ) -> None:
        stats = summarize(result.positions)
        by_symbol = SymbolAggregator()
        for position in result.positions:
            by_symbol.add_position(position)

        summary = stats.to_dict()
        summary['monthly'] = [b.to_dict() for b in monthly_buckets(result.positions)]
        summary['by_symbol'] = by_symbol.get_results()

        run.status = AnalysisRun.STATUS_PARTIAL if result.has_warnings else AnalysisRun.STATUS_SUCCESS
        run.finished_at = timezone.now()
        run.executions_count = len(executions)
        run.positions_count = len(result.positions)
        run.open_positions_count = len(result.open_positions)
        run.unattributed_count = len(result.unattributed)
        run.warnings = [w.to_dict() for w in result.warnings]
        run.summary = summary
        run.positions = PositionSerializer(result.positions, many=True).data
        run.realized_pnl = _quantize(stats.total_realized_pnl, '0.00000001', max_digits=30)
        run.win_rate_percent = _quantize(stats.win_rate * 100, '0.01', max_digits=6)
        run.profit_factor = _quantize(stats.profit_factor, '0.0001', max_digits=20)
        run.max_drawdown = _quantize(stats.max_drawdown, '0.00000001', max_digits=30)
        run.save()

        if result.has_warnings:
            logger.warning(
                f"Reconstruction of {run.account} skipped {len(result.warnings)} executions"
            )
        logger.info(
            f"Reconstructed {len(result.positions)} positions for {run.account} "
            f"from {len(executions)} executions [{run.status}]"
        )
