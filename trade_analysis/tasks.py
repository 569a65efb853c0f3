"""
Celery tasks for position reconstruction.

These tasks run in separate worker processes, allowing the main
Django server to remain responsive while accounts are recomputed.
"""

from datetime import timedelta

from celery import shared_task
from celery.utils.log import get_task_logger
from django.utils import timezone

logger = get_task_logger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def recompute_account_positions(self, account_id: int):
    """
    Rebuild positions and statistics for one account.

    Args:
        account_id: Database ID of the exchange account
    """
    from trade_analysis.calculators import StateInvariantError
    from trade_analysis.models import ExchangeAccount
    from trade_analysis.services import ReconstructionService

    try:
        account = ExchangeAccount.objects.get(pk=account_id)
    except ExchangeAccount.DoesNotExist:
        logger.error(f"Account {account_id} not found")
        return {'status': 'error', 'message': 'Account not found'}

    logger.info(f"Starting reconstruction for {account}")
    if not self.request.called_directly:
        self.update_state(state='PROGRESS', meta={
            'account_id': account_id,
            'stage': 'reconstructing',
        })

    try:
        run = ReconstructionService().run_analysis(account)
    except StateInvariantError as e:
        # Same data gives the same failure, so there is nothing to retry
        logger.error(f"Reconstruction invariant broken for {account}: {e}")
        return {'status': 'error', 'account_id': account_id, 'message': str(e)}
    except Exception as e:
        logger.error(f"Error reconstructing {account}: {e}")
        try:
            raise self.retry(exc=e)
        except self.MaxRetriesExceededError:
            return {'status': 'error', 'account_id': account_id, 'message': str(e)}

    logger.info(f"Completed reconstruction for {account} [{run.status}]")

    return {
        'status': 'success',
        'account_id': account_id,
        'analysis_run_id': run.id,
        'run_status': run.status,
        'positions_count': run.positions_count,
        'warnings_count': len(run.warnings),
        'realized_pnl': float(run.realized_pnl or 0),
    }


@shared_task(bind=True)
def import_account_executions(self, account_id: int, rows: list, recompute: bool = True,
                              orders: list = None):
    """
    Store exchange-native execution and order rows for an account.

    Args:
        account_id: Database ID of the exchange account
        rows: Raw execution payloads as returned by the exchange
        recompute: Queue a reconstruction when new executions were stored
        orders: Raw order payloads as returned by the exchange
    """
    from trade_analysis.models import ExchangeAccount
    from trade_analysis.services import ImportService

    try:
        account = ExchangeAccount.objects.get(pk=account_id)
    except ExchangeAccount.DoesNotExist:
        logger.error(f"Account {account_id} not found")
        return {'status': 'error', 'message': 'Account not found'}

    service = ImportService()
    inserted = service.import_raw_executions(account, rows) if rows else 0
    inserted_orders = service.import_raw_orders(account, orders) if orders else 0
    logger.info(
        f"Imported {inserted} of {len(rows)} executions and "
        f"{inserted_orders} of {len(orders or [])} orders for {account}"
    )

    result = {
        'status': 'success',
        'account_id': account_id,
        'inserted': inserted,
        'orders_inserted': inserted_orders,
    }
    if recompute and inserted:
        task = recompute_account_positions.delay(account_id)
        result['recompute_task_id'] = task.id
    return result


@shared_task
def cleanup_old_analyses(days: int = 30):
    """Remove analysis runs older than specified days."""
    from trade_analysis.models import AnalysisRun

    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = AnalysisRun.objects.filter(started_at__lt=cutoff).delete()
    logger.info(f"Deleted {deleted} old analysis runs")
    return {'deleted': deleted}
