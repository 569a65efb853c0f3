"""Django REST Framework views for trade analysis API."""

import logging
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError
from django.db.models import Count
from rest_framework import viewsets, status
from rest_framework.decorators import action, api_view
from rest_framework.response import Response

from src.exchanges.models import from_fixed_point

from .calculators import (
    StateInvariantError,
    SymbolAggregator,
    annotate_running_balance,
    build_equity_curve,
    reconcile_open_positions,
    monthly_buckets,
    summarize,
)
from .models import ExchangeAccount, Execution, AnalysisRun
from .serializers import (
    ExchangeAccountSerializer, ExchangeAccountCreateSerializer, ExecutionSerializer,
    AnalysisRunSerializer, AnalysisRunSummarySerializer,
    AccountSnapshotSerializer, OrderSerializer, PositionSerializer,
    ReconstructionWarningSerializer,
)
from .services import ImportService, ReconstructionService

logger = logging.getLogger(__name__)


def _parse_mark_prices(values):
    """Parse ``SYMBOL:PRICE`` pairs, given repeated or comma separated."""
    marks = {}
    for value in values:
        for pair in value.split(','):
            if not pair.strip():
                continue
            symbol, _, price = pair.partition(':')
            if not symbol or not price:
                raise ValueError(f"Invalid mark price {pair!r}. Use SYMBOL:PRICE")
            try:
                marks[symbol.strip()] = Decimal(price.strip())
            except InvalidOperation:
                raise ValueError(f"Invalid mark price {pair!r}. Use SYMBOL:PRICE")
    return marks


class ExchangeAccountViewSet(viewsets.ReadOnlyModelViewSet):
    """
    API endpoints for exchange accounts.

    list: GET /api/accounts/
    retrieve: GET /api/accounts/{id}/

    Positions and statistics are reconstructed from the stored executions
    on every request.
    """
    queryset = ExchangeAccount.objects.annotate(execution_count=Count('executions'))
    serializer_class = ExchangeAccountSerializer

    def _reconstruct(self, account):
        """Returns (result, None) or (None, error response)."""
        try:
            return ReconstructionService().reconstruct(account), None
        except StateInvariantError as e:
            logger.exception(f"Reconstruction failed for {account}: {e}")
            return None, Response(
                {'status': AnalysisRun.STATUS_FAILED, 'error': str(e)},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

    def _envelope(self, result, **data):
        """Wrap a payload with the run outcome and any skipped executions."""
        return Response({
            'status': AnalysisRun.STATUS_PARTIAL if result.has_warnings else AnalysisRun.STATUS_SUCCESS,
            'warnings': ReconstructionWarningSerializer(result.warnings, many=True).data,
            **data,
        })

    @action(detail=True, methods=['get'])
    def executions(self, request, pk=None):
        """GET /api/accounts/{id}/executions/ - Get account's executions."""
        account = self.get_object()
        executions = account.executions.all()

        symbol = request.query_params.get('symbol')
        if symbol:
            executions = executions.filter(symbol=symbol)

        serializer = ExecutionSerializer(executions[:500], many=True)
        return Response(serializer.data)

    @action(detail=True, methods=['get'])
    def orders(self, request, pk=None):
        """
        GET /api/accounts/{id}/orders/ - Get account's order history.

        Query params: symbol=..., status=Filled|Canceled|...
        """
        account = self.get_object()
        orders = account.orders.all()

        symbol = request.query_params.get('symbol')
        if symbol:
            orders = orders.filter(symbol=symbol)

        order_status = request.query_params.get('status')
        if order_status:
            orders = orders.filter(status__iexact=order_status)

        serializer = OrderSerializer(orders[:500], many=True)
        return Response(serializer.data)

    @action(detail=True, methods=['get'])
    def wallet(self, request, pk=None):
        """GET /api/accounts/{id}/wallet/ - Wallet history with running balance."""
        account = self.get_object()
        transactions = [tx.to_unified() for tx in account.wallet_transactions.all()]

        rows = []
        for entry in annotate_running_balance(transactions):
            tx = entry.transaction
            rows.append({
                'transact_id': tx.transact_id,
                'transact_type': tx.transact_type.value,
                'timestamp': tx.timestamp.isoformat(),
                'currency': tx.currency,
                'amount': float(from_fixed_point(tx.amount)),
                'fee': float(from_fixed_point(tx.fee)),
                'wallet_balance': float(from_fixed_point(entry.wallet_balance)),
            })
        return Response(rows)

    @action(detail=True, methods=['get'])
    def positions(self, request, pk=None):
        """
        GET /api/accounts/{id}/positions/ - Reconstructed positions.

        Query params: status=open|closed, symbol=..., include_fills=1
        """
        account = self.get_object()
        result, error = self._reconstruct(account)
        if error:
            return error

        positions = result.positions
        position_status = request.query_params.get('status')
        if position_status == 'open':
            positions = result.open_positions
        elif position_status == 'closed':
            positions = result.closed_positions
        elif position_status:
            return Response(
                {'error': 'Invalid status. Use open or closed'},
                status=status.HTTP_400_BAD_REQUEST
            )

        symbol = request.query_params.get('symbol')
        if symbol:
            positions = [p for p in positions if symbol in (p.symbol, p.display_symbol)]

        include_fills = request.query_params.get('include_fills') in ('1', 'true')
        serializer = PositionSerializer(positions, many=True, include_fills=include_fills)
        return self._envelope(
            result,
            unattributed_count=len(result.unattributed),
            positions=serializer.data,
        )

    @action(detail=True, methods=['get'])
    def stats(self, request, pk=None):
        """GET /api/accounts/{id}/stats/ - Aggregate performance statistics."""
        account = self.get_object()
        result, error = self._reconstruct(account)
        if error:
            return error

        by_symbol = SymbolAggregator()
        for position in result.positions:
            by_symbol.add_position(position)

        return self._envelope(
            result,
            account={
                'id': account.id,
                'name': account.name,
                'exchange': account.exchange,
                'data_start_date': account.data_start_date.isoformat() if account.data_start_date else None,
                'data_end_date': account.data_end_date.isoformat() if account.data_end_date else None,
            },
            summary=summarize(result.positions).to_dict(),
            by_symbol=by_symbol.get_results(),
        )

    @action(detail=True, methods=['get'])
    def monthly(self, request, pk=None):
        """GET /api/accounts/{id}/monthly/ - Realized PnL per UTC month."""
        account = self.get_object()
        result, error = self._reconstruct(account)
        if error:
            return error

        buckets = monthly_buckets(result.positions)
        return self._envelope(result, months=[b.to_dict() for b in buckets])

    @action(detail=True, methods=['get'])
    def equity(self, request, pk=None):
        """
        GET /api/accounts/{id}/equity/ - Cumulative realized PnL curve.

        Query params: mark=SYMBOL:PRICE (repeatable) adds provisional points
        for open positions.
        """
        account = self.get_object()
        try:
            marks = _parse_mark_prices(request.query_params.getlist('mark'))
        except ValueError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        result, error = self._reconstruct(account)
        if error:
            return error

        curve = build_equity_curve(result.positions, mark_prices=marks)
        return self._envelope(result, **curve.to_dict())

    @action(detail=True, methods=['get'])
    def reconciliation(self, request, pk=None):
        """
        GET /api/accounts/{id}/reconciliation/ - Reconstructed open positions
        compared with the latest exchange snapshot.
        """
        account = self.get_object()
        snapshot = account.snapshots.first()
        if snapshot is None:
            return Response(
                {'error': 'No account snapshot recorded'},
                status=status.HTTP_404_NOT_FOUND
            )

        result, error = self._reconstruct(account)
        if error:
            return error

        rows = reconcile_open_positions(result.positions, snapshot.exchange_positions())
        return self._envelope(
            result,
            snapshot=AccountSnapshotSerializer(snapshot).data,
            matched=all(row.matched for row in rows),
            positions=[row.to_dict() for row in rows],
        )

    @action(detail=True, methods=['get'])
    def analyses(self, request, pk=None):
        """GET /api/accounts/{id}/analyses/ - Get account's analysis history."""
        account = self.get_object()
        analyses = account.analysis_runs.all()[:20]
        serializer = AnalysisRunSerializer(analyses, many=True)
        return Response(serializer.data)


class ExecutionViewSet(viewsets.ReadOnlyModelViewSet):
    """API endpoints for executions."""
    queryset = Execution.objects.select_related('account').all()
    serializer_class = ExecutionSerializer

    def get_queryset(self):
        queryset = super().get_queryset()

        # Filter by account
        account_id = self.request.query_params.get('account')
        if account_id:
            queryset = queryset.filter(account_id=account_id)

        # Filter by side
        side = self.request.query_params.get('side')
        if side:
            queryset = queryset.filter(side=side.capitalize())

        return queryset[:500]


class AnalysisRunViewSet(viewsets.ReadOnlyModelViewSet):
    """API endpoints for analysis runs."""
    queryset = AnalysisRun.objects.select_related('account').all()
    serializer_class = AnalysisRunSerializer

    def get_serializer_class(self):
        if self.action == 'list':
            return AnalysisRunSummarySerializer
        return AnalysisRunSerializer


@api_view(['POST'])
def add_account(request):
    """
    POST /api/accounts/add/ - Add a new exchange account to track.

    Body: {"exchange": "bitmex", "name": "main"}
    """
    serializer = ExchangeAccountCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    existing = ExchangeAccount.objects.filter(
        exchange=serializer.validated_data['exchange'],
        name=serializer.validated_data['name'],
    ).first()
    if existing:
        return Response({
            'account_id': existing.id,
            'status': 'exists',
            'message': 'Account already tracked'
        })

    try:
        account = serializer.save()
    except IntegrityError:
        return Response({'error': 'Account already tracked'}, status=status.HTTP_409_CONFLICT)

    return Response({
        'account_id': account.id,
        'exchange': account.exchange,
        'name': account.name,
        'status': 'added',
    }, status=status.HTTP_201_CREATED)


@api_view(['POST'])
def import_executions(request, pk):
    """
    POST /api/accounts/{id}/import/ - Queue raw exchange history for import.

    Body: {"executions": [...exchange-native rows...], "orders": [...]}
    Either list may be omitted, but not both.
    """
    from trade_analysis.tasks import import_account_executions

    try:
        account = ExchangeAccount.objects.get(pk=pk)
    except ExchangeAccount.DoesNotExist:
        return Response({'error': 'Account not found'}, status=status.HTTP_404_NOT_FOUND)

    rows = request.data.get('executions', [])
    orders = request.data.get('orders', [])
    if not isinstance(rows, list) or not isinstance(orders, list):
        return Response(
            {'error': 'executions and orders must be lists'},
            status=status.HTTP_400_BAD_REQUEST
        )
    if not rows and not orders:
        return Response({'error': 'Nothing to import'}, status=status.HTTP_400_BAD_REQUEST)

    task = import_account_executions.delay(account.id, rows, orders=orders)

    return Response({
        'status': 'importing',
        'task_id': task.id,
        'rows': len(rows),
        'orders': len(orders),
        'message': 'Import started in background'
    }, status=status.HTTP_202_ACCEPTED)


@api_view(['POST'])
def record_snapshot(request, pk):
    """
    POST /api/accounts/{id}/snapshot/ - Store exchange-reported balances and
    open positions.

    Body: the exchange-native account payload (BitMEX: {"wallet", "margin",
    "positions"}; Binance: the /fapi/v2/account response).
    """
    try:
        account = ExchangeAccount.objects.get(pk=pk)
    except ExchangeAccount.DoesNotExist:
        return Response({'error': 'Account not found'}, status=status.HTTP_404_NOT_FOUND)

    try:
        snapshot = ImportService().import_account_summary(account, request.data)
    except ValueError as e:
        return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    return Response(AccountSnapshotSerializer(snapshot).data, status=status.HTTP_201_CREATED)


@api_view(['POST'])
def recompute_account(request, pk):
    """
    POST /api/accounts/{id}/recompute/ - Rebuild positions in the background.
    """
    from trade_analysis.tasks import recompute_account_positions

    try:
        account = ExchangeAccount.objects.get(pk=pk)
    except ExchangeAccount.DoesNotExist:
        return Response({'error': 'Account not found'}, status=status.HTTP_404_NOT_FOUND)

    task = recompute_account_positions.delay(account.id)

    return Response({
        'status': 'recomputing',
        'task_id': task.id,
        'message': 'Reconstruction started in background'
    }, status=status.HTTP_202_ACCEPTED)


@api_view(['GET'])
def task_status(request, task_id):
    """
    GET /api/tasks/{task_id}/ - Get status of a background task.
    """
    from celery.result import AsyncResult

    task = AsyncResult(task_id)

    response = {
        'task_id': task_id,
        'status': task.status,
    }

    if task.status == 'PROGRESS':
        response['progress'] = task.info
    elif task.status == 'SUCCESS':
        response['result'] = task.result
    elif task.status == 'FAILURE':
        response['error'] = str(task.result)

    return Response(response)


@api_view(['DELETE'])
def delete_account(request, pk):
    """
    DELETE /api/accounts/{id}/delete/ - Remove an account and its history.
    """
    try:
        account = ExchangeAccount.objects.get(pk=pk)
    except ExchangeAccount.DoesNotExist:
        return Response({'error': 'Account not found'}, status=status.HTTP_404_NOT_FOUND)

    name = account.name
    account.delete()
    return Response({'status': 'deleted', 'name': name})
