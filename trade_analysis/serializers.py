"""Django REST Framework serializers for trade analysis API."""

from rest_framework import serializers

from src.exchanges.models import Exchange, from_fixed_point

from .calculators import calculate_position_metrics
from .models import AccountSnapshot, AnalysisRun, ExchangeAccount, Execution, Order


class ExchangeAccountSerializer(serializers.ModelSerializer):
    executions_count = serializers.SerializerMethodField()
    realized_pnl = serializers.SerializerMethodField()

    class Meta:
        model = ExchangeAccount
        fields = [
            'id', 'exchange', 'name', 'realized_pnl',
            'created_at', 'last_updated',
            'data_start_date', 'data_end_date', 'executions_count'
        ]

    def get_executions_count(self, obj):
        annotated = getattr(obj, 'execution_count', None)
        return annotated if annotated is not None else obj.executions.count()

    def get_realized_pnl(self, obj):
        """Return stored P&L (from the latest analysis run)."""
        return float(obj.realized_pnl) if obj.realized_pnl is not None else None


class ExchangeAccountCreateSerializer(serializers.ModelSerializer):
    exchange = serializers.ChoiceField(choices=[e.value for e in Exchange])

    class Meta:
        model = ExchangeAccount
        fields = ['id', 'exchange', 'name']
        # Duplicates are reported by the view, not as validation errors
        validators = []


class ExecutionSerializer(serializers.ModelSerializer):
    fee = serializers.SerializerMethodField()

    class Meta:
        model = Execution
        fields = [
            'id', 'exec_id', 'order_id', 'symbol', 'display_symbol',
            'side', 'quantity', 'price', 'exec_type', 'order_type',
            'order_status', 'cost', 'commission', 'fee', 'timestamp', 'text',
        ]

    def get_fee(self, obj):
        return float(from_fixed_point(obj.commission))


class OrderSerializer(serializers.ModelSerializer):
    remaining_quantity = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_id', 'symbol', 'display_symbol', 'side', 'order_type',
            'status', 'quantity', 'filled_quantity', 'remaining_quantity',
            'price', 'stop_price', 'avg_price', 'timestamp', 'text',
        ]

    def get_remaining_quantity(self, obj):
        return float(obj.quantity - obj.filled_quantity)


class AccountSnapshotSerializer(serializers.ModelSerializer):
    class Meta:
        model = AccountSnapshot
        fields = [
            'id', 'account', 'captured_at', 'currency', 'wallet_balance',
            'margin_balance', 'available_margin', 'unrealized_pnl', 'realized_pnl',
            'positions',
        ]


class AnalysisRunSerializer(serializers.ModelSerializer):
    account_name = serializers.CharField(source='account.name', read_only=True)

    class Meta:
        model = AnalysisRun
        fields = [
            'id', 'account', 'account_name', 'started_at', 'finished_at', 'status',
            'executions_count', 'positions_count', 'open_positions_count',
            'unattributed_count', 'warnings', 'error', 'summary',
            'realized_pnl', 'win_rate_percent', 'profit_factor', 'max_drawdown',
        ]


class AnalysisRunSummarySerializer(serializers.ModelSerializer):
    """Lightweight analysis serializer for lists."""
    account_name = serializers.CharField(source='account.name', read_only=True)

    class Meta:
        model = AnalysisRun
        fields = [
            'id', 'account', 'account_name', 'started_at', 'status',
            'positions_count', 'realized_pnl'
        ]


class PositionFillSerializer(serializers.Serializer):
    """One execution slice absorbed by a position."""
    exec_id = serializers.CharField(source='execution.exec_id')
    order_id = serializers.CharField(source='execution.order_id')
    timestamp = serializers.DateTimeField(source='execution.timestamp')
    side = serializers.CharField(source='execution.side.value')
    exec_type = serializers.CharField(source='execution.exec_type.value')
    price = serializers.FloatField(source='execution.price', allow_null=True)
    quantity = serializers.FloatField()
    fee = serializers.FloatField()
    role = serializers.CharField(source='role.value')
    realized_pnl = serializers.FloatField()
    partial = serializers.BooleanField(source='is_partial')


class PositionSerializer(serializers.Serializer):
    """Read-only representation of a reconstructed position."""
    symbol = serializers.CharField()
    display_symbol = serializers.CharField()
    exchange = serializers.CharField(source='exchange.value')
    direction = serializers.CharField(source='direction.value')
    status = serializers.SerializerMethodField()
    opened_at = serializers.DateTimeField()
    closed_at = serializers.DateTimeField(allow_null=True)
    entry_price = serializers.FloatField()
    exit_price = serializers.FloatField(allow_null=True)
    quantity = serializers.FloatField()
    peak_quantity = serializers.FloatField()
    realized_pnl = serializers.FloatField()
    total_fees = serializers.FloatField()
    funding_fees = serializers.FloatField()
    net_pnl = serializers.FloatField()
    exchange_reported_pnl = serializers.FloatField(allow_null=True)
    executions_count = serializers.SerializerMethodField()
    metrics = serializers.SerializerMethodField()

    def __init__(self, *args, include_fills=False, **kwargs):
        super().__init__(*args, **kwargs)
        if include_fills:
            self.fields['fills'] = PositionFillSerializer(many=True)

    def get_status(self, obj):
        return 'open' if obj.is_open else 'closed'

    def get_executions_count(self, obj):
        return len(obj.fills)

    def get_metrics(self, obj):
        return calculate_position_metrics(obj).to_dict()


class ReconstructionWarningSerializer(serializers.Serializer):
    exec_id = serializers.CharField()
    symbol = serializers.CharField()
    reason = serializers.CharField()
    timestamp = serializers.DateTimeField(allow_null=True)
