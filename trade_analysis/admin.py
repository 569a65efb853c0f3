"""Django admin configuration for trade_analysis models."""

from django.contrib import admin
from .models import (
    AccountSnapshot, AnalysisRun, ExchangeAccount, Execution, Order, WalletTransaction,
)


@admin.register(ExchangeAccount)
class ExchangeAccountAdmin(admin.ModelAdmin):
    list_display = ['name', 'exchange', 'realized_pnl', 'data_start_date', 'data_end_date', 'last_updated']
    search_fields = ['name']
    list_filter = ['exchange', 'last_updated']
    readonly_fields = ['created_at', 'last_updated']


@admin.register(Execution)
class ExecutionAdmin(admin.ModelAdmin):
    list_display = ['account', 'timestamp', 'symbol', 'side', 'quantity', 'price', 'exec_type', 'commission']
    search_fields = ['account__name', 'exec_id', 'order_id', 'symbol']
    list_filter = ['exec_type', 'side', 'timestamp']
    raw_id_fields = ['account']


@admin.register(WalletTransaction)
class WalletTransactionAdmin(admin.ModelAdmin):
    list_display = ['account', 'timestamp', 'transact_type', 'amount', 'fee', 'currency']
    search_fields = ['account__name', 'transact_id']
    list_filter = ['transact_type', 'timestamp']
    raw_id_fields = ['account']


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['account', 'timestamp', 'symbol', 'side', 'order_type', 'quantity', 'price', 'status']
    search_fields = ['account__name', 'order_id', 'symbol']
    list_filter = ['status', 'side', 'order_type']
    raw_id_fields = ['account']


@admin.register(AccountSnapshot)
class AccountSnapshotAdmin(admin.ModelAdmin):
    list_display = ['account', 'captured_at', 'wallet_balance', 'currency', 'unrealized_pnl']
    search_fields = ['account__name']
    list_filter = ['captured_at']
    raw_id_fields = ['account']


@admin.register(AnalysisRun)
class AnalysisRunAdmin(admin.ModelAdmin):
    list_display = [
        'account', 'started_at', 'status', 'positions_count',
        'realized_pnl', 'win_rate_percent'
    ]
    search_fields = ['account__name']
    list_filter = ['status', 'started_at']
    raw_id_fields = ['account']
