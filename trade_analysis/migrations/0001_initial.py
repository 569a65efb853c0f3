import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='ExchangeAccount',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('exchange', models.CharField(choices=[('bitmex', 'Bitmex'), ('binance', 'Binance'), ('okx', 'Okx'), ('bybit', 'Bybit')], db_index=True, max_length=16)),
                ('name', models.CharField(max_length=100)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('last_updated', models.DateTimeField(auto_now=True)),
                ('data_start_date', models.DateField(blank=True, null=True)),
                ('data_end_date', models.DateField(blank=True, null=True)),
                ('realized_pnl', models.DecimalField(blank=True, decimal_places=8, max_digits=30, null=True)),
            ],
            options={
                'ordering': ['-last_updated'],
            },
        ),
        migrations.AddConstraint(
            model_name='exchangeaccount',
            constraint=models.UniqueConstraint(fields=('exchange', 'name'), name='unique_exchange_account'),
        ),
        migrations.CreateModel(
            name='Execution',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('exec_id', models.CharField(max_length=64)),
                ('order_id', models.CharField(blank=True, max_length=64)),
                ('symbol', models.CharField(db_index=True, max_length=40)),
                ('display_symbol', models.CharField(blank=True, max_length=40)),
                ('side', models.CharField(choices=[('Buy', 'Buy'), ('Sell', 'Sell')], max_length=4)),
                ('quantity', models.DecimalField(decimal_places=10, max_digits=30)),
                ('price', models.DecimalField(blank=True, decimal_places=10, max_digits=30, null=True)),
                ('exec_type', models.CharField(choices=[('Trade', 'Trade'), ('Funding', 'Funding'), ('Settlement', 'Settlement'), ('Liquidation', 'Liquidation'), ('Bankruptcy', 'Bankruptcy')], default='Trade', max_length=16)),
                ('order_type', models.CharField(blank=True, max_length=20)),
                ('order_status', models.CharField(blank=True, max_length=20)),
                ('cost', models.BigIntegerField(default=0)),
                ('commission', models.BigIntegerField(default=0)),
                ('timestamp', models.DateTimeField(db_index=True)),
                ('text', models.TextField(blank=True)),
                ('extras', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('account', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='executions', to='trade_analysis.exchangeaccount')),
            ],
            options={
                'ordering': ['timestamp', 'id'],
            },
        ),
        migrations.AddIndex(
            model_name='execution',
            index=models.Index(fields=['account', 'timestamp'], name='execution_account_ts_idx'),
        ),
        migrations.AddIndex(
            model_name='execution',
            index=models.Index(fields=['account', 'symbol'], name='execution_account_symbol_idx'),
        ),
        migrations.AddConstraint(
            model_name='execution',
            constraint=models.UniqueConstraint(fields=('account', 'symbol', 'exec_id'), name='unique_account_symbol_execution'),
        ),
        migrations.CreateModel(
            name='WalletTransaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('transact_id', models.CharField(max_length=64)),
                ('transact_type', models.CharField(choices=[('RealisedPNL', 'RealisedPNL'), ('Funding', 'Funding'), ('Commission', 'Commission'), ('Transfer', 'Transfer'), ('Deposit', 'Deposit'), ('Withdrawal', 'Withdrawal'), ('AffiliatePayout', 'AffiliatePayout')], db_index=True, max_length=20)),
                ('amount', models.BigIntegerField(default=0)),
                ('fee', models.BigIntegerField(default=0)),
                ('currency', models.CharField(blank=True, max_length=16)),
                ('status', models.CharField(blank=True, max_length=20)),
                ('timestamp', models.DateTimeField(db_index=True)),
                ('text', models.TextField(blank=True)),
                ('account', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='wallet_transactions', to='trade_analysis.exchangeaccount')),
            ],
            options={
                'ordering': ['timestamp', 'id'],
            },
        ),
        migrations.AddConstraint(
            model_name='wallettransaction',
            constraint=models.UniqueConstraint(fields=('account', 'transact_id'), name='unique_account_transaction'),
        ),
        migrations.CreateModel(
            name='AnalysisRun',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('started_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('status', models.CharField(choices=[('RUNNING', 'Running'), ('SUCCESS', 'Success'), ('PARTIAL', 'Partial success'), ('FAILED', 'Failed')], default='RUNNING', max_length=10)),
                ('executions_count', models.IntegerField(default=0)),
                ('positions_count', models.IntegerField(default=0)),
                ('open_positions_count', models.IntegerField(default=0)),
                ('unattributed_count', models.IntegerField(default=0)),
                ('warnings', models.JSONField(blank=True, default=list)),
                ('error', models.TextField(blank=True)),
                ('summary', models.JSONField(blank=True, default=dict)),
                ('positions', models.JSONField(blank=True, default=list)),
                ('realized_pnl', models.DecimalField(blank=True, decimal_places=8, max_digits=30, null=True)),
                ('win_rate_percent', models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True)),
                ('profit_factor', models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True)),
                ('max_drawdown', models.DecimalField(blank=True, decimal_places=8, max_digits=30, null=True)),
                ('account', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='analysis_runs', to='trade_analysis.exchangeaccount')),
            ],
            options={
                'ordering': ['-started_at'],
            },
        ),
    ]
