import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('trade_analysis', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(max_length=64)),
                ('symbol', models.CharField(max_length=40)),
                ('display_symbol', models.CharField(blank=True, max_length=40)),
                ('side', models.CharField(choices=[('Buy', 'Buy'), ('Sell', 'Sell')], max_length=4)),
                ('order_type', models.CharField(blank=True, max_length=20)),
                ('status', models.CharField(blank=True, db_index=True, max_length=24)),
                ('quantity', models.DecimalField(decimal_places=10, max_digits=30)),
                ('filled_quantity', models.DecimalField(decimal_places=10, default=0, max_digits=30)),
                ('price', models.DecimalField(blank=True, decimal_places=10, max_digits=30, null=True)),
                ('stop_price', models.DecimalField(blank=True, decimal_places=10, max_digits=30, null=True)),
                ('avg_price', models.DecimalField(blank=True, decimal_places=10, max_digits=30, null=True)),
                ('timestamp', models.DateTimeField()),
                ('text', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('account', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='orders', to='trade_analysis.exchangeaccount')),
            ],
            options={
                'ordering': ['timestamp', 'id'],
            },
        ),
        migrations.AddIndex(
            model_name='order',
            index=models.Index(fields=['account', 'timestamp'], name='order_account_ts_idx'),
        ),
        migrations.AddIndex(
            model_name='order',
            index=models.Index(fields=['account', 'symbol'], name='order_account_symbol_idx'),
        ),
        migrations.AddConstraint(
            model_name='order',
            constraint=models.UniqueConstraint(fields=('account', 'order_id'), name='unique_account_order'),
        ),
        migrations.CreateModel(
            name='AccountSnapshot',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('captured_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('currency', models.CharField(blank=True, max_length=16)),
                ('wallet_balance', models.DecimalField(decimal_places=8, default=0, max_digits=30)),
                ('margin_balance', models.DecimalField(blank=True, decimal_places=8, max_digits=30, null=True)),
                ('available_margin', models.DecimalField(blank=True, decimal_places=8, max_digits=30, null=True)),
                ('unrealized_pnl', models.DecimalField(blank=True, decimal_places=8, max_digits=30, null=True)),
                ('realized_pnl', models.DecimalField(blank=True, decimal_places=8, max_digits=30, null=True)),
                ('positions', models.JSONField(blank=True, default=list)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('account', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='snapshots', to='trade_analysis.exchangeaccount')),
            ],
            options={
                'ordering': ['-captured_at', '-id'],
            },
        ),
    ]
