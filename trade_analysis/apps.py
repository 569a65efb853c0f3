from django.apps import AppConfig


class TradeAnalysisConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'trade_analysis'
    verbose_name = 'Trade analysis'
