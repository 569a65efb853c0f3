"""URL configuration for trade_analysis API."""

from django.urls import path, include
from rest_framework.routers import DefaultRouter
from . import views

router = DefaultRouter()
router.register(r'accounts', views.ExchangeAccountViewSet)
router.register(r'executions', views.ExecutionViewSet)
router.register(r'analyses', views.AnalysisRunViewSet)

urlpatterns = [
    # Account management - MUST be before router to avoid conflicts
    path('accounts/add/', views.add_account, name='account-add'),
    path('accounts/<int:pk>/import/', views.import_executions, name='account-import'),
    path('accounts/<int:pk>/snapshot/', views.record_snapshot, name='account-snapshot'),
    path('accounts/<int:pk>/recompute/', views.recompute_account, name='account-recompute'),
    path('accounts/<int:pk>/delete/', views.delete_account, name='account-delete'),
    # Task status
    path('tasks/<str:task_id>/', views.task_status, name='task-status'),
    # Router URLs (ViewSets)
    path('', include(router.urls)),
]
