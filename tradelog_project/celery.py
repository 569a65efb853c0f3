"""Celery application for tradelog_project."""

import os

from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'tradelog_project.settings')

app = Celery('tradelog_project')

# All CELERY_* settings in Django settings configure the app
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
