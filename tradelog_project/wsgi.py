"""WSGI config for tradelog_project project."""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'tradelog_project.settings')

application = get_wsgi_application()
