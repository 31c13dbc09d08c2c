"""
Celery application for the order fulfillment service.

DJANGO_SETTINGS_MODULE is set before the app is created so workers read
the Django settings (``CELERY_`` prefix), including the beat schedule for
the assignment sweep and the outbox relay.
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("order_fulfillment")

app.config_from_object("django.conf:settings", namespace="CELERY")

# Picks up tasks.py in every installed app
app.autodiscover_tasks()
