"""
Celery configuration for the publishing service.

Celery runs the server-owned parts of the pipeline:
- Merging a completed upload session into an artifact
- Polling the platform until a publish job reaches a terminal state
- Cleaning up staged chunks and artifacts after a job finishes
- Periodic sweeps (stale job reconciliation, expired session reclamation)

Redis is both the message broker and result backend. Tasks are
auto-discovered from all installed Django apps.

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
