"""Celery beat schedule configuration.

The sweep catches payments whose webhook never arrived; it runs every five
minutes and refreshes intermediate payments older than
``settings.reconciliation.sweep_age_seconds``.
"""
from __future__ import annotations

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "payments-sweep-intermediate": {
        "task": "payments.sweep_intermediate",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "low", "expires": 240},
    },
}
