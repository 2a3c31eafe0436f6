from __future__ import annotations
import os
from celery import Celery
from celery.schedules import crontab

# ensure Django settings are set for Celery
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "msp_project.settings")

# name should match the project package
celery_app = Celery("msp_project")

# read config from Django settings, using CELERY_ prefix
celery_app.config_from_object("django.conf:settings", namespace="CELERY")

# autoload tasks from installed apps (billing_core/tasks.py)
celery_app.autodiscover_tasks()

# The overdue sweep is an explicit, scheduled refresh:
# statuses never flip to "overdue" while an invoice is just being read
celery_app.conf.beat_schedule = {
    "refresh-overdue-invoices": {
        "task": "billing_core.tasks.refresh_overdue_for_all_companies",
        "schedule": crontab(hour=2, minute=0),
    },
}
