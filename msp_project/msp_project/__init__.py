# Celery instance is defined in msp_project/celery.py
# It creates celery_app object and points it to Django settings
# celery_app becomes the singleton task queue app for the whole project
from .celery import celery_app

# 'from msp_project import *', only exports celery_app
__all__ = ("celery_app",)

""" When you run Celery workers, "celery -A msp_project worker -l info"
    The -A msp_project means:
    Import msp_project/__init__.py →
    which exposes celery_app →  now Celery knows what to run. """
