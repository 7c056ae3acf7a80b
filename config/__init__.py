"""
Django project package for the jewelry storefront back-office.

Loads the Celery app so that @shared_task picks it up on startup.
"""
from .celery import app as celery_app

__all__ = ('celery_app',)
