"""Celery application and scheduled finance tasks."""
