"""Celery app, tasks and the job implementations they run."""
