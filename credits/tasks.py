# credits/tasks.py
from __future__ import annotations
from celery_app import celery as celery_app
from credits.services.metering import reset_stale_free_usage

@celery_app.task(name="credits.reset_free_usage")
def task_reset_free_usage():
    return reset_stale_free_usage()
