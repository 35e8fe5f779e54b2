"""
Celery Application — background extraction runs for RebarFlow.
Model calls on large drawings take longer than an HTTP request should, so the
API hands them to a worker and the session waits in `extracting`.
"""
import os
from celery import Celery

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

celery_app = Celery(
    "rebarflow",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["rebarflow.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=300,   # 5 minutes soft limit
    task_time_limit=600,        # 10 minutes hard limit
    result_expires=3600,        # Results expire after 1 hour
)
