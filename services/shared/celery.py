# services/shared/celery.py
import os
from celery import Celery

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "cache+memory://")
OVERDUE_SWEEP_SECONDS = float(os.getenv("OVERDUE_SWEEP_SECONDS", "3600"))

app = Celery("library_lending", broker=CELERY_BROKER_URL, backend=CELERY_RESULT_BACKEND)

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "update-overdue-loans": {
            "task": "services.loan_service.tasks.update_overdue_loans",
            "schedule": OVERDUE_SWEEP_SECONDS,
        },
    },
)

# Tasks live beside the services that own them
app.autodiscover_tasks(["services.loan_service"])
