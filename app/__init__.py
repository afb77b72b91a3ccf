from celery import Celery
import os

from app.config import CLEANUP_INTERVAL_SECONDS

# Celery configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

celery_app = Celery(
    "secure_transfer",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["app.cleanup"],
)

celery_app.conf.beat_schedule = {
    # Periodically remove transfers past their expiry or download quota
    "cleanup-expired-transfers": {
        "task": "app.cleanup.cleanup_expired",
        "schedule": CLEANUP_INTERVAL_SECONDS,
    },
}
