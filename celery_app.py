"""
Celery application configuration for background classification tasks.
"""
import os
import logging
from celery import Celery
from celery.signals import after_setup_logger

# Redis URL for broker and backend
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Create Celery app
celery_app = Celery(
    "spendlens_tasks",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["tasks.classification_tasks"],
)


@after_setup_logger.connect
def _configure_logging(logger, **kwargs):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


CLASSIFICATION_QUEUE = os.getenv("CELERY_CLASSIFICATION_QUEUE", "classification")

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=86400,  # 1 day

    timezone="UTC",
    enable_utc=True,

    task_routes={"tasks.classification_tasks.*": {"queue": CLASSIFICATION_QUEUE}},
    task_track_started=True,
    task_acks_late=True,
    task_time_limit=1800,
    task_soft_time_limit=1500,

    worker_prefetch_multiplier=1,
    worker_concurrency=int(os.getenv("CELERY_WORKER_CONCURRENCY", "4")),
)

celery_app.autodiscover_tasks(["tasks"])


if __name__ == "__main__":
    celery_app.start()
