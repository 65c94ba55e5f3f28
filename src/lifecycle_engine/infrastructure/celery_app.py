from celery import Celery
from celery import signals
import time
from prometheus_client import Counter, Histogram
from lifecycle_engine.config import get_settings
from lifecycle_engine.logging_setup import configure_logging

settings = get_settings()

celery_app = Celery(
    "lifecycle_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "lifecycle_engine.tasks.pipeline",
    ],
)

celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"], timezone="UTC", enable_utc=True)

TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'])
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'])
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05,0.1,0.25,0.5,1,2,5,10,30,60))

_task_start_times: dict[str, float] = {}


@signals.worker_process_init.connect
def _init_worker_logging(**kwargs):  # noqa
    configure_logging(get_settings().log_level)


@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()


@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _task_start_times.pop(task_id, None)
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()


# Periodic tasks (beat). Requires worker with -B or separate beat service.
celery_app.conf.beat_schedule = {
    "process-scheduled-enrollments": {
        "task": "lifecycle_engine.tasks.pipeline.process_scheduled_enrollments_task",
        "schedule": settings.scheduler_interval_seconds,
    },
}
