from celery import Celery
from celery import signals
import time
from prometheus_client import Counter, Histogram
from apps_monitoring.config import get_settings

settings = get_settings()

celery_app = Celery(
    "apps_monitoring",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "apps_monitoring.tasks.monitoring",
    ],
)

celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"], timezone="UTC", enable_utc=True)

TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'])
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'])
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 300))

_task_start_times = {}

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
    "poll-queries": {
        "task": "apps_monitoring.tasks.monitoring.poll_queries",
        "schedule": float(settings.poll_interval_seconds),
        "options": {"expires": max(settings.poll_interval_seconds - 30, 30)},
    },
    "deliver-alerts": {
        "task": "apps_monitoring.tasks.monitoring.deliver_alerts",
        "schedule": float(settings.alert_poll_interval_seconds),
        "options": {"expires": max(settings.alert_poll_interval_seconds - 30, 30)},
    },
}
