# config/celery.py
import os
import logging
from celery import Celery
from celery.schedules import crontab
from celery.signals import before_task_publish, task_prerun, task_postrun, task_failure
from kombu import Queue

# Set default settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('config')
app.config_from_object('django.conf:settings', namespace='CELERY')

# ------------------------------------------------------------------------------
# RELIABILITY: Queue Definitions
# ------------------------------------------------------------------------------
app.conf.task_queues = (
    Queue('default', routing_key='default'),
    Queue('high_priority', routing_key='high_priority'),
    Queue('low_priority', routing_key='low_priority'),
)

app.conf.task_default_queue = 'default'
app.conf.task_default_exchange = 'default'
app.conf.task_default_routing_key = 'default'

# Worker Reliability Defaults
app.conf.task_acks_late = True
app.conf.worker_prefetch_multiplier = 1
app.conf.task_reject_on_worker_lost = True
# Retry connecting to broker on startup (Docker robustness)
app.conf.broker_connection_retry_on_startup = True

app.autodiscover_tasks()

# ------------------------------------------------------------------------------
# TRACING: Propagate Request ID from Web to Worker
# ------------------------------------------------------------------------------
from apps.core.middleware import REQUEST_ID_HEADER, _correlation_id, get_correlation_id  # noqa: E402

# task_id -> ContextVar token, so a worker never carries one task's id into the next
_task_correlation_tokens = {}


@before_task_publish.connect
def transfer_correlation_id(headers=None, **kwargs):
    if headers is None:
        return
    request_id = get_correlation_id()
    if request_id:
        headers[REQUEST_ID_HEADER] = request_id


@task_prerun.connect
def restore_correlation_id(task_id=None, task=None, **kwargs):
    # Eager tasks run inside the caller's context and already see its id
    if task is None or getattr(task.request, "is_eager", False):
        return
    headers = getattr(task.request, "headers", None) or {}
    request_id = headers.get(REQUEST_ID_HEADER) or getattr(task.request, REQUEST_ID_HEADER, None)
    if request_id:
        _task_correlation_tokens[task_id] = _correlation_id.set(request_id)


@task_postrun.connect
def clear_correlation_id(task_id=None, **kwargs):
    token = _task_correlation_tokens.pop(task_id, None)
    if token is not None:
        _correlation_id.reset(token)


# ------------------------------------------------------------------------------
# DB HARDENING
# ------------------------------------------------------------------------------
@task_prerun.connect
def close_old_connections(task=None, **kwargs):
    """
    Prevents 'connection already closed' errors with PgBouncer/Docker.
    Skipped for eager tasks, which share the caller's connection and transaction.
    """
    if task is not None and getattr(task.request, "is_eager", False):
        return
    from django.db import close_old_connections
    close_old_connections()


# ------------------------------------------------------------------------------
# DEAD LETTER LOGGING
# ------------------------------------------------------------------------------
logger = logging.getLogger('celery.dlq')


@task_failure.connect
def handle_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, traceback=None, **opts):
    task_name = sender.name if sender else 'unknown_task'
    logger.critical(
        f"[DLQ] Task Failed Permanently: {task_name} (ID: {task_id})",
        extra={
            'metadata': {
                'task_name': task_name,
                'task_id': task_id,
                'args': args,
                'kwargs': kwargs,
                'exception': str(exception),
            }
        }
    )


# ------------------------------------------------------------------------------
# BEAT SCHEDULE
# ------------------------------------------------------------------------------
app.conf.beat_schedule = {
    'expire-delivery-offers-every-minute': {
        'task': 'apps.delivery.tasks.expire_stale_delivery_offers',
        'schedule': crontab(minute='*'),
    },
    'monitor-stuck-deliveries-every-5-mins': {
        'task': 'apps.core.tasks.monitor_stuck_deliveries',
        'schedule': crontab(minute='*/5'),
    },
    'health-check-heartbeat': {
        'task': 'apps.core.tasks.beat_heartbeat',
        'schedule': crontab(minute='*'),
    },
}

app.conf.task_routes = {
    'apps.delivery.tasks.broadcast_delivery_offers': {'queue': 'high_priority'},
    'apps.notifications.tasks.send_push_notification': {'queue': 'high_priority'},
    'apps.delivery.tasks.calculate_delivery_route': {'queue': 'default'},
    'apps.delivery.tasks.expire_stale_delivery_offers': {'queue': 'low_priority'},
    'apps.core.tasks.*': {'queue': 'default'},
}
