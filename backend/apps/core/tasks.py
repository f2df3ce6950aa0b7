# apps/core/tasks.py
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from apps.delivery.models import Delivery
from apps.delivery.states import DeliveryStatus
from .views import BEAT_HEARTBEAT_KEY

logger = logging.getLogger(__name__)


@shared_task
def monitor_stuck_deliveries():
    """
    SLA Monitor: alerts on deliveries nobody has accepted, or that stopped moving.
    """
    now = timezone.now()
    unclaimed_limit = now - timedelta(minutes=getattr(settings, "DELIVERY_UNCLAIMED_ALERT_MINUTES", 10))
    stalled_limit = now - timedelta(minutes=getattr(settings, "DELIVERY_STALLED_ALERT_MINUTES", 60))

    unclaimed = Delivery.objects.filter(
        status=DeliveryStatus.PENDING,
        created_at__lt=unclaimed_limit,
    ).count()

    stalled = Delivery.objects.filter(
        status__in=[DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP, DeliveryStatus.EN_ROUTE_DELIVERY],
        updated_at__lt=stalled_limit,
    ).count()

    if unclaimed or stalled:
        msg = f"[SLA BREACH] Stuck Deliveries: Unclaimed={unclaimed}, Stalled={stalled}"
        logger.warning(msg, extra={"metadata": {"unclaimed": unclaimed, "stalled": stalled}})
        return msg

    return "All systems nominal"


@shared_task
def beat_heartbeat():
    """
    Liveness Signal: Writes timestamp to the cache.
    The HealthCheck endpoint checks this to ensure the Scheduler is alive.
    """
    cache.set(BEAT_HEARTBEAT_KEY, timezone.now().timestamp(), timeout=120)
    return "Beat Alive"
