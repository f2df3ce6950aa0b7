import logging

from django.db.models.signals import post_save
from django.dispatch import receiver
from django.db import transaction

from .models import Order, OrderStatus
from apps.delivery.tasks import broadcast_delivery_offers

logger = logging.getLogger(__name__)


@receiver(post_save, sender=Order)
def broadcast_when_ready_for_pickup(sender, instance, created, **kwargs):
    """
    Offers the order to delivery partners once it moves into 'ready_for_pickup'.
    """
    previous = getattr(instance, "_loaded_status", None)
    instance._loaded_status = instance.status

    if instance.status != OrderStatus.READY_FOR_PICKUP or previous == OrderStatus.READY_FOR_PICKUP:
        return

    order_id = instance.id
    logger.info(f"Order {order_id} ready for pickup, queueing partner broadcast")
    transaction.on_commit(lambda: queue_broadcast(order_id))


def queue_broadcast(order_id):
    # The order save has already committed; a broker outage must not fail it
    try:
        broadcast_delivery_offers.delay(order_id)
    except Exception as e:
        logger.error(f"Could not queue partner broadcast for order {order_id}: {e}")
        return False
    return True
