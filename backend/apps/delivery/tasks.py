# apps/delivery/tasks.py
import logging

from celery import shared_task
from django.db import DatabaseError, OperationalError

from apps.orders.models import Order
from apps.utils.exceptions import AlreadyClaimedError, BusinessLogicException
from .models import Delivery
from .routing_service import RouteService
from .services import AssignmentService

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=5,
    default_retry_delay=10,
    queue='high_priority'
)
def broadcast_delivery_offers(self, order_id):
    """
    Offers a ready order to the eligible partners.
    Queued by the order hook once the order is ready for pickup.
    """
    try:
        offers = AssignmentService.broadcast(order_id)
        return f"Offered to {len(offers)} partners"

    except Order.DoesNotExist:
        logger.error(f"Order {order_id} does not exist.")
        return "Order Not Found"

    except AlreadyClaimedError:
        return "Already Assigned"

    except BusinessLogicException as e:
        logger.warning(f"Broadcast for order {order_id} skipped: {e.message}")
        return f"Skipped: {e.code}"

    except (OperationalError, DatabaseError) as exc:
        # Retry on transient database errors
        logger.error(f"System error broadcasting order {order_id}: {exc}")
        raise self.retry(exc=exc)


@shared_task(queue='low_priority')
def expire_stale_delivery_offers():
    """
    Beat: every minute. Offers past DELIVERY_OFFER_TTL_SECONDS become 'expired'.
    """
    expired = AssignmentService.expire_stale_offers()
    return f"Expired {expired} offers"


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def calculate_delivery_route(self, delivery_id):
    delivery = Delivery.objects.filter(id=delivery_id).first()
    if delivery is None:
        logger.warning(f"Delivery {delivery_id} vanished before route calculation")
        return "Missing"

    try:
        route = RouteService.calculate_and_store(delivery)
    except (OperationalError, DatabaseError) as exc:
        raise self.retry(exc=exc)

    if route is None:
        return "No Coordinates"
    return f"{route.source}: {route.distance_meters} m"
