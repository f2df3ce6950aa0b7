# apps/delivery/routing_service.py
import logging

import requests
from django.conf import settings
from django.db import transaction

from apps.utils.resilience import CircuitBreaker, CircuitBreakerOpenException
from . import realtime
from .geo import haversine_distance
from .models import DeliveryRoute

logger = logging.getLogger(__name__)


class RoutingProviderError(Exception):
    pass


@CircuitBreaker(
    service_name="here_routing",
    failure_threshold=5,
    recovery_timeout=60,
    tracked_exceptions=(requests.RequestException, RoutingProviderError, KeyError, ValueError),
)
def fetch_here_route(origin, destination, transport_mode="bicycle"):
    """
    Returns {"distance_meters", "duration_seconds", "polyline", "route_id"} for the first HERE route.
    """
    response = requests.get(
        settings.HERE_ROUTING_URL,
        params={
            "transportMode": transport_mode,
            "origin": f"{origin[0]},{origin[1]}",
            "destination": f"{destination[0]},{destination[1]}",
            "return": "polyline,summary",
            "apikey": settings.HERE_API_KEY,
        },
        timeout=5,
    )
    response.raise_for_status()

    routes = response.json().get("routes") or []
    if not routes or not routes[0].get("sections"):
        raise RoutingProviderError("HERE returned no route")

    route = routes[0]
    section = route["sections"][0]
    return {
        "distance_meters": int(section["summary"]["length"]),
        "duration_seconds": int(section["summary"]["duration"]),
        "polyline": section.get("polyline", ""),
        "route_id": route.get("id", ""),
    }


def straight_line_route(origin, destination):
    km = haversine_distance(origin[0], origin[1], destination[0], destination[1])
    speed_kmph = float(getattr(settings, "DELIVERY_AVERAGE_SPEED_KMPH", 20))
    return {
        "distance_meters": int(round(km * 1000)),
        "duration_seconds": int(round(km / speed_kmph * 3600)),
        "polyline": "",
        "route_id": "",
    }


class RouteService:

    @staticmethod
    def estimate(origin, destination):
        """
        HERE when a key is configured, straight line otherwise or when HERE fails.
        Returns (estimate, source).
        """
        if getattr(settings, "HERE_API_KEY", ""):
            try:
                return fetch_here_route(origin, destination), DeliveryRoute.Source.HERE
            except CircuitBreakerOpenException:
                logger.warning("HERE routing circuit open, using straight-line estimate")
            except (requests.RequestException, RoutingProviderError, KeyError, ValueError) as exc:
                logger.error(f"HERE routing failed, using straight-line estimate: {exc}")
        return straight_line_route(origin, destination), DeliveryRoute.Source.STRAIGHT_LINE

    @staticmethod
    def calculate_and_store(delivery):
        """
        Creates or replaces the delivery's route. Returns None when either end has no coordinates.
        """
        coordinates = (
            delivery.pickup_latitude, delivery.pickup_longitude,
            delivery.delivery_latitude, delivery.delivery_longitude,
        )
        if None in coordinates:
            logger.info(f"Delivery {delivery.id} has no coordinates, skipping route calculation")
            return None

        origin = (float(delivery.pickup_latitude), float(delivery.pickup_longitude))
        destination = (float(delivery.delivery_latitude), float(delivery.delivery_longitude))
        estimate, source = RouteService.estimate(origin, destination)

        with transaction.atomic():
            route, _ = DeliveryRoute.objects.update_or_create(
                delivery=delivery,
                defaults={
                    "pickup_latitude": delivery.pickup_latitude,
                    "pickup_longitude": delivery.pickup_longitude,
                    "delivery_latitude": delivery.delivery_latitude,
                    "delivery_longitude": delivery.delivery_longitude,
                    "route_geometry": estimate["polyline"],
                    "distance_meters": estimate["distance_meters"],
                    "estimated_duration_seconds": estimate["duration_seconds"],
                    "source": source,
                    "here_route_id": estimate["route_id"],
                },
            )
            transaction.on_commit(lambda: realtime.publish(
                realtime.ROUTE_UPDATE,
                delivery.order_id,
                {
                    "distanceMeters": route.distance_meters,
                    "estimatedDurationSeconds": route.estimated_duration_seconds,
                    "routeGeometry": route.route_geometry,
                    "source": route.source,
                },
                delivery_id=delivery.id,
            ))

        return route
