# apps/pricing/defaults.py
from decimal import Decimal

DEFAULT_DELIVERY_ZONES = (
    {"name": "Inner City", "min_distance": Decimal("0"), "max_distance": Decimal("5"),
     "base_fee": Decimal("30.00"), "per_km_rate": Decimal("5.00")},
    {"name": "Suburban", "min_distance": Decimal("5.01"), "max_distance": Decimal("15"),
     "base_fee": Decimal("50.00"), "per_km_rate": Decimal("8.00")},
    {"name": "Rural", "min_distance": Decimal("15.01"), "max_distance": Decimal("30"),
     "base_fee": Decimal("80.00"), "per_km_rate": Decimal("12.00")},
    {"name": "Extended Rural", "min_distance": Decimal("30.01"), "max_distance": Decimal("100"),
     "base_fee": Decimal("120.00"), "per_km_rate": Decimal("15.00")},
)


def seed_default_zones(zone_model):
    """
    Idempotent upsert of the default bands, keyed by name.
    Takes the model class so data migrations can pass their historical model.
    """
    created = 0
    for zone in DEFAULT_DELIVERY_ZONES:
        values = {k: v for k, v in zone.items() if k != "name"}
        values["is_active"] = True
        _, was_created = zone_model.objects.update_or_create(name=zone["name"], defaults=values)
        created += int(was_created)
    return created
