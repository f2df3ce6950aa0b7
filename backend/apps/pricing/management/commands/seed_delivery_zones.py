from django.core.management.base import BaseCommand

from apps.pricing.defaults import seed_default_zones
from apps.pricing.models import DeliveryZone


class Command(BaseCommand):
    help = "Creates or resets the default delivery fee zones"

    def handle(self, *args, **options):
        created = seed_default_zones(DeliveryZone)
        total = DeliveryZone.objects.filter(is_active=True).count()
        self.stdout.write(self.style.SUCCESS(f"Delivery zones seeded ({created} new, {total} active)."))
