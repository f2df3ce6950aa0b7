from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from apps.accounts.models import Role
from apps.accounts.services import AccountService
from apps.partners.services import PartnerService
from apps.pricing.defaults import seed_default_zones
from apps.pricing.models import DeliveryZone
from apps.stores.models import Store

# Bengaluru, matches the apps' default map centre
DEMO_LAT = Decimal("12.97160000")
DEMO_LNG = Decimal("77.59460000")
DEMO_AREA = "Indiranagar"


class Command(BaseCommand):
    help = "Sets up a demo store in Bengaluru with online delivery partners for local dispatch testing"

    def add_arguments(self, parser):
        parser.add_argument("--partners", type=int, default=3, help="Number of online partners to create")

    def handle(self, *args, **options):
        self.stdout.write("Setting up demo dispatch data...")

        with transaction.atomic():
            created_zones = seed_default_zones(DeliveryZone)
            self.stdout.write(f"Delivery zones ready ({created_zones} new)")

            owner = AccountService.create_with_role("+910000000100", Role.SHOPKEEPER, first_name="Demo")
            store, created = Store.objects.get_or_create(
                owner=owner,
                name="Demo Dark Store",
                defaults={
                    "address": "100 Feet Road, Indiranagar, Bengaluru",
                    "area": DEMO_AREA,
                    "latitude": DEMO_LAT,
                    "longitude": DEMO_LNG,
                },
            )
            if created:
                self.stdout.write(f"Created store: {store.name}")
            else:
                self.stdout.write(f"Using existing store: {store.name}")

            for i in range(1, options["partners"] + 1):
                user = AccountService.create_with_role(
                    f"+9100000002{i:02d}",
                    Role.DELIVERY_PARTNER,
                    first_name=f"Partner {i}",
                )
                profile = PartnerService.create_profile(user, delivery_areas=[DEMO_AREA])
                if not profile.is_approved:
                    PartnerService.approve(profile)
                if not profile.is_available:
                    PartnerService.set_availability(profile, True)

        self.stdout.write(self.style.SUCCESS(
            f"Store #{store.id} ready with {options['partners']} online partners in {DEMO_AREA}"
        ))
