from django.core.management.base import BaseCommand

from apps.delivery.services import AssignmentService


class Command(BaseCommand):
    help = "Expire delivery offers older than DELIVERY_OFFER_TTL_SECONDS"

    def handle(self, *args, **kwargs):
        expired = AssignmentService.expire_stale_offers()
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} delivery offers"))
