import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


DELIVERY_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("assigned", "Assigned"),
    ("en_route_pickup", "En Route To Pickup"),
    ("arrived_pickup", "Arrived At Pickup"),
    ("picked_up", "Picked Up"),
    ("en_route_delivery", "En Route To Customer"),
    ("arrived_delivery", "Arrived At Customer"),
    ("delivered", "Delivered"),
    ("cancelled", "Cancelled"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("orders", "0001_initial"),
        ("partners", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Delivery",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(choices=DELIVERY_STATUS_CHOICES, default="pending", max_length=30)),
                ("pickup_address", models.TextField()),
                ("delivery_address", models.TextField()),
                ("pickup_latitude", models.DecimalField(blank=True, decimal_places=8, max_digits=10, null=True)),
                ("pickup_longitude", models.DecimalField(blank=True, decimal_places=8, max_digits=11, null=True)),
                ("delivery_latitude", models.DecimalField(blank=True, decimal_places=8, max_digits=10, null=True)),
                ("delivery_longitude", models.DecimalField(blank=True, decimal_places=8, max_digits=11, null=True)),
                ("delivery_fee", models.DecimalField(decimal_places=2, max_digits=10)),
                ("partner_earnings", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ("estimated_distance", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("estimated_time", models.PositiveIntegerField(blank=True, help_text="Minutes", null=True)),
                ("actual_time", models.PositiveIntegerField(blank=True, help_text="Minutes", null=True)),
                ("special_instructions", models.TextField(blank=True)),
                ("assigned_at", models.DateTimeField(blank=True, null=True)),
                ("picked_up_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("customer_rating", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("customer_feedback", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "delivery_partner",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="deliveries",
                        to="partners.deliverypartner",
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="deliveries",
                        to="orders.order",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(
                        condition=models.Q(
                            ("status__in", [
                                "arrived_delivery",
                                "arrived_pickup",
                                "assigned",
                                "en_route_delivery",
                                "en_route_pickup",
                                "picked_up",
                            ])
                        ),
                        fields=["delivery_partner", "status"],
                        name="active_partner_delivery_idx",
                    ),
                    models.Index(fields=["status", "created_at"], name="delivery_status_created_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["cancelled", "delivered"]), _negated=True),
                        fields=("order",),
                        name="one_open_delivery_per_order",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("status", "pending"), _negated=True),
                            ("delivery_partner__isnull", True),
                            _connector="OR",
                        ),
                        name="pending_delivery_unclaimed",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("customer_rating__isnull", True),
                            models.Q(("customer_rating__gte", 1), ("customer_rating__lte", 5)),
                            _connector="OR",
                        ),
                        name="delivery_rating_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeliveryNotification",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("accepted", "Accepted"),
                            ("rejected", "Rejected"),
                            ("expired", "Expired"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("notification_data", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("responded_at", models.DateTimeField(blank=True, null=True)),
                (
                    "delivery",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="offers",
                        to="delivery.delivery",
                    ),
                ),
                (
                    "delivery_partner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="offers",
                        to="partners.deliverypartner",
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="delivery_offers",
                        to="orders.order",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["delivery_partner", "status", "-created_at"], name="offer_partner_inbox_idx"),
                    models.Index(fields=["status", "created_at"], name="offer_expiry_scan_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "pending")),
                        fields=("delivery", "delivery_partner"),
                        name="one_pending_offer_per_partner",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("status", "accepted")),
                        fields=("delivery",),
                        name="one_accepted_offer_per_delivery",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeliveryStatusHistory",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(choices=DELIVERY_STATUS_CHOICES, max_length=30)),
                ("description", models.TextField(blank=True)),
                ("latitude", models.DecimalField(blank=True, decimal_places=8, max_digits=10, null=True)),
                ("longitude", models.DecimalField(blank=True, decimal_places=8, max_digits=11, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "delivery",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="status_history",
                        to="delivery.delivery",
                    ),
                ),
                (
                    "updated_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "delivery status history",
                "ordering": ["timestamp", "id"],
                "indexes": [
                    models.Index(fields=["delivery", "timestamp"], name="history_delivery_time_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeliveryLocationTracking",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("current_latitude", models.DecimalField(decimal_places=8, max_digits=10)),
                ("current_longitude", models.DecimalField(decimal_places=8, max_digits=11)),
                ("heading", models.DecimalField(blank=True, decimal_places=2, max_digits=5, null=True)),
                ("speed", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("accuracy", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "delivery",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="locations",
                        to="delivery.delivery",
                    ),
                ),
                (
                    "delivery_partner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="location_pings",
                        to="partners.deliverypartner",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["delivery", "-timestamp"], name="location_latest_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeliveryRoute",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("pickup_latitude", models.DecimalField(decimal_places=8, max_digits=10)),
                ("pickup_longitude", models.DecimalField(decimal_places=8, max_digits=11)),
                ("delivery_latitude", models.DecimalField(decimal_places=8, max_digits=10)),
                ("delivery_longitude", models.DecimalField(decimal_places=8, max_digits=11)),
                ("route_geometry", models.TextField(blank=True)),
                ("distance_meters", models.PositiveIntegerField()),
                ("estimated_duration_seconds", models.PositiveIntegerField()),
                ("actual_duration_seconds", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "source",
                    models.CharField(
                        choices=[("here", "HERE Routing"), ("straight_line", "Straight-line estimate")],
                        default="straight_line",
                        max_length=20,
                    ),
                ),
                ("here_route_id", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "delivery",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="route",
                        to="delivery.delivery",
                    ),
                ),
            ],
        ),
    ]
