import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="DeliveryZone",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100, unique=True)),
                ("min_distance", models.DecimalField(decimal_places=2, max_digits=8)),
                ("max_distance", models.DecimalField(decimal_places=2, max_digits=8)),
                ("base_fee", models.DecimalField(decimal_places=2, max_digits=10)),
                ("per_km_rate", models.DecimalField(decimal_places=2, max_digits=10)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "ordering": ["max_distance"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("max_distance__gte", models.F("min_distance"))),
                        name="zone_max_gte_min",
                    )
                ],
            },
        ),
    ]
