from django.db import migrations

from apps.pricing.defaults import seed_default_zones


def forwards(apps, schema_editor):
    seed_default_zones(apps.get_model("pricing", "DeliveryZone"))


class Migration(migrations.Migration):

    dependencies = [
        ("pricing", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(forwards, migrations.RunPython.noop),
    ]
